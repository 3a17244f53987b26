"""
Environment-configured pipeline.

Demonstrates:
- Building the full policy stack from PipelineSettings
- Overriding settings through POLICY_PIPELINE_* environment variables
- CSRF protection with the double-submit cookie
- Writing the audit trail to a JSON lines file
- Registering a custom policy under its own name

Example environment:
    POLICY_PIPELINE_POLICIES='["cors", "rate_limit", "auth", "csrf", "logging", "maintenance"]'
    POLICY_PIPELINE_CORS__ALLOWED_ORIGINS='["https://app.example.com"]'
    POLICY_PIPELINE_RATE_LIMIT__MAX_ATTEMPTS=100
    POLICY_PIPELINE_AUTH__OPTIONAL=true
    POLICY_PIPELINE_CSRF__EXCEPT='["/api/webhooks/*"]'
    POLICY_PIPELINE_LOGGING__LOG_BODY=true
    POLICY_PIPELINE_ACCESS_LOG_PATH=logs/access.jsonl
"""

import os

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse

from fastapi_policy_pipeline import (
    CallbackVerifier,
    DoubleSubmitCsrfProtection,
    Middleware,
    PipelineSettings,
    RequestContext,
    ResponseBuilder,
    Services,
    build_pipeline,
    default_registry,
    install_pipeline,
    request_context,
)


class MaintenanceMode(Middleware):
    """Answers every request with 503 while MAINTENANCE=1."""

    priority = 5

    async def handle(self, ctx, next):
        if os.environ.get("MAINTENANCE") == "1":
            return ResponseBuilder.error("Down for maintenance", 503)
        return await next(ctx)


async def decode_token(token: str) -> dict | None:
    """Mock token decoder."""
    if token == "valid-token":
        return {"user_id": "user123", "roles": ["editor"], "permissions": ["posts.write"]}
    return None


registry = default_registry().register("maintenance", lambda settings, services: MaintenanceMode())

settings = PipelineSettings()
services = Services(
    verifier=CallbackVerifier(decode_token),
    csrf_protection=DoubleSubmitCsrfProtection(cookie_name="XSRF-TOKEN", header_name="X-XSRF-TOKEN"),
)

app = FastAPI(title="Configured Pipeline Example")
install_pipeline(app, build_pipeline(settings, services, registry=registry))


@app.get("/csrf-token")
async def csrf_token():
    """Issue a CSRF token as a cookie; clients echo it back in X-XSRF-TOKEN."""
    token = DoubleSubmitCsrfProtection.generate_token()
    response = JSONResponse({"csrf_token": token})
    response.set_cookie("XSRF-TOKEN", token, samesite="strict")
    return response


@app.post("/posts")
async def create_post(ctx: RequestContext = Depends(request_context)):
    """State-changing endpoint: requires a matching CSRF token."""
    return {
        "request_id": ctx.params.get("request_id"),
        "author": ctx.identity.subject if ctx.identity else None,
        "post": ctx.json(),
    }


@app.post("/api/webhooks/github")
async def github_webhook():
    """Excepted from CSRF via POLICY_PIPELINE_CSRF__EXCEPT."""
    return {"received": True}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)

    # Test with:
    # curl -i -c jar http://localhost:8000/csrf-token
    # curl -i -b jar -H "X-XSRF-TOKEN: <token>" -H "Authorization: Bearer valid-token" \
    #     -H "Content-Type: application/json" -d '{"title": "hi"}' http://localhost:8000/posts
