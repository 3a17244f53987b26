"""
Basic usage example of fastapi-policy-pipeline.

Demonstrates:
- Building a pipeline from the built-in policies
- Installing it in front of a FastAPI application
- Reading the authenticated identity in an endpoint
"""

from fastapi import Depends, FastAPI

from fastapi_policy_pipeline import (
    AuthPolicy,
    AuthResult,
    CallbackVerifier,
    CorsPolicy,
    LoggingPolicy,
    Pipeline,
    RateLimitPolicy,
    current_identity,
    install_pipeline,
)

app = FastAPI(title="Basic Policy Pipeline Example")


# Mock token decoder (replace with real implementation)
async def decode_token(token: str) -> dict | None:
    """Decode a bearer token and return its claims."""
    # In production, use a library like python-jose or PyJWT
    if token == "valid-token":
        return {"user_id": "user123", "roles": ["editor"]}
    return None


pipeline = Pipeline(
    CorsPolicy(allowed_origins=["http://localhost:3000"]),
    RateLimitPolicy.for_ip(max_attempts=30, window_seconds=60),
    AuthPolicy.optional_auth(CallbackVerifier(decode_token)),
    LoggingPolicy(),
)
install_pipeline(app, pipeline)


@app.get("/")
async def public_endpoint():
    """Public endpoint - anonymous callers are allowed."""
    return {"message": "Hello, World!"}


@app.get("/me")
async def get_current_user(identity: AuthResult | None = Depends(current_identity)):
    """Return the caller's identity, if any."""
    if identity is None:
        return {"authenticated": False}
    return {"authenticated": True, "user": identity.subject, "roles": sorted(identity.roles)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)

    # Test with:
    # curl -i http://localhost:8000/
    # curl -i -H "Authorization: Bearer valid-token" http://localhost:8000/me
    # curl -i -X OPTIONS -H "Origin: http://localhost:3000" http://localhost:8000/
