"""
Rate limiting examples.

Demonstrates:
- Per-IP limits with the in-memory store
- Per-user limits with role-based overrides
- A shared Redis store for multi-process deployments
- Applying a stricter pipeline only to part of the URL space
"""

import os

from fastapi import FastAPI

from fastapi_policy_pipeline import (
    CallbackVerifier,
    Pipeline,
    RateLimitPolicy,
    RedisRateLimitStore,
    install_pipeline,
)

app = FastAPI(title="Rate Limiting Examples")


async def decode_token(token: str) -> dict | None:
    """Mock token decoder."""
    if token == "admin-token":
        return {"user_id": "admin-1", "roles": ["admin"]}
    if token == "premium-token":
        return {"user_id": "premium-1", "roles": ["premium"]}
    if token == "free-token":
        return {"user_id": "free-1", "roles": []}
    return None


verifier = CallbackVerifier(decode_token)

# Share counters between workers when a Redis URL is configured.
redis_url = os.environ.get("REDIS_URL")
store = RedisRateLimitStore.from_url(redis_url) if redis_url else None

# Admins 1000/min, premium 300/min, other users 120/min, anonymous 60/min
api_limits = RateLimitPolicy.for_role(
    {"admin": 1000, "premium": 300},
    default_limit=60,
    store=store,
    verifier=verifier,
)

# Login attempts are limited per IP and path, independent of the API limits
login_limits = RateLimitPolicy(store, max_attempts=5, window_seconds=300, key_prefix="login")

# Each conditional pipeline is skipped entirely when its predicate is false
install_pipeline(app, Pipeline(api_limits).when(lambda ctx: ctx.path.startswith("/api")))
install_pipeline(app, Pipeline(login_limits).when(lambda ctx: ctx.path == "/login"))


@app.get("/api/data")
async def data_endpoint():
    """Limits depend on the caller's role."""
    return {"message": "Data endpoint"}


@app.post("/login")
async def login():
    """Five attempts per five minutes per client."""
    return {"message": "Logged in"}


@app.get("/health")
async def health():
    """Not rate limited."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)

    # Test with:
    # for i in $(seq 1 70); do curl -s -o /dev/null -w "%{http_code}\n" \
    #     http://localhost:8000/api/data; done
    # curl -i -H "Authorization: Bearer premium-token" http://localhost:8000/api/data
