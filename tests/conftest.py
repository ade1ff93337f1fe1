# Centralized pytest configuration file (fixtures, hooks, plugins, etc.)
from contextlib import asynccontextmanager

import pytest
from asgi_lifespan import LifespanManager
from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from httpx import AsyncClient, ASGITransport, MockTransport
from redis.asyncio import Redis

from coldgate.app import create_app
from coldgate.budget import BackendBudgets
from coldgate.config import Backend, BackendRegistry, BudgetLimit, BudgetPolicy, GatewayConfig, RetryPolicy
from coldgate.testing.fake_budgets import FakeBudgets


#----Config for tests----
@pytest.fixture
def registry() -> BackendRegistry:
    return BackendRegistry(backends=(
        Backend(name="auth", base_url="http://auth.test"),
        Backend(name="users", base_url="http://users.test"),
        Backend(name="notifications", base_url="http://notifications.test"),
    ))


@pytest.fixture
def gateway_config(registry: BackendRegistry) -> GatewayConfig:
    return GatewayConfig.build(
        registry,
        retry=RetryPolicy(max_attempts=3, base_delay=0, first_timeout=1.0,
                          timeout_step=1.0, max_timeout=3.0, connect_timeout=0.5),
    )


@pytest.fixture
async def redis_client():
    """Real Redis client for integration testing"""
    redis = Redis.from_url('redis://localhost:6379', decode_responses=True)

    # Verify Redis is running
    try:
        await redis.ping()
    except Exception:
        await redis.aclose()
        pytest.skip('Redis not available')

    yield redis

    # Cleanup
    await redis.flushdb()
    await redis.aclose()


@pytest.fixture
async def backend_budgets(redis_client):
    """Real per-backend budgets for integration testing"""
    policy = BudgetPolicy(
        enabled=True,
        default=BudgetLimit(capacity=10, rate=1.0),
        per_service={"auth": BudgetLimit(capacity=3, rate=10.0)},
    )
    budgets = BackendBudgets(redis_client, policy)
    await budgets.load()

    yield budgets


@pytest.fixture
def upstream_app() -> FastAPI:
    app = FastAPI()     # fake backend shared by every service in tests

    def _received(request: Request) -> dict:
        raw_path = request.scope["raw_path"].decode().split("?", 1)[0]
        return {
            "host": request.headers.get("host"),
            "path": request.url.path,
            "raw_path": raw_path,
            "query": request.url.query,
            "received_headers": dict(request.headers),
        }

    @app.post("/auth/login")
    async def login(request: Request):
        return {"token": "abc", "credentials": await request.json(), **_received(request)}

    @app.get("/users/credentials/{email}")
    async def credentials(email: str, request: Request):
        return {"email": email, **_received(request)}

    @app.get("/users/admins")
    async def list_admins(request: Request):
        return {"admins": [], **_received(request)}

    @app.post("/users/admins")
    async def create_admin(request: Request):
        return Response(content=await request.body(), status_code=201,
                        media_type="application/json")

    @app.delete("/users/admins/{admin_id}")
    async def delete_admin(admin_id: str):
        return Response(status_code=204)

    @app.get("/users/sellers/{seller_id}")
    async def missing_seller(seller_id: str):
        return Response(content=b'{"error":"Seller not found"}', status_code=404,
                        media_type="application/json")

    @app.get("/notifications/{user_id}")
    async def notifications(user_id: str, request: Request):
        return {"user_id": user_id, "items": [], **_received(request)}

    @app.get("/notifications/{user_id}/legacy")
    async def legacy(user_id: str):
        return PlainTextResponse("not json")

    @app.get("/notifications/{user_id}/crash")
    async def crash(user_id: str):
        return PlainTextResponse("internal failure", status_code=500)

    @app.get("/notifications/{user_id}/gone")
    async def gone(user_id: str):
        return Response(status_code=410)

    return app


@pytest.fixture
async def upstream_client(upstream_app: FastAPI):
    client = AsyncClient(transport=ASGITransport(app=upstream_app), base_url="http://upstream")
    yield client
    await client.aclose()


@asynccontextmanager
async def _serve(app: FastAPI, http_client: AsyncClient, budgets=None):
    # State set before the lifespan runs so startup keeps the test doubles
    app.state.http_client = http_client
    if budgets is not None:
        app.state.budgets = budgets
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://gateway") as client:
            yield client


@pytest.fixture
def gateway_app(gateway_config: GatewayConfig) -> FastAPI:
    return create_app(gateway_config)


@pytest.fixture
async def gateway_client(gateway_app: FastAPI, upstream_client: AsyncClient):
    """Gateway test client with every backend mocked via ASGITransport"""
    async with _serve(gateway_app, upstream_client) as client:
        yield client


@pytest.fixture
async def budgeted_client(gateway_app: FastAPI, upstream_client: AsyncClient):
    """Gateway test client with fake per-backend budgets; the users budget is empty"""
    budgets = FakeBudgets(remaining=7, exhausted={"users"})
    async with _serve(gateway_app, upstream_client, budgets) as client:
        yield client


@pytest.fixture
def mock_gateway(gateway_config: GatewayConfig):
    """Gateway client whose backends are simulated by an httpx.MockTransport handler."""
    @asynccontextmanager
    async def _mock_gateway(handler, config: GatewayConfig | None = None):
        app = create_app(config or gateway_config)
        async with AsyncClient(transport=MockTransport(handler)) as backend:
            async with _serve(app, backend) as client:
                yield client

    return _mock_gateway
