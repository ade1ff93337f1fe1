import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from urllib.parse import quote

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from .budget import BackendBudgets, charge
from .config import GatewayConfig
from .errors import install_error_handlers
from .forwarding import Forwarder
from .middleware import RequestContextMiddleware
from .routing import available_prefixes, find_route
from .warmup import Warmer

log = structlog.get_logger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"]


def create_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        limits=httpx.Limits(
            max_connections=100,
            max_keepalive_connections=30,
            keepalive_expiry=60,
        ),
        follow_redirects=False,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown logic."""
    config: GatewayConfig = app.state.config

    #---- Startup ----
    log.info("gateway_starting", services=config.registry.as_dict(), routes=len(config.routes))

    if not hasattr(app.state, 'http_client'):
        app.state.http_client = create_http_client()

    if config.budgets.enabled and not hasattr(app.state, 'budgets'):
        redis = Redis.from_url(config.budgets.redis_url)
        await redis.ping()

        budgets = BackendBudgets(redis, config.budgets)
        await budgets.load()

        app.state.redis = redis
        app.state.budgets = budgets
        log.info("budgets_ready", redis_url=config.budgets.redis_url,
                 overrides=sorted(config.budgets.per_service))

    warmer = None
    if config.warmup.enabled:
        warmer = Warmer(app.state.http_client, config.registry, config.warmup)
        warmer.start()

    try:
        yield
    finally:
        #---- Shutdown ----
        if warmer is not None:
            await warmer.stop()
        if hasattr(app.state, 'http_client'):
            await app.state.http_client.aclose()
        if hasattr(app.state, 'redis'):
            await app.state.redis.aclose()
        log.info("gateway_stopped")


def create_app(config: GatewayConfig) -> FastAPI:
    app = FastAPI(title="coldgate", lifespan=lifespan)
    app.state.config = config

    install_error_handlers(app)

    # Last added runs first: CORS, then request context
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def index():
        return {
            "message": "coldgate API gateway",
            "description": "Forwards /api/* requests to serverless backends, "
                           "retrying while a backend wakes up from a cold start",
            "routes": [
                {
                    "prefix": rule.prefix,
                    "service": rule.service,
                    "methods": list(rule.methods) if rule.methods else PROXY_METHODS,
                    "description": rule.description,
                }
                for rule in config.routes
            ],
            "health": "GET /health",
            "note": "The first call to an idle backend can take several seconds (cold start)",
        }

    @app.get("/health")
    async def health(request: Request, check: bool = False):
        body = {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "services": config.registry.as_dict(),
            "routes": available_prefixes(config.routes),
        }
        if check:
            warmer = Warmer(request.app.state.http_client, config.registry, config.warmup)
            backends = config.registry.backends
            statuses = await asyncio.gather(
                *(warmer.probe(b, timeout=config.retry.connect_timeout) for b in backends)
            )
            checks = {}
            for backend, status in zip(backends, statuses):
                checks[backend.name] = {
                    "url": backend.base_url,
                    "reachable": status is not None,
                    "status_code": status,
                }
            body["checks"] = checks
        return body

    @app.api_route(path="/{path:path}", methods=PROXY_METHODS)
    async def proxy(path: str, request: Request):
        raw_path = request.scope.get("raw_path")
        raw_path = raw_path.decode("latin-1") if raw_path else quote(request.scope["path"])

        match = find_route(config.routes, raw_path, request.method)
        backend = config.registry.get(match.rule.service)

        budgets = getattr(request.app.state, "budgets", None)
        spent = await charge(budgets, backend.name) if budgets is not None else None

        forwarder = Forwarder(request.app.state.http_client, config.retry)
        response = await forwarder.forward(request, match, backend)
        if spent is not None:
            response.headers["x-budget-remaining"] = str(spent.remaining)
        return response

    return app
