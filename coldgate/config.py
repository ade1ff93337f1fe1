from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import httpx


class Backend(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    base_url: str

    @property
    def netloc(self) -> str:
        """Host (and non-default port) used for the outbound Host header."""
        return httpx.URL(self.base_url).netloc.decode("ascii")


class BackendRegistry(BaseModel):
    model_config = ConfigDict(frozen=True)

    backends: tuple[Backend, ...] = ()

    def get(self, name: str) -> Backend | None:
        for backend in self.backends:
            if backend.name == name:
                return backend
        return None

    def names(self) -> list[str]:
        return [backend.name for backend in self.backends]

    def as_dict(self) -> dict[str, str]:
        return {backend.name: backend.base_url for backend in self.backends}


class RouteRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    prefix: str
    service: str
    rewrite: str | None = None      # None strips the prefix
    methods: tuple[str, ...] | None = None
    description: str = ""

    @field_validator("prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("route prefix must start with '/'")
        return value.rstrip("/") or "/"

    @field_validator("methods")
    @classmethod
    def _upper_methods(cls, value):
        if value is None:
            return None
        return tuple(m.upper() for m in value)

    @property
    def segments(self) -> tuple[str, ...]:
        return tuple(s for s in self.prefix.split("/") if s)

    def allows(self, method: str) -> bool:
        return self.methods is None or method.upper() in self.methods


class RetryPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(4, ge=1, le=10)
    base_delay: float = Field(1.0, ge=0)
    first_timeout: float = Field(10.0, gt=0)
    timeout_step: float = Field(10.0, ge=0)
    max_timeout: float = Field(30.0, gt=0)
    connect_timeout: float = Field(5.0, gt=0)
    retry_after: int = Field(10, ge=0)

    def backoff(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        return self.base_delay * 2 ** (attempt - 1)

    def timeout_for(self, attempt: int) -> float:
        return min(self.first_timeout + self.timeout_step * (attempt - 1), self.max_timeout)


class WarmupPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    interval: float = Field(240.0, gt=0)
    method: str = "HEAD"
    path: str = "/"
    timeout: float = Field(10.0, gt=0)


class BudgetLimit(BaseModel):
    """Token bucket size and refill rate (tokens per second) for one backend."""
    model_config = ConfigDict(frozen=True)

    capacity: int = Field(50, ge=1)
    rate: float = Field(1.0, gt=0)


class BudgetPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    redis_url: str = "redis://localhost:6379"
    default: BudgetLimit = BudgetLimit()
    per_service: dict[str, BudgetLimit] = {}

    def limit_for(self, service: str) -> BudgetLimit:
        return self.per_service.get(service, self.default)


def parse_budget_overrides(value: str) -> dict[str, BudgetLimit]:
    """
    Parse ``"users=100/5,auth=20/0.5"`` into per-service limits
    (capacity/refill rate).
    """
    overrides = {}
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        service, _, limit = item.partition("=")
        capacity, _, rate = limit.partition("/")
        if not service.strip() or not capacity or not rate:
            raise ValueError(f"malformed budget override {item!r}, expected service=capacity/rate")
        overrides[service.strip()] = BudgetLimit(capacity=int(capacity), rate=float(rate))
    return overrides


def default_routes() -> tuple[RouteRule, ...]:
    return (
        RouteRule(prefix="/api/auth", service="auth", rewrite="/auth", methods=("POST",),
                  description="Authentication (login)"),
        RouteRule(prefix="/api/user-info", service="auth", rewrite="/user-info", methods=("GET",),
                  description="Token introspection"),
        RouteRule(prefix="/api/users", service="users", rewrite="/users",
                  methods=("GET", "POST", "PUT", "DELETE"),
                  description="Credentials, admins, customers, sellers and password reset"),
        RouteRule(prefix="/api/notifications", service="notifications", rewrite="/notifications",
                  methods=("GET", "POST", "PUT"),
                  description="User notifications"),
        RouteRule(prefix="/api/chat", service="chat", rewrite="/chat",
                  description="Chat"),
        RouteRule(prefix="/api/payments", service="payments", rewrite="/payments",
                  description="Payments"),
    )


class GatewayConfig(BaseModel):
    """Immutable gateway configuration, built once at startup."""
    model_config = ConfigDict(frozen=True)

    registry: BackendRegistry
    routes: tuple[RouteRule, ...]
    retry: RetryPolicy = RetryPolicy()
    warmup: WarmupPolicy = WarmupPolicy()
    budgets: BudgetPolicy = BudgetPolicy()
    cors_origins: tuple[str, ...] = ("*",)

    @classmethod
    def build(cls, registry: BackendRegistry, routes=None, **kwargs) -> "GatewayConfig":
        """Keep only the routes whose backend is configured."""
        if routes is None:
            routes = default_routes()
        routes = tuple(rule for rule in routes if registry.get(rule.service) is not None)
        return cls(registry=registry, routes=routes, **kwargs)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Backends
    auth_service_url: str = "http://auth-service:8000"
    users_service_url: str = "http://users-service:8000"
    notifications_service_url: str = "http://notifications-service:8000"
    chat_service_url: str | None = None
    payments_service_url: str | None = None

    # Listen
    gateway_host: str = "0.0.0.0"
    port: int = 10000

    # Retry / timeouts
    retry_max_attempts: int = 4
    retry_base_delay: float = 1.0
    first_timeout_seconds: float = 10.0
    timeout_step_seconds: float = 10.0
    max_timeout_seconds: float = 30.0
    connect_timeout_seconds: float = 5.0
    retry_after_seconds: int = 10

    # Warm-up
    warmup_enabled: bool = False
    warmup_interval_seconds: float = 240.0
    warmup_method: str = "HEAD"
    warmup_path: str = "/"

    # Per-backend budgets; overrides as "users=100/5,auth=20/0.5"
    budget_enabled: bool = False
    redis_url: str = "redis://localhost:6379"
    budget_capacity: int = 50
    budget_rate: float = 1.0
    budget_overrides: str = ""

    # CORS: comma-separated origins
    cors_origins: str = "*"

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    def registry(self) -> BackendRegistry:
        urls = {
            "auth": self.auth_service_url,
            "users": self.users_service_url,
            "notifications": self.notifications_service_url,
            "chat": self.chat_service_url,
            "payments": self.payments_service_url,
        }
        return BackendRegistry(
            backends=tuple(Backend(name=name, base_url=url) for name, url in urls.items() if url)
        )

    def gateway_config(self) -> GatewayConfig:
        return GatewayConfig.build(
            self.registry(),
            retry=RetryPolicy(
                max_attempts=self.retry_max_attempts,
                base_delay=self.retry_base_delay,
                first_timeout=self.first_timeout_seconds,
                timeout_step=self.timeout_step_seconds,
                max_timeout=self.max_timeout_seconds,
                connect_timeout=self.connect_timeout_seconds,
                retry_after=self.retry_after_seconds,
            ),
            warmup=WarmupPolicy(
                enabled=self.warmup_enabled,
                interval=self.warmup_interval_seconds,
                method=self.warmup_method,
                path=self.warmup_path,
                timeout=self.first_timeout_seconds,
            ),
            budgets=BudgetPolicy(
                enabled=self.budget_enabled,
                redis_url=self.redis_url,
                default=BudgetLimit(capacity=self.budget_capacity, rate=self.budget_rate),
                per_service=parse_budget_overrides(self.budget_overrides),
            ),
            cors_origins=tuple(o.strip() for o in self.cors_origins.split(",") if o.strip()),
        )
