"""
Per-backend request budgets.

Every backend has its own token bucket in Redis, keyed by service name and
shared by all gateway processes, so a burst aimed at one slow or
cold-starting backend is cut off at the gateway without touching the
others. A proxied request spends one token from the bucket of the backend
it routes to, once, however many attempts the retry loop then makes.
"""
import math
import time
from pathlib import Path
from typing import NamedTuple

import redis.exceptions
import structlog
from redis.asyncio import Redis

from .config import BudgetPolicy
from .errors import BudgetExhausted

log = structlog.get_logger(__name__)

LUA = (Path(__file__).parent / 'redis/token/bucket.lua').read_text()


class Spend(NamedTuple):
    allowed: bool
    remaining: int
    retry_after: float      # seconds until a token is available, 0 when allowed


class BackendBudgets:
    """Redis-backed token buckets, one per backend service."""

    def __init__(self, redis: Redis, policy: BudgetPolicy, prefix: str = "budget"):
        self.redis = redis
        self.policy = policy
        self.prefix = prefix
        self.sha: str | None = None

    async def load(self) -> None:
        """Load the bucket script into Redis and cache its SHA."""
        self.sha = await self.redis.script_load(LUA)

    def key(self, service: str) -> str:
        return f"{self.prefix}:{service}"

    async def spend(self, service: str, tokens: int = 1) -> Spend:
        if self.sha is None:
            raise RuntimeError("BackendBudgets not initialized. Call load() first.")

        limit = self.policy.limit_for(service)
        args = (limit.capacity, limit.rate, int(time.time() * 1000), tokens)
        try:
            result = await self.redis.evalsha(self.sha, 1, self.key(service), *args)
        except redis.exceptions.NoScriptError:
            # Script cache flushed (Redis restart); reload once
            await self.load()
            result = await self.redis.evalsha(self.sha, 1, self.key(service), *args)

        return Spend(
            allowed=bool(int(result[0])),
            remaining=int(result[1]),
            retry_after=int(result[2]) / 1000,
        )


async def charge(budgets, service: str) -> Spend:
    """
    Spend one token of ``service``'s budget.
    :raises BudgetExhausted: the backend's bucket is empty
    """
    spent = await budgets.spend(service)
    if not spent.allowed:
        retry_after = max(1, math.ceil(spent.retry_after))
        log.warning("budget_exhausted", service=service, retry_after=retry_after)
        raise BudgetExhausted(
            f"Backend '{service}' is receiving too many requests; retry later",
            headers={"retry-after": str(retry_after)},
            service=service,
            retry_after=retry_after,
        )
    return spent
