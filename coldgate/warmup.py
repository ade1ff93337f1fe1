import asyncio
import contextlib

import httpx
import structlog

from .config import Backend, BackendRegistry, WarmupPolicy

log = structlog.get_logger(__name__)


class Warmer:
    """
    Periodically pokes every backend so serverless instances stay warm.

    Best effort only: probe results are logged and never feed back into
    routing or health reporting.
    """
    def __init__(self, client: httpx.AsyncClient, registry: BackendRegistry, policy: WarmupPolicy):
        self.client = client
        self.registry = registry
        self.policy = policy
        self._task: asyncio.Task | None = None

    async def probe(self, backend: Backend, method: str | None = None,
                    timeout: float | None = None) -> int | None:
        """Status code from one lightweight request, or None if the backend did not answer."""
        url = backend.base_url.rstrip("/") + self.policy.path
        try:
            resp = await self.client.request(
                method or self.policy.method,
                url,
                timeout=timeout or self.policy.timeout,
            )
        except Exception as exc:
            log.debug("warmup_probe_failed", service=backend.name, error=repr(exc))
            return None
        log.debug("warmup_probe", service=backend.name, status=resp.status_code)
        return resp.status_code

    async def probe_all(self) -> dict[str, int | None]:
        backends = self.registry.backends
        results = await asyncio.gather(*(self.probe(b) for b in backends))
        return {b.name: status for b, status in zip(backends, results)}

    async def run(self) -> None:
        while True:
            await self.probe_all()
            await asyncio.sleep(self.policy.interval)

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run())
        log.info("warmup_started", interval=self.policy.interval, services=self.registry.names())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
