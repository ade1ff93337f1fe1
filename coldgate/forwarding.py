"""
Request forwarding with cold-start aware retries.

One inbound request becomes up to ``RetryPolicy.max_attempts`` outbound
attempts. Only transport failures (refused/reset connections, timeouts)
are retried; any HTTP response from the backend, whatever its status, ends
the loop and is relayed. Attempts run one after another inside
``Forwarder.forward``, which returns exactly one response.
"""
import asyncio
import json
import math
import time
from dataclasses import dataclass, field

import httpx
import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse

from .config import Backend, RetryPolicy
from .errors import InvalidRequestBody, error_response
from .rewrite import rewrite_path
from .routing import RouteMatch

log = structlog.get_logger(__name__)

BODY_METHODS = {"POST", "PUT", "PATCH"}

# Never forwarded to the backend; Host and the forwarded-* headers are rebuilt
REQUEST_EXCLUDED_HEADERS = {
    'connection',
    'keep-alive',
    'proxy-authenticate',
    'proxy-authorization',
    'te',
    'trailers',
    'transfer-encoding',
    'upgrade',
    'host',
    'content-length',
    'expect',
    'content-type',
    'accept',
}

RESPONSE_EXCLUDED_HEADERS = {
    'connection',
    'keep-alive',
    'proxy-authenticate',
    'proxy-authorization',
    'te',
    'trailers',
    'transfer-encoding',
    'upgrade',
    'content-length',
    'content-encoding',
    'date',
    'server',
    'x-request-id',
}


@dataclass
class ForwardAttempt:
    backend: Backend
    path: str
    method: str
    headers: httpx.Headers
    body: bytes | None
    number: int
    started: float = field(default_factory=time.monotonic)

    @property
    def url(self) -> str:
        return self.backend.base_url.rstrip("/") + self.path

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started


def _raw_header(request: Request, name: bytes) -> bytes | None:
    for k, v in request.headers.raw:
        if k.lower() == name:
            return v
    return None


def build_forward_headers(request: Request, backend: Backend,
                          request_id: str, attempt: int) -> httpx.Headers:
    """
    Inbound headers minus hop-by-hop ones, plus JSON and forwarding headers.

    Works on the raw byte pairs so header values that are not ASCII reach
    the backend unchanged.
    """
    outbound = [
        (k.lower(), v) for k, v in request.headers.raw
        if k.lower().decode("latin-1") not in REQUEST_EXCLUDED_HEADERS
        and not k.lower().startswith(b"x-forwarded-")
    ]

    client_host = (request.client.host if request.client else "unknown").encode("latin-1")
    prior = _raw_header(request, b"x-forwarded-for")
    outbound += [
        (b"content-type", b"application/json"),
        (b"accept", b"application/json"),
        (b"host", backend.netloc.encode("ascii")),
        (b"x-forwarded-for", prior + b", " + client_host if prior else client_host),
        (b"x-forwarded-host", _raw_header(request, b"host") or b""),
        (b"x-forwarded-proto",
         _raw_header(request, b"x-forwarded-proto") or request.url.scheme.encode("ascii")),
        (b"x-activation-attempt", str(attempt).encode("ascii")),
    ]
    if request_id:
        outbound.append((b"x-request-id", request_id.encode("latin-1")))
    return httpx.Headers(outbound)


def _reject_constant(name: str):
    raise ValueError(f"{name} is not valid JSON")


def _finite_float(text: str) -> float:
    value = float(text)
    if math.isinf(value):
        raise ValueError(f"number {text} is out of range")
    return value


def parse_json(raw: bytes):
    """
    Strict ``json.loads``: NaN, Infinity and overflowing numbers are errors,
    since they cannot be rendered back out as JSON.
    """
    return json.loads(raw, parse_constant=_reject_constant, parse_float=_finite_float)


async def read_json_body(request: Request) -> bytes | None:
    """
    Serialized JSON body for POST/PUT/PATCH, None otherwise.
    :raises InvalidRequestBody: body present but not JSON
    """
    raw = await request.body()
    if request.method.upper() not in BODY_METHODS or not raw.strip():
        return None
    try:
        payload = parse_json(raw)
    except ValueError as exc:
        raise InvalidRequestBody(f"Request body must be valid JSON: {exc}")
    return json.dumps(payload).encode()


def _copy_headers(response: Response, upstream: httpx.Response, skip=()) -> None:
    excluded = RESPONSE_EXCLUDED_HEADERS | set(skip)
    for k, v in upstream.headers.raw:
        name = k.lower()
        if name.decode("latin-1") not in excluded:
            response.raw_headers.append((name, v))


class Forwarder:
    """Sends one inbound request to a backend, retrying transport failures."""

    def __init__(self, client: httpx.AsyncClient, policy: RetryPolicy, sleep=asyncio.sleep):
        self.client = client
        self.policy = policy
        self._sleep = sleep

    async def forward(self, request: Request, match: RouteMatch, backend: Backend) -> Response:
        body = await read_json_body(request)
        path = rewrite_path(match.rule, match.suffix)
        params = list(request.query_params.multi_items())
        request_id = getattr(request.state, "request_id", None) or request.headers.get("x-request-id", "")
        started = time.monotonic()

        failure: httpx.TransportError | None = None
        for number in range(1, self.policy.max_attempts + 1):
            if number > 1:
                delay = self.policy.backoff(number - 1)
                log.info("retry_scheduled", service=backend.name, attempt=number, delay=delay)
                await self._sleep(delay)
                if await request.is_disconnected():
                    log.info("client_disconnected", service=backend.name, attempt=number)
                    return error_response(499, "Client closed request",
                                          "The client disconnected before the backend answered")

            attempt = ForwardAttempt(
                backend=backend,
                path=path,
                method=request.method,
                headers=build_forward_headers(request, backend, request_id, number),
                body=body,
                number=number,
            )
            try:
                upstream = await self._send(attempt, params)
            except httpx.TransportError as exc:
                failure = exc
                log.warning(
                    "forward_attempt_failed",
                    service=backend.name,
                    path=path,
                    attempt=number,
                    max_attempts=self.policy.max_attempts,
                    timeout=isinstance(exc, httpx.TimeoutException),
                    error=repr(exc),
                    elapsed=round(attempt.elapsed, 3),
                )
                continue
            except httpx.RequestError as exc:
                # The backend answered but the response could not be read; not retried
                log.error("backend_response_unreadable", service=backend.name, path=path,
                          attempt=number, error=repr(exc))
                return self.unreadable(backend, exc, number)

            log.info(
                "forward_complete",
                service=backend.name,
                method=request.method,
                path=path,
                status=upstream.status_code,
                attempts=number,
                duration=round(time.monotonic() - started, 3),
            )
            response = self.relay(upstream, backend, request.method)
            response.headers["x-gateway-service"] = backend.name
            response.headers["x-gateway-attempts"] = str(number)
            return response

        return self.exhausted(backend, failure)

    async def _send(self, attempt: ForwardAttempt, params) -> httpx.Response:
        timeout = self.policy.timeout_for(attempt.number)
        return await self.client.request(
            attempt.method,
            attempt.url,
            params=params,
            headers=attempt.headers,
            content=attempt.body,
            timeout=httpx.Timeout(timeout, connect=min(self.policy.connect_timeout, timeout)),
        )

    def relay(self, upstream: httpx.Response, backend: Backend, method: str) -> Response:
        status = upstream.status_code

        if status in (204, 304) or method.upper() == "HEAD":
            response = Response(status_code=status)
            _copy_headers(response, upstream, skip={"content-type"})
            return response

        content = upstream.content
        if status < 400:
            try:
                payload = parse_json(content) if content.strip() else {}
                response = JSONResponse(payload, status_code=status)
            except ValueError:
                log.warning("backend_malformed_response", service=backend.name, status=status)
                return error_response(
                    502,
                    error="Invalid JSON",
                    message=f"Backend '{backend.name}' answered with a body that is not JSON",
                    raw_response=upstream.text,
                    backend_status=status,
                    service=backend.name,
                )
            _copy_headers(response, upstream, skip={"content-type"})
            return response

        if not content.strip():
            response = error_response(
                status,
                error="Backend error",
                message=f"Backend '{backend.name}' returned {status} with an empty body",
                service=backend.name,
            )
            _copy_headers(response, upstream, skip={"content-type"})
            return response

        response = Response(content=content, status_code=status)
        _copy_headers(response, upstream)
        return response

    def exhausted(self, backend: Backend, failure: httpx.TransportError | None) -> Response:
        timed_out = isinstance(failure, httpx.TimeoutException)
        retry_after = self.policy.retry_after
        log.error(
            "backend_unavailable",
            service=backend.name,
            attempts=self.policy.max_attempts,
            timeout=timed_out,
            error=repr(failure),
        )
        if timed_out:
            status, error = 504, "Backend timeout"
            message = (f"Backend '{backend.name}' did not answer in time; "
                       f"it is probably cold-starting")
        else:
            status, error = 502, "Backend unavailable"
            message = (f"Could not connect to backend '{backend.name}'; "
                       f"it is probably cold-starting")
        return error_response(
            status,
            error=error,
            message=message,
            headers={"retry-after": str(retry_after)},
            service=backend.name,
            attempts=self.policy.max_attempts,
            retry_after=retry_after,
            action=f"Retry the request in about {retry_after} seconds",
            detail=str(failure) if failure is not None else "",
        )

    def unreadable(self, backend: Backend, failure: httpx.RequestError, attempts: int) -> Response:
        return error_response(
            502,
            error="Bad backend response",
            message=f"Backend '{backend.name}' sent a response the gateway could not read",
            headers={"x-gateway-service": backend.name},
            service=backend.name,
            attempts=attempts,
            detail=str(failure),
        )
