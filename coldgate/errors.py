from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


class GatewayError(Exception):
    """Failure produced by the gateway itself, rendered as a JSON envelope."""
    status_code = 500
    error = "Gateway error"

    def __init__(self, message: str, headers: dict | None = None, **extra):
        super().__init__(message)
        self.message = message
        self.headers = headers
        self.extra = extra

    def to_dict(self) -> dict:
        return {"error": self.error, "message": self.message, **self.extra}


class RouteNotFound(GatewayError):
    status_code = 404
    error = "Route not found"


class MethodNotAllowed(GatewayError):
    status_code = 405
    error = "Method not allowed"


class InvalidRequestBody(GatewayError):
    status_code = 400
    error = "Invalid JSON body"


class BudgetExhausted(GatewayError):
    status_code = 429
    error = "Backend budget exhausted"


def error_response(status_code: int, error: str, message: str,
                   headers: dict | None = None, **extra) -> JSONResponse:
    return JSONResponse(
        {"error": error, "message": message, **extra},
        status_code=status_code,
        headers=headers,
    )


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=exc.headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_response(
        exc.status_code,
        error="HTTP error",
        message=str(exc.detail),
        headers=getattr(exc, "headers", None),
    )


def install_error_handlers(app) -> None:
    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
