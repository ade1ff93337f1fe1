"""Process entry point: build the app from the environment and run it with uvicorn."""
import uvicorn

from .app import create_app
from .config import Settings
from .logging_config import configure_logging

settings = Settings()
configure_logging(settings.log_level, settings.log_json)

application = create_app(settings.gateway_config())


def run() -> None:
    # uvicorn handles SIGINT/SIGTERM: lifespan shutdown runs, then the process exits 0
    uvicorn.run(
        application,
        host=settings.gateway_host,
        port=settings.port,
        log_config=None,    # logging handled via structlog
        access_log=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )


if __name__ == "__main__":
    run()
