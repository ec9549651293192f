"""featuregate entrypoint."""

import uvicorn

from featuregate.config.settings import get_settings


def cli() -> None:
    """Serve the entitlement API."""
    settings = get_settings()
    uvicorn.run(
        "featuregate.web.app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    cli()
