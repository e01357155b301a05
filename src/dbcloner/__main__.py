"""Run the cloner API server: ``python -m dbcloner``."""

from __future__ import annotations

import uvicorn

from dbcloner.api import create_app
from dbcloner.config import configure_logging, get_settings


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
