from __future__ import annotations

import logging

from .config import AppSettings

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def main() -> None:
    import uvicorn

    settings = AppSettings()
    logging.basicConfig(level=settings.log_level, format=_LOG_FORMAT)
    logging.getLogger(__name__).info(
        "Serving on http://%s:%s/ (refresh every %ss)",
        settings.host,
        settings.port,
        settings.refresh_interval_seconds,
    )
    uvicorn.run(
        "ical_api.api:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
