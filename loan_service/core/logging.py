import logging
import sys

from loan_service.core.config import settings

_NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore", "uvicorn.access")


def setup_logging() -> None:
    """Configure root logging once, from the app lifespan."""
    if settings.LOG_LEVEL:
        log_level: int | str = settings.LOG_LEVEL.upper()
    else:
        log_level = logging.DEBUG if settings.APP_ENV == "development" else logging.INFO

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # Library chatter only helps while developing
    if settings.APP_ENV != "development":
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
