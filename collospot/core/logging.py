import logging

from collospot.core.config import get_settings


LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging() -> None:
    settings = get_settings()
    level = getattr(logging, str(settings.log_level or "INFO").upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # httpx logs every request at INFO; provider clients already log their own calls.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("librouteros").setLevel(logging.WARNING)


def mask_phone(value: str | None) -> str:
    digits = str(value or "")
    if len(digits) <= 6:
        return "***"
    return f"{digits[:5]}***{digits[-3:]}"
