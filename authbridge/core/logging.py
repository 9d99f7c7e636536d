from __future__ import annotations

import logging

from authbridge.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_NOISY_LOGGERS = ("botocore", "boto3", "urllib3", "httpx", "httpcore", "aiosqlite")


def configure_logging() -> None:
    # Configure the root logger once; repeated app factories reuse the handler.
    settings = get_settings()
    level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def mask_phone(phone: str | None) -> str | None:
    # Show only the last four digits of phone numbers in logs and responses.
    if not phone:
        return phone
    if len(phone) <= 4:
        return "*" * len(phone)
    return f"{'*' * (len(phone) - 4)}{phone[-4:]}"
