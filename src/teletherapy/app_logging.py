"""Logging configuration helpers."""

import logging

# Keys passed through ``extra=`` that are worth showing in plain-text logs.
_CONTEXT_KEYS = (
    "session_id",
    "checkout_request_id",
    "actor_id",
    "attempt",
    "code",
    "error_type",
    "alert",
)


class ContextFormatter(logging.Formatter):
    """Formatter that appends known ``extra`` fields as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context = [
            f"{key}={getattr(record, key)}"
            for key in _CONTEXT_KEYS
            if getattr(record, key, None) is not None
        ]
        if context:
            return f"{message} [{' '.join(context)}]"
        return message


def configure_logging(level: int = logging.INFO) -> None:
    """Configure the ``teletherapy`` logger tree with a single stream handler."""
    logger = logging.getLogger("teletherapy")
    logger.setLevel(level)
    if logger.handlers:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(ContextFormatter("%(levelname)s: %(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
