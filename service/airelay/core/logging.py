import logging
import re

import structlog

# Provider error bodies sometimes echo the key or bearer token back
_SECRET_PATTERNS = [
    (re.compile(r"sk-[a-zA-Z0-9_\-]+"), "sk-***"),
    (re.compile(r"Bearer\s+[^\s\"']+"), "Bearer ***"),
    (re.compile(r"AIza[0-9A-Za-z_\-]{10,}"), "AIza***"),
]


def sanitize_log_message(message: str, max_length: int | None = 100) -> str:
    """Mask API keys and bearer tokens, then truncate for logging."""
    sanitized = message or ""
    for pattern, replacement in _SECRET_PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)
    if max_length is not None and len(sanitized) > max_length:
        sanitized = sanitized[:max_length]
    return sanitized


class SecretRedactingFilter(logging.Filter):
    """Filter that masks provider secrets in third-party library log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = sanitize_log_message(record.msg, max_length=None)
        return True


def configure_logging(level: str = "INFO") -> None:
    """Configure structured logging for the API."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO))

    # Suppress verbose HTTP logging from the provider SDKs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("anthropic").setLevel(logging.WARNING)
    logging.getLogger("google_genai").setLevel(logging.WARNING)

    redacting_filter = SecretRedactingFilter()
    for name in ("openai", "anthropic", "google_genai", "httpx"):
        logging.getLogger(name).addFilter(redacting_filter)
