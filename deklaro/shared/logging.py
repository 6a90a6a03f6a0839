"""Logging setup and secret scrubbing.

Session tokens and credentials never reach log output or persisted error
messages: ``scrub_secrets`` is applied to every failure message before it is
stored, and ``SecretScrubbingFilter`` redacts whatever slips into log records.
"""

import logging
import re

from deklaro.shared.config import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
REDACTED = "[REDACTED]"

_SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    # Authorization: Bearer xxx / SessionToken: xxx headers
    re.compile(r"(?i)(bearer\s+)[A-Za-z0-9\-._~+/=]+"),
    re.compile(r"(?i)(sessiontoken[\"']?\s*[:=]\s*[\"']?)[^\s\"',}]+"),
    # JSON or query style token/key/password fields
    re.compile(
        r"(?i)([\"']?(?:token|api[_-]?key|secret(?:_key)?|password|authorization)"
        r"[\"']?\s*[:=]\s*[\"']?)[^\s\"',}&]+"
    ),
    # OpenAI style keys
    re.compile(r"()sk-[A-Za-z0-9_\-]{8,}"),
)


def scrub_secrets(text: str) -> str:
    """Redact tokens, keys and passwords from a message.

    Args:
        text: Message that may contain credentials

    Returns:
        Message with credential values replaced by ``[REDACTED]``
    """
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(lambda m: f"{m.group(1)}{REDACTED}", text)
    return text


class SecretScrubbingFilter(logging.Filter):
    """Logging filter that redacts credentials from formatted messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        scrubbed = scrub_secrets(message)
        if scrubbed != message:
            record.msg = scrubbed
            record.args = None
        return True


def configure_logging(settings: Settings) -> None:
    """Configure root logging for API and worker processes.

    Args:
        settings: Application settings (log level)
    """
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    scrubber = SecretScrubbingFilter()
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, SecretScrubbingFilter) for f in handler.filters):
            handler.addFilter(scrubber)
    # httpx logs full request URLs at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
