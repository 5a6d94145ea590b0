"""Logging helpers and filters.

This module centralizes logging setup so the command layer and tests can
apply the same configuration.
"""

from __future__ import annotations

import logging
import sys

from skill_manager.config import SkillsConfig
from skill_manager.observability.redaction import redact_text

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class RedactSecretsFilter(logging.Filter):
    """Redact credential-shaped substrings from log records.

    Skill content is untrusted and may contain live credentials; anything
    that ends up in a log message (subprocess output, file excerpts) goes
    through redaction first.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True

        redacted = redact_text(message, max_chars=0)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def configure_logging(level: str | int | None = None) -> None:
    """Configure root logging to stderr.

    Without an explicit level the configured `log_level` is used
    (SKILLS_LOG_LEVEL). Safe to call multiple times.
    """

    if level is None:
        level = SkillsConfig().log_level

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    logging.getLogger().setLevel(level)

    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, RedactSecretsFilter) for f in handler.filters):
            handler.addFilter(RedactSecretsFilter())
