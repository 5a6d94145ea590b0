"""Observability utilities (logging setup, redaction)."""

from skill_manager.observability.logging_setup import configure_logging
from skill_manager.observability.redaction import mask_span, redact_text, redact_url

__all__ = [
    "configure_logging",
    "mask_span",
    "redact_text",
    "redact_url",
]
