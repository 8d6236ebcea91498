"""
Audit logging for tracking pipeline actions.

SECURITY: Never log message bodies, subjects, recipient addresses,
LLM prompts, or LLM responses. Only log metadata (ids, categories,
counts, latencies).

Usage:
    from inboxsync.logging.audit import audit
    audit.info("email.classified", record_id="9f1c...", category="Interested")
"""

import logging
from typing import Any


class AuditLogger:
    """Thin wrapper around logging that enforces structured action fields."""

    def __init__(self):
        self._logger = logging.getLogger("audit")

    def info(self, action: str, **fields: Any) -> None:
        self._logger.info(action, extra={"action": action, **fields})

    def warning(self, action: str, **fields: Any) -> None:
        self._logger.warning(action, extra={"action": action, **fields})

    def error(self, action: str, **fields: Any) -> None:
        self._logger.error(action, extra={"action": action, **fields})


audit = AuditLogger()
