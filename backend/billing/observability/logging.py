"""Structured logging helper for billing reconciliation."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("billing")


def log_billing_event(*, message: str, event_id: Optional[str] = None, user_id: Optional[Any] = None,
                      actor: Optional[str] = None, level: int = logging.INFO,
                      extra: Optional[Dict[str, Any]] = None) -> None:
    payload: Dict[str, Any] = {"message": message}
    if event_id:
        payload["event_id"] = event_id
    if user_id is not None:
        payload["user_id"] = str(user_id)
    if actor:
        payload["actor"] = actor
    if extra:
        payload.update(extra)
    logger.log(level, payload)
