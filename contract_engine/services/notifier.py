from __future__ import annotations

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class Notifier:
    """
    Fire-and-forget user notifications (contract created, signed, paid ...).
    The default implementation only logs; delivery channels plug in by subclassing.
    """

    def notify(self, user_id: str, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        logger.info("notify", extra={"user_id": user_id, "event": event, "payload": payload or {}})


def safe_notify(notifier: Notifier, user_id: str, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
    # notification failure never fails the business operation
    try:
        notifier.notify(user_id, event, payload)
    except Exception:
        logger.exception("notify_failed", extra={"user_id": user_id, "event": event})
