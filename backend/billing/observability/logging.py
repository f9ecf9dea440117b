"""Structured logging helpers for billing and round-up donation events."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("billing")
roundup_logger = logging.getLogger("roundups.events")


def _build_payload(
    *,
    message: str,
    request_id: Optional[str] = None,
    user_id: Optional[Any] = None,
    actor: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"message": message}
    if request_id:
        payload["request_id"] = request_id
    if user_id:
        payload["user_id"] = str(user_id)
    if actor:
        payload["actor"] = actor
    if extra:
        payload.update(extra)
    return payload


def log_billing_event(*, message: str, request_id: Optional[str] = None, user_id: Optional[Any] = None,
                      actor: Optional[str] = None, extra: Optional[Dict[str, Any]] = None) -> None:
    logger.info(_build_payload(message=message, request_id=request_id, user_id=user_id, actor=actor, extra=extra))


def log_roundup_event(*, message: str, config_id: Optional[Any] = None, user_id: Optional[Any] = None,
                      level: int = logging.INFO, extra: Optional[Dict[str, Any]] = None) -> None:
    payload = _build_payload(message=message, user_id=user_id, actor="system", extra=extra)
    if config_id:
        payload["config_id"] = str(config_id)
    roundup_logger.log(level, payload)
