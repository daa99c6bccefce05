from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from panelsync.core.errors import PanelRejectedError, PanelSyncError
from panelsync.domain.models import Panel, ProvisioningAttempt
from panelsync.domain.provisioning import AttemptSummary
from panelsync.persistence.repos import attempts as attempts_repo
from panelsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["password", "token", "authorization", "secret"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def redact(value: Any) -> Any:
    """Recursively replace credential-looking fields before a payload is persisted."""
    if isinstance(value, dict):
        redacted: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            redacted[key] = _REDACTED_VALUE if _is_sensitive_key(key) else redact(raw_value)
        return redacted
    if isinstance(value, list):
        return [redact(item) for item in value]
    return value


def _as_document(value: Any) -> dict[str, Any] | None:
    # JSON columns hold objects; bare lists and strings get wrapped.
    if value is None:
        return None
    if isinstance(value, dict):
        return redact(value)
    return {"body": redact(value)}


async def record_attempt(
    session: AsyncSession,
    *,
    subscription_id: str | None,
    operation: str,
    request: Any = None,
    response: Any = None,
    success: bool,
    error: Exception | None = None,
    panel: Panel | None = None,
) -> ProvisioningAttempt:
    """Append one attempt row; existing rows are never updated.

    The row is added and flushed on the caller's session so it commits together
    with whatever subscription change the attempt produced.
    """
    if response is None and isinstance(error, PanelRejectedError):
        response = {"status_code": error.status_code, "body": error.body}
    attempt = ProvisioningAttempt(
        subscription_id=subscription_id,
        operation=operation,
        request_json=_as_document(request),
        response_json=_as_document(response),
        success=success,
        error_kind=error.kind if isinstance(error, PanelSyncError) else None,
        error_message=str(error) if error is not None else None,
        panel_id=panel.id if panel is not None else None,
        panel_name=panel.name if panel is not None else None,
        panel_url=panel.base_url if panel is not None else None,
    )
    session.add(attempt)
    await session.flush()
    increment_counter(f"provisioning_attempts_total.{operation}.{'success' if success else 'failure'}")
    logger.info(
        "provisioning_attempt_recorded subscription=%s operation=%s success=%s kind=%s",
        subscription_id,
        operation,
        success,
        attempt.error_kind,
    )
    return attempt


def summarize(attempt: ProvisioningAttempt) -> AttemptSummary:
    return AttemptSummary(
        id=attempt.id,
        operation=attempt.operation,
        success=attempt.success,
        error_kind=attempt.error_kind,
        error_message=attempt.error_message,
        panel_id=attempt.panel_id,
        panel_name=attempt.panel_name,
        created_at=attempt.created_at,
    )


async def attempt_history(
    session: AsyncSession,
    subscription_id: str,
    *,
    limit: int | None = None,
) -> list[AttemptSummary]:
    # Newest first.
    attempts = await attempts_repo.list_attempts(session, subscription_id, limit=limit)
    return [summarize(attempt) for attempt in attempts]
