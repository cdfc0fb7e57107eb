"""Audit trail for registrations, payments and admin credit actions."""

from typing import Any

import structlog
from beanie import PydanticObjectId

from pawdia.models.audit_log import AuditLog


async def record(
    event: str,
    account_id: PydanticObjectId | None,
    *,
    actor_id: str | None = None,
    entity_type: str = "account",
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuditLog:
    """Insert one audit entry, tagged with the request id bound for this request."""
    entry = AuditLog(
        event=event,
        account_id=account_id,
        actor_id=actor_id,
        entity_type=entity_type,
        entity_id=entity_id if entity_id is not None else (str(account_id) if account_id else None),
        request_id=structlog.contextvars.get_contextvars().get("request_id"),
        metadata=metadata or {},
    )
    await entry.insert()
    return entry


async def recent_for_account(account_id: PydanticObjectId, limit: int = 20) -> list[AuditLog]:
    return (
        await AuditLog.find(AuditLog.account_id == account_id)
        .sort(-AuditLog.created_at)
        .limit(limit)
        .to_list()
    )


def entry_to_dict(e: AuditLog) -> dict:
    return {
        "event": e.event,
        "actor_id": e.actor_id,
        "entity_type": e.entity_type,
        "entity_id": e.entity_id,
        "request_id": e.request_id,
        "metadata": e.metadata,
        "created_at": e.created_at.isoformat(),
    }
