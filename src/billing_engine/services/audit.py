"""Audit event recording."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.models import AuditEvent


async def record_audit(
    session: AsyncSession,
    *,
    entity_type: str,
    entity_id: UUID,
    action: str,
    actor: str | None = None,
    details: dict[str, Any] | None = None,
) -> AuditEvent:
    """Record an audit event in the caller's transaction."""
    event = AuditEvent(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor=actor,
        details_json=details,
    )
    session.add(event)
    return event


async def list_audit_events(
    session: AsyncSession, entity_type: str, entity_id: UUID
) -> list[AuditEvent]:
    """Audit trail for one entity, oldest first."""
    result = await session.execute(
        select(AuditEvent)
        .where(AuditEvent.entity_type == entity_type, AuditEvent.entity_id == entity_id)
        .order_by(AuditEvent.created_at)
    )
    return list(result.scalars().all())
