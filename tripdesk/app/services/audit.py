"""
Audit logging service for schedule changes.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from tripdesk.app.models.audit_log import AuditLog


class AuditAction:
    """Standardized audit action constants."""
    SCHEDULE_CREATED = "SCHEDULE_CREATED"
    SCHEDULE_UPDATED = "SCHEDULE_UPDATED"
    SCHEDULE_CANCELLED = "SCHEDULE_CANCELLED"
    SCHEDULE_DELETED = "SCHEDULE_DELETED"
    TRIP_STARTED = "TRIP_STARTED"
    TRIP_COMPLETED = "TRIP_COMPLETED"


async def log_event(
    db: AsyncSession,
    action: str,
    actor_id: Optional[int] = None,
    schedule_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> AuditLog:
    """
    Write an audit entry in its own commit.

    Called after the schedule change itself has been committed, so a failing
    audit write never undoes the change.

    Args:
        db: Database session
        action: Action being performed (use AuditAction constants)
        actor_id: ID of user performing the action
        schedule_id: Schedule the action applies to
        metadata: Additional context as JSON

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        action=action,
        schedule_id=schedule_id,
        meta_data=metadata
    )

    db.add(audit_log)
    await db.commit()

    return audit_log


async def get_schedule_history(
    db: AsyncSession,
    schedule_id: int,
    limit: int = 50
) -> list[AuditLog]:
    """
    Get the audit trail of one schedule, most recent first.
    """
    query = select(AuditLog).where(
        AuditLog.schedule_id == schedule_id
    ).order_by(desc(AuditLog.timestamp), desc(AuditLog.id)).limit(limit)

    result = await db.execute(query)
    return result.scalars().all()
