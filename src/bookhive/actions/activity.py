from __future__ import annotations
from typing import Optional, Dict, Any

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from bookhive.actions.common import ok, iso
from bookhive.models import ActivityLog

SYSTEM_ACTOR = "system"
DEFAULT_ADMIN = "admin"

def record_activity(
    session: AsyncSession,
    *,
    actor: str,
    action: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ActivityLog:
    """Stage an audit entry in the caller's transaction; the caller commits."""
    entry = ActivityLog(
        actor=actor or DEFAULT_ADMIN,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details or {},
        ip_address=ip_address,
        user_agent=user_agent,
    )
    session.add(entry)
    return entry

def activity_to_dict(entry: ActivityLog) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "actor": entry.actor,
        "action": entry.action,
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "details": entry.details or {},
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
        "created_at": iso(entry.created_at),
    }

async def list_activity(session: AsyncSession, *, limit: int = 100, actor: Optional[str] = None) -> Dict[str, Any]:
    q = select(ActivityLog).order_by(ActivityLog.created_at.desc()).limit(limit)
    if actor:
        q = q.where(ActivityLog.actor == actor)
    entries = (await session.execute(q)).scalars().all()
    return ok("Activity log.", items=[activity_to_dict(e) for e in entries])
