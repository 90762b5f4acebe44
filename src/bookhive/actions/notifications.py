from __future__ import annotations
import logging
from typing import Optional, Dict, Any

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import select

from bookhive.email.client import Mailer
from bookhive.models import NotificationQueue, QueueStatus
from bookhive.actions.common import ok, err, utcnow
from bookhive.actions.activity import record_activity, SYSTEM_ACTOR

logger = logging.getLogger(__name__)

def queue_email(session: AsyncSession, *, to: str, subject: str, html: str, payload: Optional[Dict[str, Any]] = None) -> NotificationQueue:
    """Stage an outgoing email in the caller's transaction; delivered later by the queue drain."""
    entry = NotificationQueue(type="email", to_email=to, subject=subject, content=html, payload=payload or {})
    session.add(entry)
    return entry

async def _mark_queue_entry(session: AsyncSession, queue_id: Optional[str], status: QueueStatus) -> None:
    if not queue_id:
        return
    entry = await session.get(NotificationQueue, queue_id)
    if not entry:
        logger.warning("[email] Queue entry %s not found", queue_id)
        return
    entry.status = status
    entry.attempts = (entry.attempts or 0) + 1
    entry.processed_at = utcnow()

async def send_email(
    session: AsyncSession,
    mailer: Mailer,
    *,
    to: Optional[str],
    subject: Optional[str],
    html: Optional[str] = None,
    text: Optional[str] = None,
    queue_id: Optional[str] = None,
) -> Dict[str, Any]:
    if not (to and subject and (html or text)):
        return err("Missing fields to send the email (to, subject, html|text).", code="MISSING_FIELDS")
    try:
        email_id = await mailer.send(to=to, subject=subject, html=html, text=text)
    except Exception:
        logger.exception("[email] Delivery to %s failed", to)
        try:
            await _mark_queue_entry(session, queue_id, QueueStatus.FAILED)
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            logger.exception("[email] Could not mark queue entry %s as failed", queue_id)
        return err("Failed to send email", code="EMAIL_FAILED")
    try:
        await _mark_queue_entry(session, queue_id, QueueStatus.SENT)
        record_activity(
            session, actor=SYSTEM_ACTOR, action="Email sent",
            details={"to": to, "subject": subject, "email_id": email_id, "queue_id": queue_id},
        )
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("[email] Email %s sent but bookkeeping failed", email_id)
    return ok("Email sent successfully", email_id=email_id)

async def deliver_queued_notifications(session: AsyncSession, mailer: Mailer, *, limit: int = 50) -> Dict[str, Any]:
    q = (
        select(NotificationQueue)
        .where(NotificationQueue.status == QueueStatus.PENDING)
        .order_by(NotificationQueue.created_at)
        .limit(limit)
    )
    pending = (await session.execute(q)).scalars().all()
    sent = failed = 0
    for entry in pending:
        r = await send_email(session, mailer, to=entry.to_email, subject=entry.subject, html=entry.content, queue_id=entry.id)
        if r["ok"]:
            sent += 1
        else:
            failed += 1
    if pending:
        logger.info("[email] Queue drained: %d sent, %d failed", sent, failed)
    return ok("Notification queue processed.", sent=sent, failed=failed)

async def dispatch_email(
    session: AsyncSession,
    mailer: Mailer,
    *,
    to: str,
    subject: str,
    html: str,
    action: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
) -> Optional[str]:
    """Send a transactional email after its transition has been committed.

    Delivery problems are logged and reported as ``None``; they never undo the
    mutation that triggered the message.
    """
    try:
        email_id = await mailer.send(to=to, subject=subject, html=html)
    except Exception:
        logger.exception("[email] %s to %s failed", action, to)
        return None
    try:
        record_activity(
            session, actor=SYSTEM_ACTOR, action=action, entity_type=entity_type, entity_id=entity_id,
            details={"to": to, "subject": subject, "email_id": email_id, "timestamp": utcnow().isoformat()},
        )
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("[email] Could not log %s", action)
    return email_id
