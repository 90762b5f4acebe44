import pytest
from datetime import date, timedelta
from sqlalchemy import select, func
from bookhive import models
from bookhive.config import settings
from bookhive.actions.loans import manage_loan
from bookhive.actions.overdue import run_overdue_check
from bookhive.actions.notifications import deliver_queued_notifications

pytestmark = pytest.mark.asyncio

TODAY = date(2026, 3, 2)

@pytest.fixture(autouse=True)
def _flat_fee(monkeypatch):
    monkeypatch.setattr(settings, "LATE_FEE_PER_DAY_CENTS", 100)
    monkeypatch.setattr(settings, "LATE_FEE_CAP_CENTS", None)

async def _loan(session, loan_id):
    r = await session.execute(select(models.Loan.status, models.Loan.late_fee_cents).where(models.Loan.id == loan_id))
    return r.one()

async def _queued(session):
    r = await session.execute(select(models.NotificationQueue).order_by(models.NotificationQueue.created_at))
    return r.scalars().all()

async def test_loan_five_days_late_is_marked_overdue_once(session, make_loan):
    loan_id, _ = await make_loan(duration=14)
    sweep_day = TODAY + timedelta(days=14 + 5)

    r = await run_overdue_check(session, today=sweep_day)
    assert r["ok"] is True
    assert r["data"] == {"processed_count": 1, "total_overdue": 1}
    loan = await _loan(session, loan_id)
    assert loan.status == models.LoanStatus.OVERDUE
    assert loan.late_fee_cents == 5 * 100
    queued = await _queued(session)
    assert len(queued) == 1
    assert queued[0].payload["days_overdue"] == 5
    assert queued[0].payload["fine_amount"] == 5.0
    assert queued[0].to_email == "alice@example.com"
    assert "Overdue" in queued[0].subject

    r2 = await run_overdue_check(session, today=sweep_day)
    assert r2["data"] == {"processed_count": 0, "total_overdue": 1}
    loan = await _loan(session, loan_id)
    assert loan.late_fee_cents == 500
    assert len(await _queued(session)) == 1

async def test_fee_follows_the_calendar_not_the_run_count(session, make_loan):
    loan_id, _ = await make_loan(duration=14)
    due = TODAY + timedelta(days=14)
    await run_overdue_check(session, today=due + timedelta(days=1))
    await run_overdue_check(session, today=due + timedelta(days=1))
    await run_overdue_check(session, today=due + timedelta(days=3))
    loan = await _loan(session, loan_id)
    assert loan.late_fee_cents == 300
    assert len(await _queued(session)) == 2

async def test_fee_cap(session, make_loan, monkeypatch):
    monkeypatch.setattr(settings, "LATE_FEE_PER_DAY_CENTS", 50)
    monkeypatch.setattr(settings, "LATE_FEE_CAP_CENTS", 2500)
    loan_id, _ = await make_loan(duration=7)
    await run_overdue_check(session, today=TODAY + timedelta(days=7 + 90))
    assert (await _loan(session, loan_id)).late_fee_cents == 2500

async def test_loans_not_yet_due_or_returned_are_ignored(session, make_loan, mailer):
    on_time, _ = await make_loan(duration=30)
    returned, _ = await make_loan(duration=3)
    due_today, _ = await make_loan(duration=10)
    await manage_loan(session, mailer, loan_id=returned, action="return", today=TODAY + timedelta(days=1))

    r = await run_overdue_check(session, today=TODAY + timedelta(days=10))
    assert r["data"] == {"processed_count": 0, "total_overdue": 0}
    assert (await _loan(session, on_time)).status == models.LoanStatus.ACTIVE
    assert (await _loan(session, returned)).status == models.LoanStatus.RETURNED
    assert (await _loan(session, due_today)).status == models.LoanStatus.ACTIVE
    assert await _queued(session) == []

async def test_sweep_logs_summary_and_per_loan_entries(session, make_loan):
    loan_id, _ = await make_loan(duration=1)
    await run_overdue_check(session, today=TODAY + timedelta(days=4))
    rows = (await session.execute(
        select(models.ActivityLog.action, models.ActivityLog.actor, models.ActivityLog.entity_id)
        .where(models.ActivityLog.actor == "system")
    )).all()
    actions = {row.action: row for row in rows}
    assert actions["Loan marked overdue"].entity_id == loan_id
    assert "Daily overdue check completed" in actions

async def test_queued_notices_are_delivered(session, make_loan, mailer):
    await make_loan(duration=1)
    await make_loan(duration=2)
    await run_overdue_check(session, today=TODAY + timedelta(days=5))
    sent_before = len(mailer.sent)

    r = await deliver_queued_notifications(session, mailer)
    assert r["data"] == {"sent": 2, "failed": 0}
    assert len(mailer.sent) == sent_before + 2
    statuses = {q.status for q in await _queued(session)}
    assert statuses == {models.QueueStatus.SENT}

    r2 = await deliver_queued_notifications(session, mailer)
    assert r2["data"] == {"sent": 0, "failed": 0}

async def test_failed_delivery_marks_queue_entry(session, make_loan, failing_mailer):
    await make_loan(duration=1)
    await run_overdue_check(session, today=TODAY + timedelta(days=5))

    r = await deliver_queued_notifications(session, failing_mailer)
    assert r["data"] == {"sent": 0, "failed": 1}
    entry = (await _queued(session))[0]
    assert entry.status == models.QueueStatus.FAILED
    assert entry.attempts == 1
    count = (await session.execute(
        select(func.count()).select_from(models.NotificationQueue)
        .where(models.NotificationQueue.status == models.QueueStatus.PENDING)
    )).scalar_one()
    assert count == 0
