import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ..config import get_settings
from ..db.session import SessionLocal
from ..services import (
    booking_service,
    group_lesson_service,
    payment_deadline_service,
    reconciliation_service,
    recurring_service,
)

logger = logging.getLogger(__name__)


def enforce_payment_deadlines() -> None:
    with SessionLocal() as db:
        result = payment_deadline_service.run_payment_deadlines(db)
    if result.errors:
        logger.error("Payment deadline run had errors", extra={"error_count": len(result.errors)})


def release_expired_seat_holds() -> None:
    with SessionLocal() as db:
        result = group_lesson_service.release_expired_seat_holds(db)
    logger.info("Seat hold sweep", extra={"processed": result.processed, "error_count": len(result.errors)})


def cancel_underfilled_lessons() -> None:
    with SessionLocal() as db:
        result = group_lesson_service.cancel_underfilled_lessons(db)
    logger.info("Under-filled lesson sweep", extra={"processed": result.processed, "error_count": len(result.errors)})


def reconcile_payments() -> None:
    with SessionLocal() as db:
        reconciliation_service.reconcile_pending_holds(db)
        reconciliation_service.reconcile_pending_refunds(db)


def generate_recurring_lessons() -> None:
    with SessionLocal() as db:
        result = recurring_service.generate_all(db)
    logger.info("Recurring generation", extra={"processed": result.processed, "error_count": len(result.errors)})


def auto_complete_bookings() -> None:
    with SessionLocal() as db:
        result = booking_service.auto_complete_bookings(db)
    logger.info("Auto-completion", extra={"processed": result.processed, "error_count": len(result.errors)})


def get_scheduler() -> AsyncIOScheduler:
    settings = get_settings()
    scheduler = AsyncIOScheduler()
    scheduler.add_job(enforce_payment_deadlines, "interval", minutes=settings.deadline_scan_interval_min)
    scheduler.add_job(release_expired_seat_holds, "interval", minutes=settings.seat_hold_sweep_interval_min)
    scheduler.add_job(cancel_underfilled_lessons, "interval", minutes=15)
    scheduler.add_job(reconcile_payments, "interval", minutes=15)
    scheduler.add_job(generate_recurring_lessons, "interval", days=1)
    scheduler.add_job(auto_complete_bookings, "interval", days=1)
    return scheduler
