"""Turn one successful payment into exactly one order or appointment.

Two layers cooperate. :class:`PaymentLocks` is a process-local set of
payment references currently being finalized; it only smooths out
concurrent duplicates inside one process. The unique constraint on the
model's payment-reference column is the real guarantee: a losing insert
raises ``IntegrityError`` and is answered with the winner's record.
"""
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Set

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from petcare.errors import PaymentNotCompletedError
from petcare.stripe_service import GatewayPayment

logger = logging.getLogger(__name__)

DEFAULT_WAIT_SECONDS = float(os.getenv("PAYMENT_LOCK_WAIT_SECONDS", "1.0"))


class PaymentLocks:
    """In-flight payment references for this process."""

    def __init__(self, wait_seconds: float = DEFAULT_WAIT_SECONDS):
        self.wait_seconds = wait_seconds
        self._guard = threading.Lock()
        self._in_flight: Set[str] = set()

    def claim(self, reference: str) -> bool:
        """Mark ``reference`` in flight. False if another request already had it."""
        with self._guard:
            if reference in self._in_flight:
                return False
            self._in_flight.add(reference)
            return True

    def release(self, reference: str) -> None:
        with self._guard:
            self._in_flight.discard(reference)

    def in_flight(self, reference: str) -> bool:
        with self._guard:
            return reference in self._in_flight

    def wait(self) -> None:
        time.sleep(self.wait_seconds)


payment_locks = PaymentLocks()


@dataclass
class FinalizeResult:
    record: object
    is_duplicate: bool = False


def find_by_reference(db: Session, model, reference: str):
    column = getattr(model, model.__payment_reference__)
    return db.query(model).filter(column == reference).first()


def finalize_payment(
    db: Session,
    model,
    reference: str,
    fetch_payment: Callable[[], GatewayPayment],
    build_record: Callable[[GatewayPayment], object],
    locks: Optional[PaymentLocks] = None,
    on_created: Optional[Callable[[object], None]] = None,
) -> FinalizeResult:
    locks = locks or payment_locks

    if locks.in_flight(reference):
        logger.info("Payment %s is already being processed, waiting...", reference)
        locks.wait()
        existing = find_by_reference(db, model, reference)
        if existing:
            return FinalizeResult(existing, is_duplicate=True)

    owned = locks.claim(reference)
    try:
        existing = find_by_reference(db, model, reference)
        if existing:
            logger.info("%s already exists for payment %s", model.__name__, reference)
            return FinalizeResult(existing, is_duplicate=True)

        payment = fetch_payment()
        if not payment.succeeded:
            raise PaymentNotCompletedError(reference, payment.status)

        record = build_record(payment)
        db.add(record)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning("Duplicate %s attempt for payment %s", model.__name__, reference)
            existing = find_by_reference(db, model, reference)
            if existing is None:
                # the violated constraint was not the payment reference
                raise
            return FinalizeResult(existing, is_duplicate=True)

        db.refresh(record)
        if on_created:
            on_created(record)
        return FinalizeResult(record)
    finally:
        if owned:
            locks.release(reference)
