import logging
from datetime import date, datetime, timedelta
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from petcare.currency import to_minor_units, usd_to_bdt
from petcare.errors import BookingError, ConflictError, NotFoundError
from petcare.idempotency import FinalizeResult, PaymentLocks, finalize_payment
from petcare.intents import BookingIntent
from petcare.models import Appointment, Doctor
from petcare.scheduling import (
    active_appointments,
    find_conflict,
    has_conflict,
    normalize_availability,
    stored_slot,
    validate_availability,
)
from petcare.stripe_service import (
    GatewayPayment,
    create_payment,
    generate_meet_link,
    new_appointment_id,
    retrieve_payment,
)

logger = logging.getLogger(__name__)


def find_doctor(db: Session, doctor_id: str, doctor_email: str) -> Optional[Doctor]:
    filters = [Doctor.email == doctor_email]
    if str(doctor_id).isdigit():
        filters.append(Doctor.id == int(doctor_id))
    return db.query(Doctor).filter(or_(*filters)).first()


def list_doctors(db: Session) -> List[Doctor]:
    return db.query(Doctor).order_by(Doctor.name).all()


def save_doctor_profile(db: Session, email: str, name: Optional[str] = None,
                        fee_usd: Optional[float] = None,
                        available_days: Optional[List[str]] = None,
                        available_time_start: Optional[str] = None,
                        available_time_end: Optional[str] = None) -> Doctor:
    """Create or update the profile of the doctor signed in as ``email``.

    The weekly availability replaces whatever was stored; an empty day list
    means the doctor takes bookings on any day.
    """
    days, start, end = normalize_availability(
        available_days, available_time_start, available_time_end)
    if fee_usd is not None and fee_usd <= 0:
        raise BookingError("Invalid consultation fee")

    doctor = db.query(Doctor).filter_by(email=email).first()
    if doctor is None:
        if not name:
            raise BookingError("Name is required to create a doctor profile")
        doctor = Doctor(email=email, name=name)
        db.add(doctor)
    elif name:
        doctor.name = name

    if fee_usd is not None:
        doctor.fee_usd = fee_usd
    doctor.available_days = days
    doctor.available_time_start = start
    doctor.available_time_end = end
    db.commit()
    logger.info("Saved profile for doctor %s: %s %s-%s",
                email, ", ".join(days) or "any day", start or "", end or "")
    return doctor


def create_appointment_intent(db: Session, doctor_id: str, doctor_name: str, doctor_email: str,
                              doctor_fee: float, selected_date: str, selected_time: str,
                              user_id: str, user_email: str) -> dict:
    """Check the requested slot and open a payment for it.

    No appointment is written here; that only happens once the payment has
    succeeded (see :func:`verify_appointment_payment`).
    """
    doctor = find_doctor(db, doctor_id, doctor_email)
    if not doctor:
        raise NotFoundError("Doctor not found")

    validate_availability(doctor, selected_date, selected_time)

    conflict = find_conflict(db, doctor_id, selected_date, selected_time)
    if conflict.conflict:
        raise ConflictError(conflict.appointment_id, conflict.time, conflict.patient_email)

    fee_usd = float(doctor_fee)
    if fee_usd <= 0:
        raise BookingError("Invalid consultation fee")

    intent = BookingIntent(
        doctor_id=str(doctor_id),
        doctor_name=doctor_name,
        doctor_email=doctor_email,
        appointment_date=selected_date,
        appointment_time=selected_time,
        user_id=user_id,
        user_email=user_email,
        fee_bdt=usd_to_bdt(fee_usd),
        fee_usd=fee_usd,
    )
    payment = create_payment(to_minor_units(fee_usd), "usd", intent.to_metadata())
    logger.info("Created appointment payment %s for doctor %s on %s %s",
                payment.id, doctor_email, selected_date, selected_time)

    return {"client_secret": payment.client_secret, "payment_intent_id": payment.id}


def build_appointment(payment: GatewayPayment) -> Appointment:
    intent = BookingIntent.from_metadata(payment.metadata)
    return Appointment(
        appointment_id=new_appointment_id(),
        doctor_id=intent.doctor_id,
        doctor_name=intent.doctor_name,
        doctor_email=intent.doctor_email,
        user_id=intent.user_id,
        user_email=intent.user_email,
        appointment_date=intent.appointment_date,
        appointment_time=intent.appointment_time,
        meet_link=generate_meet_link(),
        fee_bdt=intent.fee_bdt,
        fee_usd=intent.fee_usd,
        status="confirmed",
        payment_intent_id=payment.reference,
        payment_status="completed",
    )


def _warn_if_double_booked(db: Session, appointment: Appointment) -> None:
    # payment is already captured: report an overlap, keep the record
    others = [
        a for a in active_appointments(db, appointment.doctor_id, appointment.appointment_date)
        if a.id != appointment.id
    ]
    clash = has_conflict(appointment.doctor_id, appointment.appointment_date,
                         appointment.appointment_time, others)
    if clash.conflict:
        logger.warning("Appointment %s overlaps %s at %s for doctor %s",
                       appointment.appointment_id, clash.appointment_id,
                       clash.time, appointment.doctor_email)


def verify_appointment_payment(db: Session, payment_intent_id: str,
                               locks: Optional[PaymentLocks] = None) -> FinalizeResult:
    result = finalize_payment(
        db,
        Appointment,
        payment_intent_id,
        fetch_payment=lambda: retrieve_payment(payment_intent_id),
        build_record=build_appointment,
        locks=locks,
        on_created=lambda appointment: _warn_if_double_booked(db, appointment),
    )
    if not result.is_duplicate:
        logger.info("Appointment %s confirmed for payment %s",
                    result.record.appointment_id, payment_intent_id)
    return result


def list_user_appointments(db: Session, user_id: str) -> List[Appointment]:
    return (
        db.query(Appointment)
        .filter(Appointment.user_id == user_id)
        .order_by(Appointment.created_at.desc())
        .all()
    )


def get_appointment(db: Session, appointment_id: str) -> Appointment:
    appointment = db.query(Appointment).filter_by(appointment_id=appointment_id).first()
    if not appointment:
        raise NotFoundError("Appointment not found")
    return appointment


def list_doctor_appointments(db: Session, doctor_email: str) -> List[Appointment]:
    return (
        db.query(Appointment)
        .filter(Appointment.doctor_email == doctor_email)
        .order_by(Appointment.appointment_date.desc(), Appointment.appointment_time.desc())
        .all()
    )


def _set_status(db: Session, appointment_id: str, doctor_email: str, status: str,
                stamp: str) -> Appointment:
    appointment = (
        db.query(Appointment)
        .filter_by(appointment_id=appointment_id, doctor_email=doctor_email)
        .first()
    )
    if not appointment:
        raise NotFoundError("Appointment not found")

    appointment.status = status
    setattr(appointment, stamp, datetime.utcnow())
    db.commit()
    logger.info("Appointment %s marked %s by %s", appointment_id, status, doctor_email)
    return appointment


def complete_appointment(db: Session, appointment_id: str, doctor_email: str) -> Appointment:
    return _set_status(db, appointment_id, doctor_email, "completed", "completed_at")


def cancel_appointment(db: Session, appointment_id: str, doctor_email: str) -> Appointment:
    return _set_status(db, appointment_id, doctor_email, "cancelled", "cancelled_at")


def doctor_earnings(db: Session, doctor_email: str, now: Optional[datetime] = None) -> dict:
    now = now or datetime.utcnow()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)

    paid = db.query(Appointment).filter(
        Appointment.doctor_email == doctor_email,
        Appointment.payment_status == "completed",
    )
    completed = paid.filter(Appointment.status == "completed").all()
    confirmed = paid.filter(Appointment.status == "confirmed").all()

    def total_since(since: Optional[datetime]) -> float:
        return sum(
            a.fee_usd or 0 for a in completed
            if since is None or a.created_at >= since
        )

    return {
        "total": total_since(None),
        "today": total_since(today),
        "thisWeek": total_since(today - timedelta(days=7)),
        "thisMonth": total_since(today - timedelta(days=30)),
        "pending": sum(a.fee_usd or 0 for a in confirmed),
        "transactions": [
            {
                "appointmentId": a.appointment_id,
                "patientEmail": a.user_email,
                "date": a.created_at.isoformat(),
                "amount": a.fee_usd or 0,
            }
            for a in completed
        ],
    }


def _slot_order(appointment: Appointment):
    slot = stored_slot(appointment)
    return (appointment.appointment_date, slot.minutes if slot else 24 * 60)


def doctor_stats(db: Session, doctor_email: str, today: Optional[date] = None,
                 upcoming_limit: int = 5) -> dict:
    today = (today or datetime.utcnow().date()).isoformat()
    mine = db.query(Appointment).filter(Appointment.doctor_email == doctor_email)

    earned = mine.filter(
        Appointment.status == "completed",
        Appointment.payment_status == "completed",
    ).all()
    patients = {a.user_email for a in mine.all() if a.user_email}
    upcoming = sorted(mine.filter(Appointment.status == "confirmed").all(), key=_slot_order)

    return {
        "totalAppointments": mine.count(),
        "todayAppointments": mine.filter(Appointment.appointment_date == today).count(),
        "totalEarnings": sum(a.fee_usd or 0 for a in earned),
        "totalPatients": len(patients),
        "upcomingAppointments": [a.to_dict() for a in upcoming[:upcoming_limit]],
    }
