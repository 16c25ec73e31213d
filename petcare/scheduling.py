"""Appointment time parsing, availability and double-booking checks.

Appointment times travel as 12-hour strings ("2:30 PM") and dates as
whatever the client sent. Both are turned into an :class:`AppointmentSlot`
once at the boundary; comparisons happen on minutes since midnight.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from petcare.errors import FormatError, OutsideHoursError, UnavailableDayError
from petcare.models import Appointment, Doctor

logger = logging.getLogger(__name__)

CONFLICT_WINDOW_MINUTES = 60

WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

_CLOCK_RE = re.compile(r"^(\d{1,2}):(\d{2})\s*(AM|PM)$", re.IGNORECASE)
_WINDOW_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

_DATE_FORMATS = ("%m/%d/%Y", "%d/%m/%Y", "%a %b %d %Y", "%B %d, %Y")


def parse_clock_time(text: str) -> int:
    """Convert "H:MM AM/PM" to minutes since midnight (0..1439)."""
    match = _CLOCK_RE.match(text.strip()) if isinstance(text, str) else None
    if not match:
        raise FormatError(f"Invalid time format: {text}. Expected format: HH:MM AM/PM")

    hours = int(match.group(1))
    minutes = int(match.group(2))
    period = match.group(3).upper()

    if hours < 1 or hours > 12 or minutes > 59:
        raise FormatError(f"Invalid time values: {text}")

    if period == "AM":
        if hours == 12:
            hours = 0
    elif hours != 12:
        hours += 12

    return hours * 60 + minutes


def parse_window_time(text: str) -> int:
    """Convert a 24-hour "HH:MM" availability bound to minutes since midnight."""
    match = _WINDOW_RE.match(text.strip()) if isinstance(text, str) else None
    if not match:
        raise FormatError(f"Invalid availability time: {text}. Expected format: HH:MM")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 24 or minutes > 59 or (hours == 24 and minutes):
        raise FormatError(f"Invalid availability time: {text}")
    return hours * 60 + minutes


def weekday_name(date_text: str) -> str:
    text = (date_text or "").strip()
    try:
        # ISO date or datetime; only the calendar part matters
        return datetime.fromisoformat(text[:10]).strftime("%A")
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).strftime("%A")
        except ValueError:
            continue
    raise FormatError(f"Invalid appointment date: {date_text}")


@dataclass(frozen=True)
class AppointmentSlot:
    date: str
    minutes: int

    @classmethod
    def parse(cls, date: str, time_text: str) -> "AppointmentSlot":
        return cls(date=date, minutes=parse_clock_time(time_text))

    def clashes(self, other: "AppointmentSlot", window: int = CONFLICT_WINDOW_MINUTES) -> bool:
        # open interval: exactly `window` minutes apart is not a clash
        return self.date == other.date and abs(self.minutes - other.minutes) < window


@dataclass
class ConflictResult:
    conflict: bool
    appointment_id: Optional[str] = None
    time: Optional[str] = None
    patient_email: Optional[str] = None

    @property
    def message(self) -> Optional[str]:
        if not self.conflict:
            return None
        return f"Doctor already has an appointment at {self.time}"


@dataclass
class AvailabilityResult:
    day: Optional[str]
    always_available: bool = False


def stored_slot(appointment: Appointment) -> Optional[AppointmentSlot]:
    """Slot of a stored appointment, or None (logged) if its time is unreadable."""
    try:
        return AppointmentSlot.parse(appointment.appointment_date, appointment.appointment_time)
    except FormatError as exc:
        logger.error(
            "Skipping appointment %s with unreadable time: %s",
            appointment.appointment_id, exc
        )
        return None


def has_conflict(doctor_id, date: str, requested_time: str,
                 existing: Iterable[Appointment]) -> ConflictResult:
    slot = AppointmentSlot.parse(date, requested_time)

    for appointment in existing:
        if appointment.status == "cancelled":
            continue
        if str(appointment.doctor_id) != str(doctor_id) or appointment.appointment_date != date:
            continue
        other = stored_slot(appointment)
        if other is None:
            continue

        if slot.clashes(other):
            return ConflictResult(
                conflict=True,
                appointment_id=appointment.appointment_id,
                time=appointment.appointment_time,
                patient_email=appointment.user_email,
            )

    return ConflictResult(conflict=False)


def active_appointments(db: Session, doctor_id, date: str) -> List[Appointment]:
    return (
        db.query(Appointment)
        .filter(
            Appointment.doctor_id == str(doctor_id),
            Appointment.appointment_date == date,
            Appointment.status != "cancelled",
        )
        .all()
    )


def find_conflict(db: Session, doctor_id, date: str, requested_time: str) -> ConflictResult:
    return has_conflict(doctor_id, date, requested_time, active_appointments(db, doctor_id, date))


def validate_availability(doctor: Doctor, date: str, requested_time: str) -> AvailabilityResult:
    if not doctor.available_days:
        logger.info("Doctor %s has no availability settings, allowing booking", doctor.email)
        return AvailabilityResult(day=None, always_available=True)

    day = weekday_name(date)
    if day not in doctor.available_days:
        raise UnavailableDayError(day, doctor.available_days)

    if doctor.available_time_start and doctor.available_time_end:
        requested = parse_clock_time(requested_time)
        start = parse_window_time(doctor.available_time_start)
        end = parse_window_time(doctor.available_time_end)
        if requested < start or requested >= end:
            raise OutsideHoursError(doctor.available_time_start, doctor.available_time_end)

    return AvailabilityResult(day=day)


def normalize_availability(days: Optional[Iterable[str]], start: Optional[str],
                           end: Optional[str]) -> Tuple[List[str], Optional[str], Optional[str]]:
    """Check a doctor's weekly availability before it is stored.

    Day names are matched case-insensitively and returned in week order. The
    hours window is optional, but both bounds must be given together and the
    start must come before the end.
    """
    normalized = []
    for day in days or []:
        name = str(day).strip().capitalize()
        if name not in WEEKDAYS:
            raise FormatError(f"Invalid available day: {day}")
        if name not in normalized:
            normalized.append(name)
    normalized.sort(key=WEEKDAYS.index)

    if bool(start) != bool(end):
        raise FormatError("Both available time start and end are required")
    if start and end:
        start, end = start.strip(), end.strip()
        if parse_window_time(start) >= parse_window_time(end):
            raise FormatError(f"Available time start {start} must be before end {end}")
    return normalized, start or None, end or None
