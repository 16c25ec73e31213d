class BookingError(Exception):
    """Base class for errors raised by the booking and payment core."""


class FormatError(BookingError):
    pass


class UnavailableDayError(BookingError):
    def __init__(self, day: str, allowed_days):
        self.day = day
        self.allowed_days = list(allowed_days)
        super().__init__(
            f"Doctor is not available on {day}. Available days: {', '.join(self.allowed_days)}"
        )


class OutsideHoursError(BookingError):
    def __init__(self, start: str, end: str):
        self.start = start
        self.end = end
        super().__init__(f"Selected time is outside doctor's available hours ({start} - {end})")


class ConflictError(BookingError):
    def __init__(self, appointment_id: str, time: str, patient_email: str):
        self.appointment_id = appointment_id
        self.time = time
        self.patient_email = patient_email
        super().__init__(f"Doctor already has an appointment at {time}")

    def as_dict(self):
        return {
            "appointmentId": self.appointment_id,
            "time": self.time,
            "patientEmail": self.patient_email,
        }


class PaymentNotCompletedError(BookingError):
    def __init__(self, reference: str, status: str):
        self.reference = reference
        self.status = status
        super().__init__("Payment not completed")


class MetadataError(BookingError):
    """Gateway metadata cannot be decoded; fatal for that payment."""


class NotFoundError(BookingError):
    pass


class CouponError(BookingError):
    pass
