"""Typed records carried through the payment gateway's metadata.

Stripe metadata is a flat map of strings, so nested values are JSON-encoded
on the way out and decoded (once) when the payment is finalized.
"""
import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from petcare.errors import MetadataError

GUEST_USER = "guest"


class BookingIntent(BaseModel):
    doctor_id: str
    doctor_name: str
    doctor_email: str
    appointment_date: str
    appointment_time: str
    user_id: str
    user_email: str
    fee_bdt: float
    fee_usd: float

    def to_metadata(self) -> Dict[str, str]:
        return {
            "type": "appointment",
            "doctorId": self.doctor_id,
            "doctorName": self.doctor_name,
            "doctorEmail": self.doctor_email,
            "appointmentDate": self.appointment_date,
            "appointmentTime": self.appointment_time,
            "userId": self.user_id,
            "userEmail": self.user_email,
            "feeBDT": str(self.fee_bdt),
            "feeUSD": str(self.fee_usd),
        }

    @classmethod
    def from_metadata(cls, metadata: Dict[str, str]) -> "BookingIntent":
        metadata = dict(metadata or {})
        try:
            return cls(
                doctor_id=metadata["doctorId"],
                doctor_name=metadata["doctorName"],
                doctor_email=metadata["doctorEmail"],
                appointment_date=metadata["appointmentDate"],
                appointment_time=metadata["appointmentTime"],
                user_id=metadata["userId"],
                user_email=metadata["userEmail"],
                fee_bdt=metadata["feeBDT"],
                fee_usd=metadata["feeUSD"],
            )
        except (KeyError, ValidationError) as exc:
            raise MetadataError(f"Invalid appointment metadata: {exc}") from exc


class CheckoutIntent(BaseModel):
    user_id: str = GUEST_USER
    user_email: Optional[str] = None
    billing_details: Dict[str, Any] = Field(default_factory=dict)
    items: List[Dict[str, Any]] = Field(default_factory=list)
    subtotal_bdt: float = 0
    shipping_bdt: float = 0
    tax_bdt: float = 0
    discount_bdt: float = 0
    total_bdt: float = 0
    coupon_code: str = ""

    @property
    def is_guest(self) -> bool:
        return not self.user_id or self.user_id == GUEST_USER

    def to_metadata(self) -> Dict[str, str]:
        return {
            "type": "order",
            "userId": self.user_id,
            "userEmail": self.user_email or "",
            "billingDetails": json.dumps(self.billing_details),
            "items": json.dumps(self.items),
            "subtotalBDT": str(self.subtotal_bdt),
            "shippingBDT": str(self.shipping_bdt),
            "taxBDT": str(self.tax_bdt),
            "discountBDT": str(self.discount_bdt),
            "totalBDT": str(self.total_bdt),
            "couponCode": self.coupon_code,
        }

    @classmethod
    def from_metadata(cls, metadata: Dict[str, str]) -> "CheckoutIntent":
        metadata = dict(metadata or {})
        try:
            return cls(
                user_id=metadata.get("userId") or GUEST_USER,
                user_email=metadata.get("userEmail") or None,
                billing_details=json.loads(metadata.get("billingDetails") or "{}"),
                items=json.loads(metadata.get("items") or "[]"),
                subtotal_bdt=metadata.get("subtotalBDT") or 0,
                shipping_bdt=metadata.get("shippingBDT") or 0,
                tax_bdt=metadata.get("taxBDT") or 0,
                discount_bdt=metadata.get("discountBDT") or 0,
                total_bdt=metadata.get("totalBDT") or 0,
                coupon_code=metadata.get("couponCode") or "",
            )
        except (json.JSONDecodeError, ValidationError) as exc:
            raise MetadataError(f"Invalid order metadata: {exc}") from exc
