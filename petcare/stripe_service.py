import os
import random
import string
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv
import stripe

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

stripe.api_key = os.getenv("STRIPE_SECRET_KEY")

_BASE36 = string.ascii_lowercase + string.digits


@dataclass
class GatewayPayment:
    reference: str
    status: str
    amount_minor: int
    metadata: Dict[str, str] = field(default_factory=dict)
    paid_status: str = "succeeded"

    @property
    def succeeded(self) -> bool:
        return self.status == self.paid_status


def _plain(metadata) -> Dict[str, str]:
    if not metadata:
        return {}
    if isinstance(metadata, dict):
        return dict(metadata)
    return metadata.to_dict()


def create_payment(amount: int, currency: str, metadata: Dict[str, str],
                   idempotency_key: Optional[str] = None):
    params = dict(
        amount=amount,
        currency=currency,
        automatic_payment_methods={"enabled": True},
        metadata=metadata,
    )
    if idempotency_key:
        params["idempotency_key"] = idempotency_key
    return stripe.PaymentIntent.create(**params)


def retrieve_payment(payment_intent_id: str) -> GatewayPayment:
    intent = stripe.PaymentIntent.retrieve(payment_intent_id)
    return GatewayPayment(
        reference=intent.id,
        status=intent.status,
        amount_minor=intent.amount,
        metadata=_plain(intent.metadata),
    )


def create_checkout_session(line_items: List[dict], metadata: Dict[str, str],
                            success_url: str, cancel_url: str):
    return stripe.checkout.Session.create(
        payment_method_types=["card"],
        line_items=line_items,
        mode="payment",
        success_url=success_url,
        cancel_url=cancel_url,
        metadata=metadata,
    )


def retrieve_checkout_payment(session_id: str) -> GatewayPayment:
    session = stripe.checkout.Session.retrieve(session_id)
    return GatewayPayment(
        reference=session.payment_intent,
        status=session.payment_status,
        amount_minor=session.amount_total,
        metadata=_plain(session.metadata),
        paid_status="paid",
    )


def refund_payment(payment_intent_id: str):
    return stripe.Refund.create(payment_intent=payment_intent_id)


def generate_meet_link() -> str:
    key = "".join(random.choices(_BASE36, k=10))
    return f"https://meet.google.com/{key[:3]}-{key[3:7]}-{key[7:]}"


def new_appointment_id() -> str:
    suffix = "".join(random.choices(_BASE36, k=7))
    return f"APT-{int(time.time() * 1000)}-{suffix}"
