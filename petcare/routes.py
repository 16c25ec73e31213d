import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Union

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from petcare import appointments, orders
from petcare.auth import require_doctor, verify_token
from petcare.database import SessionLocal
from petcare.errors import BookingError, ConflictError, MetadataError, NotFoundError
from petcare.idempotency import FinalizeResult
from petcare.models import Order
from petcare.stripe_service import refund_payment

logger = logging.getLogger(__name__)

router = APIRouter()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def domain_errors():
    try:
        yield
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail={
            "message": str(exc),
            "conflict": True,
            "existingAppointment": exc.as_dict(),
        })
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except MetadataError as exc:
        logger.error("Unusable payment metadata: %s", exc)
        raise HTTPException(status_code=422, detail=str(exc))
    except BookingError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except stripe.error.StripeError as exc:
        logger.error("Payment gateway error: %s", exc)
        raise HTTPException(status_code=502, detail="Payment gateway unavailable, please retry")


def _finalized(result: FinalizeResult, key: str, created: str, duplicate: str) -> dict:
    return {
        "success": True,
        "message": duplicate if result.is_duplicate else created,
        key: result.record.to_dict(),
        "isDuplicate": result.is_duplicate,
    }


# ---------------------------------------------------------------- appointments

class AppointmentIntentRequest(BaseModel):
    doctor_id: str
    doctor_name: str
    doctor_email: str
    doctor_fee: float
    selected_date: str
    selected_time: str
    user_id: str
    user_email: str


class VerifyPaymentRequest(BaseModel):
    payment_intent_id: str
    user_id: Optional[str] = None


class DoctorProfileRequest(BaseModel):
    name: Optional[str] = None
    fee_usd: Optional[float] = None
    available_days: List[str] = []
    available_time_start: Optional[str] = None
    available_time_end: Optional[str] = None


@router.post("/appointment/create-payment-intent")
def create_appointment_payment_api(request: AppointmentIntentRequest, db=Depends(get_db)):
    with domain_errors():
        payment = appointments.create_appointment_intent(db, **request.model_dump())
    return {
        "success": True,
        "clientSecret": payment["client_secret"],
        "paymentIntentId": payment["payment_intent_id"],
    }


@router.post("/appointment/verify-payment")
def verify_appointment_payment_api(request: VerifyPaymentRequest, db=Depends(get_db)):
    with domain_errors():
        result = appointments.verify_appointment_payment(db, request.payment_intent_id)
    return _finalized(result, "appointment",
                      "Appointment confirmed successfully", "Appointment already exists")


@router.get("/appointments/{user_id}")
def user_appointments_api(user_id: str, db=Depends(get_db)):
    items = appointments.list_user_appointments(db, user_id)
    return {"success": True, "appointments": [a.to_dict() for a in items]}


@router.get("/appointment/{appointment_id}")
def appointment_api(appointment_id: str, db=Depends(get_db)):
    with domain_errors():
        appointment = appointments.get_appointment(db, appointment_id)
    return {"success": True, "appointment": appointment.to_dict()}


@router.get("/doctor/appointments")
def doctor_appointments_api(claims=Depends(verify_token), db=Depends(get_db)):
    email = require_doctor(claims)
    items = appointments.list_doctor_appointments(db, email)
    return {"success": True, "appointments": [a.to_dict() for a in items]}


@router.get("/doctor/earnings")
def doctor_earnings_api(claims=Depends(verify_token), db=Depends(get_db)):
    email = require_doctor(claims)
    return {"success": True, "earnings": appointments.doctor_earnings(db, email)}


@router.get("/doctor/stats")
def doctor_stats_api(claims=Depends(verify_token), db=Depends(get_db)):
    email = require_doctor(claims)
    return {"success": True, "stats": appointments.doctor_stats(db, email)}


@router.put("/doctor/profile")
def doctor_profile_api(request: DoctorProfileRequest, claims=Depends(verify_token),
                       db=Depends(get_db)):
    email = require_doctor(claims)
    with domain_errors():
        doctor = appointments.save_doctor_profile(db, email, **request.model_dump())
    return {
        "success": True,
        "message": "Doctor profile updated successfully!",
        "profile": doctor.to_dict(),
    }


@router.get("/doctors")
def doctors_api(db=Depends(get_db)):
    doctors = appointments.list_doctors(db)
    return {"success": True, "count": len(doctors), "doctors": [d.to_dict() for d in doctors]}


@router.put("/doctor/appointments/{appointment_id}/complete")
def complete_appointment_api(appointment_id: str, claims=Depends(verify_token),
                             db=Depends(get_db)):
    email = require_doctor(claims)
    with domain_errors():
        appointments.complete_appointment(db, appointment_id, email)
    return {"success": True, "message": "Appointment marked as completed"}


@router.put("/doctor/appointments/{appointment_id}/cancel")
def cancel_appointment_api(appointment_id: str, claims=Depends(verify_token),
                           db=Depends(get_db)):
    email = require_doctor(claims)
    with domain_errors():
        appointments.cancel_appointment(db, appointment_id, email)
    return {"success": True, "message": "Appointment cancelled successfully"}


# ---------------------------------------------------------------- cart & coupons

class CartAddRequest(BaseModel):
    user_id: str
    product_id: str
    quantity: int = 1
    product_name: Optional[str] = None
    product_image: Optional[str] = None
    price_usd: Union[float, str] = 0
    price_bdt: Union[float, str] = 0


class CartUpdateRequest(BaseModel):
    user_id: str
    quantity: int


class CartUserRequest(BaseModel):
    user_id: str


class CouponRequest(BaseModel):
    coupon_code: str
    subtotal: float = 0


def _cart(items) -> dict:
    return {"success": True, "items": [i.to_dict() for i in items]}


@router.get("/cart/{user_id}")
def cart_api(user_id: str, db=Depends(get_db)):
    return _cart(orders.get_cart(db, user_id))


@router.post("/cart/add")
def cart_add_api(request: CartAddRequest, db=Depends(get_db)):
    return _cart(orders.add_to_cart(db, **request.model_dump()))


@router.patch("/cart/update/{item_id}")
def cart_update_api(item_id: int, request: CartUpdateRequest, db=Depends(get_db)):
    with domain_errors():
        items = orders.update_cart_item(db, request.user_id, item_id, request.quantity)
    return _cart(items)


@router.delete("/cart/remove/{item_id}")
def cart_remove_api(item_id: int, request: CartUserRequest, db=Depends(get_db)):
    with domain_errors():
        items = orders.remove_cart_item(db, request.user_id, item_id)
    return _cart(items)


@router.delete("/cart/clear")
def cart_clear_api(request: CartUserRequest, db=Depends(get_db)):
    orders.clear_cart(db, request.user_id)
    return {"success": True, "message": "Cart cleared"}


@router.post("/coupon/apply")
def coupon_apply_api(request: CouponRequest, db=Depends(get_db)):
    with domain_errors():
        coupon = orders.apply_coupon(db, request.coupon_code, request.subtotal)
    return {
        "success": True,
        "coupon": {
            "code": coupon.code,
            "type": coupon.type,
            "value": coupon.value,
            "description": coupon.description,
        },
    }


# ---------------------------------------------------------------- orders

class CheckoutRequest(BaseModel):
    items: List[Dict[str, Any]]
    billing_details: Dict[str, Any] = {}
    coupon_code: Optional[str] = None


class VerifySessionRequest(BaseModel):
    session_id: str
    user_id: Optional[str] = None


class OrderStatusRequest(BaseModel):
    status: str


@router.post("/payment/create-payment-intent")
def create_order_payment_api(request: CheckoutRequest, db=Depends(get_db)):
    with domain_errors():
        payment = orders.create_order_intent(
            db, request.items, request.billing_details, request.coupon_code)
    return {
        "success": True,
        "clientSecret": payment["client_secret"],
        "paymentIntentId": payment["payment_intent_id"],
    }


@router.post("/payment/create-checkout-session")
def create_checkout_session_api(request: CheckoutRequest, http_request: Request,
                                db=Depends(get_db)):
    origin = (http_request.headers.get("origin") or os.getenv("FRONTEND_URL")
              or str(http_request.base_url).rstrip("/"))
    with domain_errors():
        session = orders.create_order_checkout_session(
            db, request.items, request.billing_details, request.coupon_code, origin)
    return {"success": True, "sessionId": session["session_id"], "url": session["url"]}


@router.post("/payment/verify-payment")
def verify_order_payment_api(request: VerifyPaymentRequest, db=Depends(get_db)):
    with domain_errors():
        result = orders.verify_order_payment(db, request.payment_intent_id, request.user_id)
    return _finalized(result, "order",
                      "Payment verified and order created", "Order already created")


@router.post("/payment/verify-session")
def verify_session_api(request: VerifySessionRequest, db=Depends(get_db)):
    with domain_errors():
        result = orders.verify_checkout_session(db, request.session_id, request.user_id)
    return _finalized(result, "order",
                      "Payment verified and order created", "Order already created")


@router.get("/orders/{user_id}")
def user_orders_api(user_id: str, db=Depends(get_db)):
    return {"success": True, "orders": [o.to_dict() for o in orders.list_user_orders(db, user_id)]}


@router.get("/order/{order_id}")
def order_api(order_id: int, db=Depends(get_db)):
    with domain_errors():
        order = orders.get_order(db, order_id)
    return {"success": True, "order": order.to_dict()}


@router.put("/order/{order_id}/status")
def order_status_api(order_id: int, request: OrderStatusRequest, auth=Depends(verify_token),
                     db=Depends(get_db)):
    with domain_errors():
        order = orders.update_order_status(db, order_id, request.status)
    return {"success": True, "order": order.to_dict()}


@router.post("/refund")
def refund(order_id: int, auth=Depends(verify_token), db=Depends(get_db)):
    order = db.get(Order, order_id)
    if not order or order.payment_status == "refunded":
        return {"message": "Nothing to refund"}

    with domain_errors():
        refund_payment(order.transaction_id)
    order.payment_status = "refunded"
    order.order_status = "cancelled"
    db.commit()
    logger.info("Refunded order %s (%s)", order.id, order.transaction_id)

    return {"status": "refunded"}
