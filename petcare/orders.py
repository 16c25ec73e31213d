import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from petcare.currency import (
    bdt_to_usd,
    format_bdt,
    format_usd,
    parse_price,
    to_minor_units,
    usd_to_bdt,
)
from petcare.errors import BookingError, CouponError, NotFoundError
from petcare.idempotency import FinalizeResult, PaymentLocks, finalize_payment
from petcare.intents import CheckoutIntent
from petcare.models import CartItem, Coupon, Order
from petcare.stripe_service import (
    GatewayPayment,
    create_checkout_session,
    create_payment,
    retrieve_checkout_payment,
    retrieve_payment,
)

logger = logging.getLogger(__name__)

FREE_SHIPPING_OVER_BDT = 12000
SHIPPING_BDT = 600
TAX_RATE = 0.05

ORDER_STATUSES = ("processing", "shipped", "delivered", "cancelled")


# ---------------------------------------------------------------- cart

def get_cart(db: Session, user_id: str) -> List[CartItem]:
    return db.query(CartItem).filter_by(user_id=user_id).order_by(CartItem.id).all()


def _price(value) -> float:
    """Numeric price from a number or a display string; 0 when unreadable."""
    try:
        return parse_price(value or 0)
    except (TypeError, ValueError):
        return 0


def add_to_cart(db: Session, user_id: str, product_id: str, quantity: int = 1,
                product_name: str = None, product_image: str = None,
                price_usd=0, price_bdt=0) -> List[CartItem]:
    item = db.query(CartItem).filter_by(user_id=user_id, product_id=product_id).first()
    if item:
        item.quantity += quantity
    else:
        usd, bdt = _price(price_usd), _price(price_bdt)
        db.add(CartItem(
            user_id=user_id,
            product_id=product_id,
            product_name=product_name,
            product_image=product_image,
            price_usd=usd or bdt_to_usd(bdt),
            price_bdt=bdt or usd_to_bdt(usd),
            quantity=quantity,
        ))
    db.commit()
    return get_cart(db, user_id)


def _cart_item(db: Session, user_id: str, item_id: int) -> CartItem:
    item = db.query(CartItem).filter_by(id=item_id, user_id=user_id).first()
    if not item:
        raise NotFoundError("Item not found in cart")
    return item


def update_cart_item(db: Session, user_id: str, item_id: int, quantity: int) -> List[CartItem]:
    if quantity < 1:
        raise BookingError("Quantity must be at least 1")
    _cart_item(db, user_id, item_id).quantity = quantity
    db.commit()
    return get_cart(db, user_id)


def remove_cart_item(db: Session, user_id: str, item_id: int) -> List[CartItem]:
    db.delete(_cart_item(db, user_id, item_id))
    db.commit()
    return get_cart(db, user_id)


def clear_cart(db: Session, user_id: str) -> int:
    removed = db.query(CartItem).filter_by(user_id=user_id).delete()
    db.commit()
    logger.info("Cleared %d cart item(s) for user %s", removed, user_id)
    return removed


# ---------------------------------------------------------------- coupons

def apply_coupon(db: Session, code: str, subtotal_usd: float,
                 now: Optional[datetime] = None) -> Coupon:
    coupon = db.query(Coupon).filter_by(code=code.upper(), is_active=True).first()
    if not coupon:
        raise CouponError("Invalid or expired coupon code")

    now = now or datetime.utcnow()
    if coupon.expiry_date and coupon.expiry_date < now:
        raise CouponError("Coupon has expired")
    if coupon.min_purchase and subtotal_usd < coupon.min_purchase:
        raise CouponError(f"Minimum purchase of ${coupon.min_purchase:g} required")
    if coupon.usage_limit and (coupon.used_count or 0) >= coupon.usage_limit:
        raise CouponError("Coupon usage limit reached")

    return coupon


def coupon_discount_bdt(coupon: Optional[Coupon], subtotal_bdt: float) -> float:
    if coupon is None:
        return 0
    if coupon.type == "percentage":
        return round(subtotal_bdt * coupon.value / 100)
    if coupon.type == "fixed":
        return min(usd_to_bdt(coupon.value), subtotal_bdt)
    return 0


# ---------------------------------------------------------------- checkout

def _unit_price_usd(item: dict) -> float:
    return _price(item.get("priceUSD")) or bdt_to_usd(_price(item.get("priceBDT")))


def _subtotal_bdt(items: List[dict]) -> float:
    return sum(_price(item.get("priceBDT")) * item.get("quantity", 1) for item in items)


def calculate_totals(items: List[dict], coupon: Optional[Coupon] = None) -> dict:
    subtotal = _subtotal_bdt(items)
    shipping = 0 if subtotal > FREE_SHIPPING_OVER_BDT else SHIPPING_BDT
    discount = coupon_discount_bdt(coupon, subtotal)
    tax = round((subtotal - discount) * TAX_RATE)
    return {
        "subtotal_bdt": subtotal,
        "shipping_bdt": shipping,
        "discount_bdt": discount,
        "tax_bdt": tax,
        "total_bdt": subtotal - discount + tax + shipping,
    }


def _checkout_intent(db: Session, items: List[dict], billing_details: dict,
                     coupon_code: Optional[str]) -> CheckoutIntent:
    if not items:
        raise BookingError("Cart is empty")

    invalid = [item for item in items if _unit_price_usd(item) <= 0]
    if invalid:
        logger.error("Invalid items with zero or missing prices: %s", invalid)
        raise BookingError("Some items have invalid prices. Please refresh your cart.")

    billing_details = billing_details or {}
    coupon = None
    if coupon_code:
        coupon = apply_coupon(db, coupon_code, bdt_to_usd(_subtotal_bdt(items)))

    return CheckoutIntent(
        user_id=billing_details.get("userId") or "guest",
        user_email=billing_details.get("userEmail") or billing_details.get("email"),
        billing_details=billing_details,
        items=items,
        coupon_code=coupon.code if coupon else "",
        **calculate_totals(items, coupon),
    )


def order_charge_minor(intent: CheckoutIntent) -> int:
    """Cents to charge for an order: the discounted total with shipping and tax."""
    return to_minor_units(bdt_to_usd(intent.total_bdt))


def _order_summary(intent: CheckoutIntent) -> str:
    parts = [
        f"{item.get('quantity', 1)} x {item.get('productName') or item.get('productId')}"
        for item in intent.items
    ]
    parts.append(f"subtotal {format_bdt(intent.subtotal_bdt)}")
    if intent.discount_bdt:
        parts.append(f"discount -{format_bdt(intent.discount_bdt)}")
    parts.append(f"shipping {format_bdt(intent.shipping_bdt)}")
    parts.append(f"tax {format_bdt(intent.tax_bdt)}")
    return ", ".join(parts)


def create_order_intent(db: Session, items: List[dict], billing_details: dict,
                        coupon_code: Optional[str] = None) -> dict:
    intent = _checkout_intent(db, items, billing_details, coupon_code)
    amount = order_charge_minor(intent)
    payment = create_payment(amount, "usd", intent.to_metadata())
    logger.info("Created order payment %s for user %s (%s)",
                payment.id, intent.user_id, format_usd(amount / 100))
    return {"client_secret": payment.client_secret, "payment_intent_id": payment.id}


def create_order_checkout_session(db: Session, items: List[dict], billing_details: dict,
                                  coupon_code: Optional[str], origin: str) -> dict:
    intent = _checkout_intent(db, items, billing_details, coupon_code)
    # a single line charged at the order total
    images = [item["productImage"] for item in items if item.get("productImage")][:8]
    line_items = [
        {
            "price_data": {
                "currency": "usd",
                "product_data": {
                    "name": f"Order total {format_bdt(intent.total_bdt)}",
                    "description": _order_summary(intent),
                    "images": images,
                },
                "unit_amount": order_charge_minor(intent),
            },
            "quantity": 1,
        }
    ]
    session = create_checkout_session(
        line_items,
        intent.to_metadata(),
        success_url=f"{origin}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{origin}/cart",
    )
    return {"session_id": session.id, "url": session.url}


def build_order(payment: GatewayPayment, fallback_user_id: Optional[str] = None) -> Order:
    intent = CheckoutIntent.from_metadata(payment.metadata)
    user_id = fallback_user_id if intent.is_guest and fallback_user_id else intent.user_id
    return Order(
        user_id=user_id,
        user_email=intent.user_email,
        billing_details=intent.billing_details,
        items=intent.items,
        subtotal_bdt=intent.subtotal_bdt,
        shipping_bdt=intent.shipping_bdt,
        tax_bdt=intent.tax_bdt,
        discount_bdt=intent.discount_bdt,
        total_bdt=intent.total_bdt,
        total_usd=(payment.amount_minor or 0) / 100,
        coupon_code=intent.coupon_code or None,
        payment_status="completed",
        transaction_id=payment.reference,
        payment_method="stripe",
        order_status="processing",
    )


def _after_order_created(db: Session, order: Order) -> None:
    if order.user_id and order.user_id != "guest":
        clear_cart(db, order.user_id)
    if order.coupon_code:
        db.query(Coupon).filter_by(code=order.coupon_code).update(
            {Coupon.used_count: func.coalesce(Coupon.used_count, 0) + 1},
            synchronize_session="fetch",
        )
        db.commit()


def _finalize_order(db: Session, reference: str, fetch_payment, user_id: Optional[str],
                    locks: Optional[PaymentLocks]) -> FinalizeResult:
    result = finalize_payment(
        db,
        Order,
        reference,
        fetch_payment=fetch_payment,
        build_record=lambda payment: build_order(payment, user_id),
        locks=locks,
        on_created=lambda order: _after_order_created(db, order),
    )
    if not result.is_duplicate:
        logger.info("Order %s created for transaction %s", result.record.id, reference)
    return result


def verify_order_payment(db: Session, payment_intent_id: str, user_id: Optional[str] = None,
                         locks: Optional[PaymentLocks] = None) -> FinalizeResult:
    return _finalize_order(db, payment_intent_id, lambda: retrieve_payment(payment_intent_id),
                           user_id, locks)


def verify_checkout_session(db: Session, session_id: str, user_id: Optional[str] = None,
                            locks: Optional[PaymentLocks] = None) -> FinalizeResult:
    payment = retrieve_checkout_payment(session_id)
    return _finalize_order(db, payment.reference, lambda: payment, user_id, locks)


def list_user_orders(db: Session, user_id: str) -> List[Order]:
    return (
        db.query(Order)
        .filter(Order.user_id == user_id)
        .order_by(Order.created_at.desc())
        .all()
    )


def get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found")
    return order


def update_order_status(db: Session, order_id: int, status: str) -> Order:
    if status not in ORDER_STATUSES:
        raise BookingError(f"Invalid status. Must be one of: {', '.join(ORDER_STATUSES)}")
    order = get_order(db, order_id)
    order.order_status = status
    db.commit()
    return order
