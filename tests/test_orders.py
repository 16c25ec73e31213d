from datetime import datetime, timedelta

import pytest

from petcare import orders
from petcare.currency import bdt_to_usd, to_minor_units
from petcare.errors import BookingError, CouponError, NotFoundError
from petcare.intents import CheckoutIntent
from petcare.models import CartItem, Coupon, Order
from petcare.stripe_service import GatewayPayment

ITEMS = [
    {"productId": "p1", "productName": "Chew Toy", "priceBDT": 1200, "priceUSD": 10, "quantity": 2},
    {"productId": "p2", "productName": "Kibble", "priceBDT": 2400, "priceUSD": 20, "quantity": 1},
]


def order_payment(reference="pi_order", user_id="user-1", coupon_code=""):
    intent = CheckoutIntent(
        user_id=user_id,
        user_email="owner@example.com",
        items=ITEMS,
        coupon_code=coupon_code,
        **orders.calculate_totals(ITEMS),
    )
    return GatewayPayment(reference, "succeeded", 4300, intent.to_metadata())


def test_cart_merges_quantities(db):
    orders.add_to_cart(db, "user-1", "p1", quantity=1, price_bdt=1200)
    items = orders.add_to_cart(db, "user-1", "p1", quantity=2, price_bdt=1200)

    assert len(items) == 1
    assert items[0].quantity == 3


def test_cart_accepts_display_prices(db):
    item = orders.add_to_cart(db, "user-1", "p1", price_bdt="৳1,200")[0]

    assert item.price_bdt == 1200
    assert item.price_usd == 10.0


def test_checkout_reads_display_prices():
    items = [{"productId": "p1", "priceBDT": "৳1,200", "priceUSD": "$10.00", "quantity": 2}]
    assert orders.calculate_totals(items)["subtotal_bdt"] == 2400


def test_cart_update_and_remove(db):
    item = orders.add_to_cart(db, "user-1", "p1")[0]

    assert orders.update_cart_item(db, "user-1", item.id, 5)[0].quantity == 5
    with pytest.raises(BookingError):
        orders.update_cart_item(db, "user-1", item.id, 0)
    with pytest.raises(NotFoundError):
        orders.remove_cart_item(db, "someone-else", item.id)
    assert orders.remove_cart_item(db, "user-1", item.id) == []


def test_clear_cart_is_idempotent(db):
    orders.add_to_cart(db, "user-1", "p1")
    orders.add_to_cart(db, "user-1", "p2")

    assert orders.clear_cart(db, "user-1") == 2
    assert orders.clear_cart(db, "user-1") == 0


def test_totals_with_shipping_and_tax():
    totals = orders.calculate_totals(ITEMS)

    assert totals["subtotal_bdt"] == 4800
    assert totals["shipping_bdt"] == 600
    assert totals["tax_bdt"] == 240
    assert totals["total_bdt"] == 5640


def test_free_shipping_over_threshold():
    items = [{"priceBDT": 6500, "quantity": 2}]
    assert orders.calculate_totals(items)["shipping_bdt"] == 0


def test_percentage_coupon_discount():
    coupon = Coupon(code="WELCOME10", type="percentage", value=10)
    totals = orders.calculate_totals(ITEMS, coupon)

    assert totals["discount_bdt"] == 480
    assert totals["tax_bdt"] == 216
    assert totals["total_bdt"] == 4800 - 480 + 216 + 600


def test_fixed_coupon_capped_at_subtotal():
    coupon = Coupon(code="FLAT50", type="fixed", value=50)
    assert orders.coupon_discount_bdt(coupon, 4800) == 4800
    assert orders.coupon_discount_bdt(coupon, 9000) == 6000


def test_apply_coupon_rules(db):
    now = datetime(2024, 6, 1)
    db.add_all([
        Coupon(code="SAVE20", type="percentage", value=20, min_purchase=50, usage_limit=50, used_count=0),
        Coupon(code="OLD", type="fixed", value=5, expiry_date=now - timedelta(days=1)),
        Coupon(code="USED", type="fixed", value=5, usage_limit=1, used_count=1),
    ])
    db.commit()

    assert orders.apply_coupon(db, "save20", 60, now=now).code == "SAVE20"
    with pytest.raises(CouponError, match="Minimum purchase of \\$50 required"):
        orders.apply_coupon(db, "SAVE20", 40, now=now)
    with pytest.raises(CouponError, match="expired"):
        orders.apply_coupon(db, "OLD", 100, now=now)
    with pytest.raises(CouponError, match="usage limit"):
        orders.apply_coupon(db, "USED", 100, now=now)
    with pytest.raises(CouponError, match="Invalid"):
        orders.apply_coupon(db, "NOPE", 100, now=now)


def test_create_order_intent_rejects_bad_carts(db):
    with pytest.raises(BookingError, match="Cart is empty"):
        orders.create_order_intent(db, [], {})
    with pytest.raises(BookingError, match="invalid prices"):
        orders.create_order_intent(db, [{"productId": "p1", "priceBDT": 0, "quantity": 1}], {})


def test_create_order_intent_carries_totals(db, mocker):
    intent = mocker.Mock(id="pi_order", client_secret="secret_order")
    create = mocker.patch("petcare.orders.create_payment", return_value=intent)

    result = orders.create_order_intent(db, ITEMS, {"userId": "user-1", "email": "owner@example.com"})

    assert result == {"client_secret": "secret_order", "payment_intent_id": "pi_order"}
    amount, currency, metadata = create.call_args.args
    assert currency == "usd"
    assert amount == 4700   # ৳5,640 -> $47.00
    assert metadata["type"] == "order"
    assert metadata["userEmail"] == "owner@example.com"
    assert CheckoutIntent.from_metadata(metadata).total_bdt == 5640


def test_checkout_session_charges_order_total(db, mocker):
    session = mocker.Mock(id="cs_1", url="https://checkout.stripe.com/cs_1")
    create = mocker.patch("petcare.orders.create_checkout_session", return_value=session)

    result = orders.create_order_checkout_session(db, ITEMS, {}, None, "https://shop.example")

    assert result == {"session_id": "cs_1", "url": "https://checkout.stripe.com/cs_1"}
    line_items, metadata = create.call_args.args
    assert len(line_items) == 1
    assert line_items[0]["quantity"] == 1
    assert line_items[0]["price_data"]["unit_amount"] == 4700   # ৳5,640 -> $47.00
    assert "shipping ৳600" in line_items[0]["price_data"]["product_data"]["description"]
    assert CheckoutIntent.from_metadata(metadata).total_bdt == 5640
    assert create.call_args.kwargs["cancel_url"] == "https://shop.example/cart"


def test_checkout_session_charge_includes_coupon_shipping_and_tax(db, mocker):
    db.add(Coupon(code="SAVE20", type="percentage", value=20, used_count=0))
    db.commit()
    session = mocker.Mock(id="cs_2", url="https://checkout.stripe.com/cs_2")
    create = mocker.patch("petcare.orders.create_checkout_session", return_value=session)
    items = [{"productId": "p2", "productName": "Kibble", "priceBDT": 2400, "priceUSD": 20, "quantity": 1}]

    orders.create_order_checkout_session(db, items, {}, "SAVE20", "https://shop.example")

    line_items, metadata = create.call_args.args
    intent = CheckoutIntent.from_metadata(metadata)
    charged = sum(li["price_data"]["unit_amount"] * li["quantity"] for li in line_items)
    assert intent.discount_bdt == 480
    assert intent.total_bdt == 2400 - 480 + 96 + 600
    assert charged == to_minor_units(bdt_to_usd(intent.total_bdt)) == 2180
    assert "discount -৳480" in line_items[0]["price_data"]["product_data"]["description"]


def test_verify_order_payment_clears_cart_once(db, locks, mocker):
    orders.add_to_cart(db, "user-1", "p1")
    mocker.patch("petcare.orders.retrieve_payment", return_value=order_payment())
    clear = mocker.spy(orders, "clear_cart")

    first = orders.verify_order_payment(db, "pi_order")
    orders.add_to_cart(db, "user-1", "p2")
    second = orders.verify_order_payment(db, "pi_order")

    assert not first.is_duplicate and second.is_duplicate
    assert first.record.transaction_id == "pi_order"
    assert first.record.total_usd == 43.0
    assert clear.call_count == 1
    assert len(orders.get_cart(db, "user-1")) == 1
    assert db.query(Order).count() == 1


def test_verify_order_payment_counts_coupon_use(db, locks, mocker):
    db.add(Coupon(code="WELCOME10", type="percentage", value=10, used_count=0))
    db.commit()
    mocker.patch("petcare.orders.retrieve_payment",
                 return_value=order_payment(coupon_code="WELCOME10"))

    orders.verify_order_payment(db, "pi_order")
    orders.verify_order_payment(db, "pi_order")

    assert db.query(Coupon).filter_by(code="WELCOME10").one().used_count == 1


def test_coupon_use_counted_against_current_value(db, TestingSessionLocal, locks, mocker):
    db.add(Coupon(code="WELCOME10", type="percentage", value=10, used_count=0))
    db.commit()
    db.query(Coupon).filter_by(code="WELCOME10").one()   # loaded before the other order lands
    with TestingSessionLocal() as other:
        other.query(Coupon).filter_by(code="WELCOME10").one().used_count = 1
        other.commit()
    mocker.patch("petcare.orders.retrieve_payment",
                 return_value=order_payment(coupon_code="WELCOME10"))

    orders.verify_order_payment(db, "pi_order")

    with TestingSessionLocal() as fresh:
        assert fresh.query(Coupon).filter_by(code="WELCOME10").one().used_count == 2


def test_guest_order_keeps_carts(db, locks, mocker):
    orders.add_to_cart(db, "guest", "p1")
    mocker.patch("petcare.orders.retrieve_payment", return_value=order_payment(user_id="guest"))

    result = orders.verify_order_payment(db, "pi_order")

    assert result.record.user_id == "guest"
    assert db.query(CartItem).count() == 1


def test_verify_checkout_session_uses_session_payment_intent(db, locks, mocker):
    payment = order_payment(reference="pi_from_session")
    payment.paid_status = "paid"
    payment.status = "paid"
    mocker.patch("petcare.orders.retrieve_checkout_payment", return_value=payment)

    result = orders.verify_checkout_session(db, "cs_1")

    assert result.record.transaction_id == "pi_from_session"


def test_update_order_status(db):
    db.add(Order(user_id="user-1", transaction_id="pi_1"))
    db.commit()
    order = db.query(Order).one()

    assert orders.update_order_status(db, order.id, "shipped").order_status == "shipped"
    with pytest.raises(BookingError):
        orders.update_order_status(db, order.id, "lost")
    with pytest.raises(NotFoundError):
        orders.get_order(db, 999)
