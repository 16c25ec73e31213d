from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, String
from petcare.database import Base


def _serialize(value):
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class SerializableMixin:
    def to_dict(self):
        return {c.name: _serialize(getattr(self, c.name)) for c in self.__table__.columns}


class Doctor(SerializableMixin, Base):
    __tablename__ = "doctors"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    fee_usd = Column(Float, default=0)
    available_days = Column(JSON, default=list)    # ["Monday", "Wednesday"]
    available_time_start = Column(String)          # "09:00"
    available_time_end = Column(String)           # "17:00"
    is_verified = Column(Boolean, default=False)


class Appointment(SerializableMixin, Base):
    __tablename__ = "appointments"
    __payment_reference__ = "payment_intent_id"

    id = Column(Integer, primary_key=True)
    appointment_id = Column(String, unique=True, index=True, nullable=False)
    doctor_id = Column(String, index=True, nullable=False)
    doctor_name = Column(String)
    doctor_email = Column(String, index=True)
    user_id = Column(String, index=True)
    user_email = Column(String)
    appointment_date = Column(String, nullable=False)   # opaque, as sent by the client
    appointment_time = Column(String, nullable=False)   # "2:30 PM"
    meet_link = Column(String)
    fee_bdt = Column(Float)
    fee_usd = Column(Float)
    status = Column(String, default="confirmed")        # confirmed | completed | cancelled
    payment_intent_id = Column(String, unique=True, index=True)
    payment_status = Column(String, default="completed")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime)
    cancelled_at = Column(DateTime)


class Order(SerializableMixin, Base):
    __tablename__ = "orders"
    __payment_reference__ = "transaction_id"

    id = Column(Integer, primary_key=True)
    user_id = Column(String, index=True)
    user_email = Column(String)
    billing_details = Column(JSON, default=dict)
    items = Column(JSON, default=list)
    subtotal_bdt = Column(Float, default=0)
    shipping_bdt = Column(Float, default=0)
    tax_bdt = Column(Float, default=0)
    discount_bdt = Column(Float, default=0)
    total_bdt = Column(Float, default=0)
    total_usd = Column(Float, default=0)
    coupon_code = Column(String)
    payment_status = Column(String, default="completed")
    transaction_id = Column(String, unique=True, index=True)   # Stripe PaymentIntent ID
    payment_method = Column(String, default="stripe")
    order_status = Column(String, default="processing")        # processing | shipped | delivered | cancelled
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class CartItem(SerializableMixin, Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True)
    user_id = Column(String, index=True, nullable=False)
    product_id = Column(String, nullable=False)
    product_name = Column(String)
    product_image = Column(String)
    price_usd = Column(Float, default=0)
    price_bdt = Column(Float, default=0)
    quantity = Column(Integer, default=1)
    added_at = Column(DateTime, default=datetime.utcnow)


class Coupon(SerializableMixin, Base):
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True)
    code = Column(String, unique=True, index=True, nullable=False)
    type = Column(String, nullable=False)          # percentage | fixed
    value = Column(Float, nullable=False)
    description = Column(String)
    min_purchase = Column(Float, default=0)        # USD
    usage_limit = Column(Integer)
    used_count = Column(Integer, default=0)
    expiry_date = Column(DateTime)
    is_active = Column(Boolean, default=True)
