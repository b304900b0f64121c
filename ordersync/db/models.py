from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, Numeric, DateTime, ForeignKey, JSON, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()

def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)

class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True)
    customer_id = Column(String, nullable=False, index=True)
    restaurant_id = Column(String, nullable=False, index=True)
    driver_id = Column(String, nullable=True, index=True)
    items_json = Column(JSON, nullable=False)
    subtotal = Column(Numeric(10, 2), nullable=False)
    delivery_fee = Column(Numeric(10, 2), nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)
    delivery_address = Column(Text, nullable=False)
    special_instructions = Column(Text)
    customer_phone = Column(String)
    payment_method = Column(String, nullable=False, default="paystack")
    status = Column(String, nullable=False, default="placed")
    payment_status = Column(String, nullable=False, default="pending")
    payment_reference = Column(String, index=True)
    estimated_prep_time = Column(Integer)
    estimated_delivery_time = Column(DateTime)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

class Payment(Base):
    __tablename__ = "payments"

    reference = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    outcome = Column(String, nullable=False, default="pending")
    source = Column(String)
    payload_json = Column(JSON)
    created_at = Column(DateTime, default=utcnow)
    resolved_at = Column(DateTime)

class Event(Base):
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False)
    version = Column(Integer, nullable=False)
    payload_json = Column(JSON)
    previous_json = Column(JSON)
    ts = Column(DateTime, default=utcnow)
