"""Order model: the unit of payment reconciliation."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, Numeric, String, Text

from storefront.db.base import Base


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Ownership
    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=False, index=True)
    customer_phone = Column(String(50), nullable=True)

    # Financial snapshot captured at checkout
    items = Column(JSON, nullable=False, default=list)  # [{product_id, product_name, quantity, price, total}]
    total_amount = Column(Numeric(10, 2), nullable=False)

    status = Column(String(50), nullable=False, default="pending", index=True)  # OrderStatus values
    payment_status = Column(String(50), nullable=False, default="pending")  # PaymentStatus values

    # Payment linkage
    payment_method = Column(String(100), nullable=True)
    payment_id = Column(String(255), nullable=True, index=True)
    payment_session_id = Column(String(255), nullable=True, index=True)
    reference_number = Column(String(255), nullable=True, index=True)

    # Opaque passthrough
    shipping_address = Column(JSON, nullable=True)
    tracking_number = Column(String(255), nullable=True)

    # Append-only reconciliation audit trail
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
