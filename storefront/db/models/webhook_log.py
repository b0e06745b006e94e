"""WebhookLog model: append-only ledger of gateway callbacks."""

from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text, text

from storefront.db.base import Base


class WebhookLog(Base):
    """One row per handled gateway callback.

    The partial unique index allows a single successful entry per
    (payment_id, event_type); that entry is the idempotency record.
    Failed attempts may repeat freely.
    """

    __tablename__ = "webhook_logs"
    __table_args__ = (
        Index(
            "uq_webhook_logs_payment_event_success",
            "payment_id",
            "event_type",
            unique=True,
            postgresql_where=text("success"),
            sqlite_where=text("success = 1"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(100), nullable=False)
    payment_id = Column(String(255), nullable=False, index=True)
    status = Column(String(100), nullable=True)  # raw gateway status string
    order_id = Column(Integer, nullable=True, index=True)
    success = Column(Boolean, nullable=False, default=False)
    outcome = Column(String(50), nullable=False)  # WebhookOutcome values
    error_message = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
