from __future__ import annotations

from datetime import datetime
from sqlalchemy import String, Integer, Boolean, DateTime, Text, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # canonical buyer identity: lower-cased contact email at ingestion time
    buyer_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    buyer_email: Mapped[str] = mapped_column(String, nullable=False, index=True)
    buyer_name: Mapped[str] = mapped_column(String, nullable=False, default="")
    buyer_phone: Mapped[str | None] = mapped_column(String, nullable=True)
    buyer_gender: Mapped[str | None] = mapped_column(String, nullable=True)

    total_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    product_name: Mapped[str] = mapped_column(String, nullable=False, default="")
    course: Mapped[str | None] = mapped_column(String, nullable=True, default="")
    option_raw: Mapped[str | None] = mapped_column(Text, nullable=True, default="")

    recipient_name: Mapped[str | None] = mapped_column(String, nullable=True, default="")
    recipient_phone: Mapped[str | None] = mapped_column(String, nullable=True, default="")
    zipcode: Mapped[str | None] = mapped_column(String, nullable=True, default="")
    address: Mapped[str | None] = mapped_column(String, nullable=True, default="")
    address_detail: Mapped[str | None] = mapped_column(String, nullable=True, default="")

    total_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_cancelled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    participants: Mapped[list["Participant"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="Participant.participant_index",
    )

    __table_args__ = (
        Index("ix_orders_total_participants", "total_participants"),
    )

class Participant(Base):
    __tablename__ = "participants"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    participant_index: Mapped[int] = mapped_column(Integer, nullable=False)  # 0-based, 0 = buyer

    name: Mapped[str | None] = mapped_column(String, nullable=True)
    gender: Mapped[str | None] = mapped_column(String, nullable=True)
    birth_date: Mapped[str | None] = mapped_column(String, nullable=True)  # raw YYYYMMDD or YYMMDD
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    course: Mapped[str] = mapped_column(String, nullable=False, default="")
    tshirt_size: Mapped[str | None] = mapped_column(String, nullable=True)
    emergency_contact: Mapped[str | None] = mapped_column(String, nullable=True)
    emergency_relation: Mapped[str | None] = mapped_column(String, nullable=True)
    option_raw: Mapped[str | None] = mapped_column(Text, nullable=True, default="")

    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    order: Mapped["Order"] = relationship(back_populates="participants")

    __table_args__ = (
        UniqueConstraint("order_id", "participant_index", name="uq_participant_slot"),
        Index("ix_participants_order", "order_id"),
    )

class BuyerSession(Base):
    __tablename__ = "sessions"
    id: Mapped[str] = mapped_column(String, primary_key=True)  # opaque token
    buyer_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    phone: Mapped[str] = mapped_column(String, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
