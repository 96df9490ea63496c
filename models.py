"""
Marketplace Order & Escrow Schema
=================================

Schema for the order lifecycle and dispute/escrow resolution workflow:
- Orders between a buyer profile and a seller provider profile
- Milestone-based partial payment releases
- Escrow ledger recording every money movement
- Disputes with evidence, admin assignment and saga-tracked resolution
- Append-only order and dispute audit logs
- Outbound notification queue

Status columns store the string value of the matching Enum.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Column, String, Numeric, DateTime, Date, Boolean, Text,
    ForeignKey, Index, CheckConstraint, JSON, event
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column

from utils.helpers import generate_uuid, utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


class AuditLogImmutableError(Exception):
    """Raised when code attempts to modify or delete an audit record"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class OrderStatus(Enum):
    """Order lifecycle status"""
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class EscrowStatus(Enum):
    """Where the order's funds currently sit"""
    PENDING = "pending"
    HELD = "held"
    PARTIAL_RELEASE = "partial_release"
    RELEASED = "released"
    REFUNDED = "refunded"


class OrderType(Enum):
    """Kind of marketplace transaction"""
    PEOPLE_BOOKING = "people_booking"
    PRODUCT_RFQ = "product_rfq"
    SERVICE = "service"


class MilestoneStatus(Enum):
    """Per-milestone lifecycle"""
    PENDING = "pending"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    PAID = "paid"
    REJECTED = "rejected"


class DisputeStatus(Enum):
    """Dispute lifecycle"""
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    MEDIATION = "mediation"
    ARBITRATION = "arbitration"
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    CANCELLED = "cancelled"


class EscrowTransactionType(Enum):
    """Escrow ledger entry types"""
    DEPOSIT = "deposit"
    HOLD = "hold"
    RELEASE = "release"
    REFUND = "refund"
    FEE_DEDUCTION = "fee_deduction"


class OrderEventType(Enum):
    """Order audit log event types"""
    CREATED = "created"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    STARTED = "started"
    MILESTONE_SUBMITTED = "milestone_submitted"
    MILESTONE_APPROVED = "milestone_approved"
    MILESTONE_REJECTED = "milestone_rejected"
    DISPUTED = "disputed"
    DISPUTE_RESOLVED = "dispute_resolved"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_RELEASED = "payment_released"
    REFUNDED = "refunded"


class DisputeEventType(Enum):
    """Dispute audit log event types"""
    DISPUTE_CREATED = "dispute_created"
    STATUS_CHANGED = "status_changed"
    ASSIGNED = "assigned"
    EVIDENCE_ADDED = "evidence_added"
    RESOLVED = "resolved"
    RELEASE_FAILED = "release_failed"
    AUTO_RESOLUTION_FLAGGED = "auto_resolution_flagged"


class OrderRole(Enum):
    """Role an actor plays relative to an order"""
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


class ResolutionStepStatus(Enum):
    """Status for individual dispute resolution saga steps"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class NotificationStatus(Enum):
    """Outbound notification queue status"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


# ============================================================================
# PARTIES
# ============================================================================

class Profile(Base):
    """Marketplace user account (buyers, sellers' owners and admins)"""
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    full_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    provider_profile = relationship("ProviderProfile", back_populates="user", uselist=False)

    def __repr__(self):
        return f"<Profile(id={self.id}, full_name={self.full_name})>"


class ProviderProfile(Base):
    """Seller storefront; orders reference this rather than the owning profile"""
    __tablename__ = "provider_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Connected payout account at the payment provider
    stripe_account_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    user = relationship("Profile", back_populates="provider_profile")

    def __repr__(self):
        return f"<ProviderProfile(id={self.id}, user_id={self.user_id})>"


# ============================================================================
# ORDERS
# ============================================================================

class Order(Base):
    """Central transaction record between a buyer and a seller"""
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    order_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    buyer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("profiles.id", ondelete="RESTRICT"), nullable=False
    )
    seller_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("provider_profiles.id", ondelete="RESTRICT"), nullable=False
    )
    listing_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    order_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=OrderStatus.PENDING.value, nullable=False
    )
    escrow_status: Mapped[str] = mapped_column(
        String(20), default=EscrowStatus.PENDING.value, nullable=False
    )

    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    vat_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    vat_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), default=Decimal("0.20"))
    currency: Mapped[str] = mapped_column(String(3), default="GBP", nullable=False)
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    buyer = relationship("Profile", foreign_keys=[buyer_id])
    seller = relationship("ProviderProfile", foreign_keys=[seller_id])
    milestones = relationship(
        "OrderMilestone",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderMilestone.created_at",
    )
    disputes = relationship("Dispute", back_populates="order", order_by="Dispute.created_at")

    __table_args__ = (
        CheckConstraint("total_amount > 0", name="ck_orders_total_positive"),
        Index("ix_orders_buyer_id", "buyer_id"),
        Index("ix_orders_seller_id", "seller_id"),
        Index("ix_orders_status", "status"),
        Index("ix_orders_created_at", "created_at"),
    )

    def __repr__(self):
        return f"<Order(order_number={self.order_number}, status={self.status}, escrow={self.escrow_status})>"


class OrderMilestone(Base):
    """A partial, independently approvable slice of an order's total"""
    __tablename__ = "order_milestones"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    due_date = Column(Date, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=MilestoneStatus.PENDING.value, nullable=False
    )
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    order = relationship("Order", back_populates="milestones")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_order_milestones_amount_positive"),
        Index("ix_order_milestones_order_id", "order_id"),
    )

    def __repr__(self):
        return f"<OrderMilestone(id={self.id}, title={self.title}, status={self.status})>"


class EscrowTransaction(Base):
    """Ledger of money movement for an order; the escrow balance is derived from it"""
    __tablename__ = "escrow_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    milestone_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("order_milestones.id", ondelete="SET NULL"), nullable=True
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    # Provider reference: payment intent, transfer or refund id
    stripe_transfer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_escrow_transactions_order_id", "order_id"),
        Index("ix_escrow_transactions_type", "type"),
    )

    def __repr__(self):
        return f"<EscrowTransaction(order_id={self.order_id}, type={self.type}, amount={self.amount})>"


# ============================================================================
# DISPUTES
# ============================================================================

class Dispute(Base):
    """Adversarial resolution process over one order"""
    __tablename__ = "disputes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    raised_by: Mapped[str] = mapped_column(
        String(36), ForeignKey("profiles.id"), nullable=False
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    evidence_urls = Column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(
        String(20), default=DisputeStatus.OPEN.value, nullable=False
    )
    resolution: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolution_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    assigned_to: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("profiles.id"), nullable=True
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, onupdate=utc_now, nullable=False
    )

    order = relationship("Order", back_populates="disputes")
    raiser = relationship("Profile", foreign_keys=[raised_by])
    events = relationship(
        "DisputeEvent", back_populates="dispute", order_by="DisputeEvent.created_at"
    )
    resolution_steps = relationship(
        "DisputeResolutionStep", back_populates="dispute", order_by="DisputeResolutionStep.created_at"
    )

    __table_args__ = (
        Index("ix_disputes_order_id", "order_id"),
        Index("ix_disputes_status", "status"),
    )

    def __repr__(self):
        return f"<Dispute(id={self.id}, order_id={self.order_id}, status={self.status})>"


class DisputeEvent(Base):
    """Append-only dispute audit record"""
    __tablename__ = "dispute_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    dispute_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("disputes.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    actor_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    event_metadata = Column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    dispute = relationship("Dispute", back_populates="events")

    __table_args__ = (
        Index("ix_dispute_events_dispute_id", "dispute_id"),
        Index("ix_dispute_events_actor_id", "actor_id"),
    )


class OrderEvent(Base):
    """Append-only order audit record"""
    __tablename__ = "order_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    details = Column(JSON, nullable=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_order_events_order_id", "order_id"),
        Index("ix_order_events_created_at", "created_at"),
    )


class DisputeResolutionStep(Base):
    """Saga step for the refund/release sequence of a dispute resolution"""
    __tablename__ = "dispute_resolution_steps"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    dispute_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("disputes.id", ondelete="CASCADE"), nullable=False
    )
    step_name: Mapped[str] = mapped_column(String(50), nullable=False)  # refund, release
    status: Mapped[str] = mapped_column(
        String(20), default=ResolutionStepStatus.PENDING.value, nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    provider_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    dispute = relationship("Dispute", back_populates="resolution_steps")

    __table_args__ = (
        Index("ix_dispute_resolution_steps_dispute_id", "dispute_id"),
        Index("ix_dispute_resolution_steps_status", "status"),
    )

    def __repr__(self):
        return f"<DisputeResolutionStep(dispute_id={self.dispute_id}, step_name={self.step_name}, status={self.status})>"


# ============================================================================
# NOTIFICATIONS
# ============================================================================

class NotificationQueue(Base):
    """Outbound notifications awaiting delivery by an external worker"""
    __tablename__ = "notification_queue"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    link: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    payload = Column("metadata", JSON, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=NotificationStatus.PENDING.value, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_notification_queue_user_id", "user_id"),
        Index("ix_notification_queue_status", "status"),
    )


# ============================================================================
# AUDIT IMMUTABILITY
# ============================================================================

def _reject_audit_mutation(mapper, connection, target):
    raise AuditLogImmutableError(
        f"{type(target).__name__} records are append-only (id={target.id})"
    )


for _audit_model in (OrderEvent, DisputeEvent):
    event.listen(_audit_model, "before_update", _reject_audit_mutation)
    event.listen(_audit_model, "before_delete", _reject_audit_mutation)
