from sqlalchemy import func, true, CheckConstraint
from creatorhub.extensions import db
from .types import JSONType

# Keep simple text+CHECK for statuses (no DB enum migration pain)
STATUS_PENDING = "pending"
STATUS_PAYMENT_AUTHORIZED = "payment_authorized"
STATUS_PAYMENT_FAILED = "payment_failed"
STATUS_ACCEPTED = "accepted"
STATUS_REJECTED = "rejected"
STATUS_REFUNDED = "refunded"
COMMISSION_STATUSES = (
    STATUS_PENDING,
    STATUS_PAYMENT_AUTHORIZED,
    STATUS_PAYMENT_FAILED,
    STATUS_ACCEPTED,
    STATUS_REJECTED,
    STATUS_REFUNDED,
)

# Claims taken while a capture/cancel/refund call is in flight
ACTION_CAPTURE = "capture"
ACTION_CANCEL = "cancel"
ACTION_REFUND = "refund"

REVISION_REQUESTED = "requested"
REVISION_AWAITING_PAYMENT = "awaiting_payment"
REVISION_PAYMENT_FAILED = "payment_failed"
REVISION_CANCELLED = "cancelled"


class CommissionType(db.Model):
    __tablename__ = "commission_types"

    id = db.Column(db.Integer, primary_key=True)
    creator_id = db.Column(db.Integer, db.ForeignKey("creators.id", ondelete="RESTRICT"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    base_price = db.Column(db.Numeric(10, 2), nullable=False)
    max_revisions = db.Column(db.Integer, nullable=False, default=0, server_default="0")
    # NULL or 0 means extra revisions were never priced
    price_per_revision = db.Column(db.Numeric(10, 2), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, server_default=true())

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("base_price > 0", name="ck_commission_types_base_price_positive"),
        CheckConstraint("max_revisions >= 0", name="ck_commission_types_max_revisions_nonneg"),
        CheckConstraint(
            "price_per_revision IS NULL OR price_per_revision >= 0",
            name="ck_commission_types_price_per_revision_nonneg",
        ),
    )


class CommissionRequest(db.Model):
    __tablename__ = "commission_requests"

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    creator_id = db.Column(db.Integer, db.ForeignKey("creators.id", ondelete="RESTRICT"), nullable=False, index=True)
    commission_type_id = db.Column(
        db.Integer, db.ForeignKey("commission_types.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    title = db.Column(db.String(255), nullable=True)
    description = db.Column(db.Text, nullable=False)
    reference_images = db.Column(JSONType, nullable=False, default=list)

    agreed_price = db.Column(db.Numeric(10, 2), nullable=False)
    processor_payment_intent_id = db.Column(db.String(64), nullable=True, unique=True, index=True)

    status = db.Column(db.String(32), nullable=False, index=True, default=STATUS_PENDING, server_default=STATUS_PENDING)
    pending_action = db.Column(db.String(16), nullable=True)
    revision_count = db.Column(db.Integer, nullable=False, default=0, server_default="0")
    creator_notes = db.Column(db.String(255), nullable=True)

    resubmitted_from_id = db.Column(
        db.Integer, db.ForeignKey("commission_requests.id", ondelete="SET NULL"), nullable=True
    )

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    commission_type = db.relationship("CommissionType", lazy="joined")
    creator = db.relationship("Creator", lazy="joined")
    revisions = db.relationship(
        "CommissionRevision",
        back_populates="commission_request",
        order_by="CommissionRevision.revision_number",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("agreed_price > 0", name="ck_commission_requests_agreed_price_positive"),
        CheckConstraint("revision_count >= 0", name="ck_commission_requests_revision_count_nonneg"),
        CheckConstraint(
            "status IN ('pending','payment_authorized','payment_failed','accepted','rejected','refunded')",
            name="ck_commission_requests_status_valid",
        ),
        CheckConstraint(
            "status = 'pending' OR processor_payment_intent_id IS NOT NULL",
            name="ck_commission_requests_intent_before_leaving_pending",
        ),
    )

    def __repr__(self) -> str:
        return f"<CommissionRequest id={self.id} status={self.status!r} intent={self.processor_payment_intent_id!r}>"


class CommissionRevision(db.Model):
    __tablename__ = "commission_revisions"

    id = db.Column(db.Integer, primary_key=True)
    commission_request_id = db.Column(
        db.Integer, db.ForeignKey("commission_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    requester_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    revision_number = db.Column(db.Integer, nullable=False)
    notes = db.Column(db.Text, nullable=False)

    is_extra = db.Column(db.Boolean, nullable=False, default=False)
    fee_amount = db.Column(db.Numeric(10, 2), nullable=True)
    # Secondary payment intent for an extra (paid) revision
    processor_payment_intent_id = db.Column(db.String(64), nullable=True, unique=True, index=True)
    status = db.Column(db.String(32), nullable=False, default=REVISION_REQUESTED)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    commission_request = db.relationship("CommissionRequest", back_populates="revisions")

    __table_args__ = (
        CheckConstraint(
            "status IN ('requested','awaiting_payment','payment_failed','cancelled')",
            name="ck_commission_revisions_status_valid",
        ),
    )
