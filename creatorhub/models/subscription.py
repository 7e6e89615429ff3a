from datetime import datetime
from typing import Optional

from sqlalchemy import func, false, text, CheckConstraint, Index
from creatorhub.extensions import db
from creatorhub.utils.helpers import as_utc, utcnow

SUB_PENDING = "pending"
SUB_ACTIVE = "active"
SUB_CANCELLED = "cancelled"
SUB_EXPIRED = "expired"
SUBSCRIPTION_STATUSES = (SUB_PENDING, SUB_ACTIVE, SUB_CANCELLED, SUB_EXPIRED)

class UserSubscription(db.Model):
    __tablename__ = "user_subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    creator_id = db.Column(db.Integer, db.ForeignKey("creators.id", ondelete="RESTRICT"), nullable=False, index=True)
    tier_id = db.Column(db.Integer, db.ForeignKey("membership_tiers.id", ondelete="RESTRICT"), nullable=False, index=True)

    processor_subscription_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    processor_customer_id = db.Column(db.String(64), nullable=True, index=True)
    # Subscription item carrying the tier price; needed to swap prices on tier change
    processor_item_id = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(32), nullable=False, index=True, default=SUB_PENDING, server_default=SUB_PENDING)
    current_period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False, server_default=false())

    last_synced_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    tier = db.relationship("MembershipTier", lazy="joined")

    __table_args__ = (
        # Upsert key: at most one active row per (user, creator, tier); history rows stay
        Index(
            "uq_user_subscriptions_active_triple",
            "user_id", "creator_id", "tier_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        CheckConstraint(
            "status IN ('pending','active','cancelled','expired')",
            name="ck_user_subscriptions_status_valid",
        ),
    )

    def is_entitled(self, now: Optional[datetime] = None) -> bool:
        """Active, and either renewing or still inside the paid period."""
        if self.status != SUB_ACTIVE:
            return False
        if not self.cancel_at_period_end:
            return True
        period_end = as_utc(self.current_period_end)
        if period_end is None:
            return False
        return (as_utc(now) or utcnow()) < period_end

    def __repr__(self) -> str:
        return (
            f"<UserSubscription id={self.id} user_id={self.user_id} tier_id={self.tier_id} "
            f"status={self.status!r} sub={self.processor_subscription_id!r}>"
        )
