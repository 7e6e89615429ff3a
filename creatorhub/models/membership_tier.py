from sqlalchemy import func, true, CheckConstraint
from creatorhub.extensions import db

class MembershipTier(db.Model):
    __tablename__ = "membership_tiers"

    id = db.Column(db.Integer, primary_key=True)
    creator_id = db.Column(db.Integer, db.ForeignKey("creators.id", ondelete="RESTRICT"), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    price = db.Column(db.Numeric(10, 2), nullable=False)

    processor_price_id = db.Column(db.String(64), nullable=True, unique=True, index=True)
    processor_product_id = db.Column(db.String(64), nullable=True, index=True)

    # Soft-delete: tiers stay for billing history once archived at the processor
    is_active = db.Column(db.Boolean, nullable=False, default=True, server_default=true())

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("price > 0", name="ck_membership_tiers_price_positive"),
    )

    def __repr__(self) -> str:
        return f"<MembershipTier id={self.id} creator_id={self.creator_id} price_id={self.processor_price_id!r}>"
