from sqlalchemy import func, false, UniqueConstraint
from creatorhub.extensions import db

class PaymentMethodCache(db.Model):
    """
    Display-only projection of the processor's payment methods.
    Rebuilt on every authenticated read; holds brand/last4 and nothing more.
    """
    __tablename__ = "payment_method_cache"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    processor_payment_method_id = db.Column(db.String(64), nullable=False)

    brand = db.Column(db.String(32), nullable=True)
    last4 = db.Column(db.String(4), nullable=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False, server_default=false())

    refreshed_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "processor_payment_method_id", name="uq_payment_method_cache_user_pm"),
    )
