from sqlalchemy import func
from creatorhub.extensions import db
from .types import JSONType

class BillingEventLog(db.Model):
    """Idempotency ledger: one row per processor event whose effect was applied."""
    __tablename__ = "billing_event_logs"

    id = db.Column(db.Integer, primary_key=True)
    processor_event_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    type = db.Column(db.String(80), nullable=False, index=True)
    payload = db.Column(JSONType, nullable=False, default=dict)
    notes = db.Column(db.String(255), nullable=True)

    processed_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self) -> str:
        return f"<BillingEventLog {self.processor_event_id} ({self.type})>"
