from sqlalchemy import func
from creatorhub.extensions import db

KIND_COMMISSION = "commission"
KIND_SUBSCRIPTION = "subscription"

class ReconciliationMismatchLog(db.Model):
    """Local row and processor disagree; surfaced to operators, never auto-resolved."""
    __tablename__ = "reconciliation_mismatches"

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(32), nullable=False, index=True)
    local_id = db.Column(db.Integer, nullable=True)
    processor_ref = db.Column(db.String(64), nullable=True, index=True)
    local_state = db.Column(db.String(32), nullable=True)
    processor_state = db.Column(db.String(32), nullable=True)
    detail = db.Column(db.String(255), nullable=True)

    detected_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "local_id": self.local_id,
            "processor_ref": self.processor_ref,
            "local_state": self.local_state,
            "processor_state": self.processor_state,
            "detail": self.detail,
            "detected_at": self.detected_at.isoformat() if self.detected_at else None,
        }
