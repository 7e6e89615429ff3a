from sqlalchemy import func
from creatorhub.extensions import db

class Creator(db.Model):
    __tablename__ = "creators"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, unique=True, index=True)
    display_name = db.Column(db.String(255), nullable=False)
    # Connected account on the processor; creators without one cannot sell
    processor_account_id = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    user = db.relationship("User", lazy="joined")

    def __repr__(self) -> str:
        return f"<Creator id={self.id} user_id={self.user_id} display_name={self.display_name!r}>"
