from flask_login import UserMixin
from sqlalchemy import false, func
from creatorhub.extensions import db, login_manager

class User(db.Model, UserMixin):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    # Also the join key the pull sync uses to match processor customers
    email = db.Column(db.String(255), nullable=False, unique=True, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    # Operators see the reconciliation mismatch view
    is_operator = db.Column(db.Boolean, nullable=False, default=False, server_default=false())

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    def get_id(self) -> str:
        return str(self.id)

@login_manager.user_loader
def load_user(user_id: str):
    try:
        return db.session.get(User, int(user_id))
    except (TypeError, ValueError):
        return None
