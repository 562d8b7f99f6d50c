"""
Elevated-privilege record keyed by the same identity id as its Account.
"""
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime
from sqlalchemy.sql import func
from app.db.base import Base


class Admin(Base):
    __tablename__ = "admins"

    id = Column(Integer, primary_key=True, index=True)
    clerk_id = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    email = Column(String, nullable=False)
    name = Column(String, nullable=True)
    access_level = Column(String, nullable=False, index=True)  # "Full Access" | "Partial Access" | "Limited Access"
    account_created_at = Column(DateTime(timezone=True), nullable=True)
    became_admin_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
