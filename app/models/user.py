from sqlalchemy import Column, Integer, String, Boolean, DateTime, BigInteger
from sqlalchemy.sql import func
from app.db.base import Base

class User(Base):
    """Account record mirrored from the identity provider and the billing provider.

    Subscription and billing columns are written only by app.services.reconciler
    (webhooks, admin corrections). Profile routes must leave them alone.
    """
    __tablename__ = "users"
    
    id = Column(Integer, primary_key=True, index=True)
    clerk_id = Column(String, unique=True, index=True, nullable=False)  # Identity provider subject id
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=True)
    profile_picture_url = Column(String, nullable=True)
    subscription_plan_id = Column(String, default="free", nullable=False)
    subscription_status = Column(String, default="active", nullable=False)
    stripe_customer_id = Column(String, index=True, nullable=True)
    stripe_subscription_id = Column(String, nullable=True)
    current_period_end = Column(BigInteger, nullable=True)  # Epoch milliseconds
    auto_renew = Column(Boolean, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<User(id={self.id}, clerk_id={self.clerk_id}, plan={self.subscription_plan_id}, status={self.subscription_status})>"
