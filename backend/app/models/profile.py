from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from app.core.database import Base


class UserProfile(Base):
    """Storefront customer profile. Read here only for usage history display."""

    __tablename__ = "user_profiles"

    id = Column(String, primary_key=True, index=True)
    full_name = Column(String, nullable=True)
    email = Column(String, index=True, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
