from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, Text

from drasbot.database import Base


class UserRecord(Base):
    __tablename__ = "users"

    identity = Column(Text, primary_key=True)
    level = Column(Text, nullable=False, default="user")  # guest, user, premium, admin, super_admin
    display_name = Column(Text)
    is_registered = Column(Boolean, nullable=False, default=False)
    message_count = Column(Integer, nullable=False, default=0)
    rate_counters = Column(JSON, nullable=False, default=dict)
    last_completed_context = Column(Text)
    last_completed_at = Column(DateTime(timezone=True))
    user_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_seen_at = Column(DateTime(timezone=True))
