from sqlalchemy import JSON, Column, DateTime, Integer, Text

from drasbot.database import Base


class ContextRecord(Base):
    __tablename__ = "conversation_contexts"

    id = Column(Text, primary_key=True)
    user_identity = Column(Text, nullable=False, unique=True, index=True)
    context_type = Column(Text, nullable=False)
    step = Column(Integer, nullable=False, default=0)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_touched_at = Column(DateTime(timezone=True), nullable=False)
    ttl_seconds = Column(Integer, nullable=False)
