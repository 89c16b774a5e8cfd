from sqlalchemy import Boolean, Column, DateTime, Integer, Text

from drasbot.database import Base


class MessageLogRecord(Base):
    __tablename__ = "message_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_identity = Column(Text, nullable=False, index=True)
    direction = Column(Text, nullable=False)  # inbound, outbound
    text = Column(Text, nullable=False, default="")
    message_type = Column(Text, nullable=False, default="text")
    route = Column(Text)
    processing_id = Column(Text)
    delivered = Column(Boolean)
    created_at = Column(DateTime(timezone=True), nullable=False)
