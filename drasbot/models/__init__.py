from drasbot.models.context import ContextRecord
from drasbot.models.message_log import MessageLogRecord
from drasbot.models.user import UserRecord

__all__ = [
    "UserRecord",
    "ContextRecord",
    "MessageLogRecord",
]
