"""Ports (interfaces) the routing core depends on.

Adapters for persistence, outbound delivery and reply templates implement
these so the pipeline can run against SQL, in-memory or fake backends.
"""

from typing import Optional, Protocol

from drasbot.services.domain import ConversationContext, MessageLogEntry, MessageWrites, User
from drasbot.services.result import Result


class PersistencePort(Protocol):
    async def get_user(self, identity: str) -> Optional[User]:
        ...

    async def upsert_user(self, user: User) -> None:
        ...

    async def get_context(self, identity: str) -> Optional[ConversationContext]:
        ...

    async def save_context(self, context: ConversationContext) -> None:
        ...

    async def delete_context(self, identity: str) -> bool:
        ...

    async def list_contexts(self) -> list[ConversationContext]:
        ...

    async def append_message_log(self, entry: MessageLogEntry) -> None:
        ...

    async def apply_writes(self, writes: MessageWrites) -> None:
        """Persist a message's user, context change and inbound log in one unit."""
        ...


class TransportPort(Protocol):
    async def send(self, identity: str, text: str) -> Result[str]:
        """Deliver ``text``. Failures come back as a failed Result or a raised TransportError."""
        ...


class TemplateRenderer(Protocol):
    def render(self, key: str, variables: Optional[dict] = None, language: Optional[str] = None) -> str:
        ...
