import copy
from typing import Optional

from drasbot.services.domain import ConversationContext, MessageLogEntry, MessageWrites, User


class InMemoryPersistence:
    """Dictionary-backed persistence for tests and single-process runs.

    Objects are copied in and out so callers never share mutable state with
    the store.
    """

    def __init__(self):
        self.users: dict[str, User] = {}
        self.contexts: dict[str, ConversationContext] = {}
        self.message_log: list[MessageLogEntry] = []

    async def get_user(self, identity: str) -> Optional[User]:
        user = self.users.get(identity)
        return copy.deepcopy(user) if user else None

    async def upsert_user(self, user: User) -> None:
        self.users[user.identity] = copy.deepcopy(user)

    async def get_context(self, identity: str) -> Optional[ConversationContext]:
        context = self.contexts.get(identity)
        return copy.deepcopy(context) if context else None

    async def save_context(self, context: ConversationContext) -> None:
        self.contexts[context.identity] = copy.deepcopy(context)

    async def delete_context(self, identity: str) -> bool:
        return self.contexts.pop(identity, None) is not None

    async def list_contexts(self) -> list[ConversationContext]:
        return [copy.deepcopy(c) for c in self.contexts.values()]

    async def append_message_log(self, entry: MessageLogEntry) -> None:
        self.message_log.append(entry)

    async def apply_writes(self, writes: MessageWrites) -> None:
        # Stage on a copy; only a fully applied batch reaches the live dicts.
        staged = copy.copy(self)
        staged.users = dict(self.users)
        staged.contexts = dict(self.contexts)
        staged.message_log = list(self.message_log)
        logged = len(staged.message_log)

        identity = writes.user.identity
        await staged.upsert_user(writes.user)
        if writes.save_context is not None:
            await staged.save_context(writes.save_context)
        elif writes.delete_context:
            await staged.delete_context(identity)
        await staged.append_message_log(writes.inbound)

        self.users[identity] = staged.users[identity]
        if identity in staged.contexts:
            self.contexts[identity] = staged.contexts[identity]
        else:
            self.contexts.pop(identity, None)
        self.message_log.extend(staged.message_log[logged:])
