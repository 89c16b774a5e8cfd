import asyncio
from datetime import datetime, timezone

import pytest

from drasbot.services.domain import User
from drasbot.services.errors import NotFoundError
from drasbot.services.memory_store import InMemoryPersistence
from drasbot.services.permissions import PermissionLevel
from drasbot.services.user_service import UserDirectory, normalize_identity

T0 = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)


class TestNormalizeIdentity:
    def test_strips_server_and_device(self):
        assert normalize_identity(" 34600111222:12@s.whatsapp.net ") == "34600111222"

    def test_bare_number_unchanged(self):
        assert normalize_identity("34600111222") == "34600111222"

    def test_empty(self):
        assert normalize_identity(None) == ""


class TestUserDirectory:
    def test_new_user_gets_default_level_and_is_not_written(self):
        store = InMemoryPersistence()
        directory = UserDirectory(store, default_level=PermissionLevel.GUEST)

        user = asyncio.run(directory.resolve("34600111222", T0))

        assert user.level == PermissionLevel.GUEST
        assert user.message_count == 1
        assert user.last_seen_at == T0
        assert store.users == {}

    def test_super_admin_bootstrap(self):
        directory = UserDirectory(InMemoryPersistence(), super_admins=["34600000001@s.whatsapp.net"])

        user = asyncio.run(directory.resolve("34600000001", T0))

        assert user.level == PermissionLevel.SUPER_ADMIN

    def test_closed_directory_rejects_unknown(self):
        directory = UserDirectory(InMemoryPersistence(), allow_new_users=False)

        with pytest.raises(NotFoundError) as exc_info:
            asyncio.run(directory.resolve("34600111222", T0))

        assert exc_info.value.template_key == "errors.unknown_user"

    def test_existing_user_is_counted(self):
        store = InMemoryPersistence()
        asyncio.run(store.upsert_user(User(identity="34600111222", message_count=7, created_at=T0)))
        directory = UserDirectory(store, allow_new_users=False)

        user = asyncio.run(directory.resolve("34600111222", T0))

        assert user.message_count == 8
        assert store.users["34600111222"].message_count == 7
