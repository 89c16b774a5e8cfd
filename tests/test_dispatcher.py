import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from drasbot.services.command_registry import CommandDescriptor, CommandParameter, CommandRegistry
from drasbot.services.dispatcher import CommandDispatcher
from drasbot.services.domain import AdvanceContext, HandlerReply, InboundMessage, StartContext, User
from drasbot.services.errors import ErrorKind, NotFoundError, ValidationError
from drasbot.services.permissions import PermissionLevel
from drasbot.services.result import Route
from drasbot.services.templates import YamlTemplateRenderer

T0 = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)


def _user(level=PermissionLevel.USER) -> User:
    return User(identity="34600111222", level=level)


def _message(text="!cmd") -> InboundMessage:
    return InboundMessage(identity="34600111222", text=text, timestamp=T0)


def _dispatcher(*descriptors) -> CommandDispatcher:
    return CommandDispatcher(
        CommandRegistry(descriptors, reserved=["cancel"]),
        YamlTemplateRenderer(default_language="en"),
        prefix="!",
    )


def _dispatch(dispatcher, token, args=None, user=None, now=T0):
    return asyncio.run(dispatcher.dispatch(token, args or [], user or _user(), message=_message(), now=now))


class TestResolution:
    def test_unknown_command_is_not_found(self):
        outcome = _dispatch(_dispatcher(), "nope")
        assert outcome.result.success is False
        assert outcome.result.error_kind == ErrorKind.NOT_FOUND
        assert "nope" in outcome.result.reply_text

    def test_alias_resolves(self):
        handler = AsyncMock(return_value=HandlerReply(text="help text"))
        dispatcher = _dispatcher(CommandDescriptor(name="help", aliases=("ayuda",), handler=handler))
        outcome = _dispatch(dispatcher, "AYUDA")
        assert outcome.result.success is True
        assert outcome.result.reply_text == "help text"
        assert outcome.result.route == Route.COMMAND
        assert outcome.result.handled_by == "help"

    def test_disabled_command_is_not_found(self):
        handler = AsyncMock(return_value=HandlerReply(text="x"))
        dispatcher = _dispatcher(CommandDescriptor(name="beta", handler=handler, enabled=False))
        outcome = _dispatch(dispatcher, "beta")
        assert outcome.result.error_kind == ErrorKind.NOT_FOUND
        handler.assert_not_called()


class TestPermission:
    def test_insufficient_level_denied_without_calling_handler(self):
        handler = AsyncMock(return_value=HandlerReply(text="stats"))
        dispatcher = _dispatcher(
            CommandDescriptor(name="admin", handler=handler, required_level=PermissionLevel.ADMIN)
        )
        outcome = _dispatch(dispatcher, "admin", user=_user(PermissionLevel.USER))
        assert outcome.result.error_kind == ErrorKind.PERMISSION_DENIED
        assert "admin" not in outcome.result.reply_text.lower()
        assert outcome.result.error_detail == "admin requires admin"
        handler.assert_not_called()

    def test_higher_level_allowed(self):
        handler = AsyncMock(return_value=HandlerReply(text="stats"))
        dispatcher = _dispatcher(
            CommandDescriptor(name="admin", handler=handler, required_level=PermissionLevel.ADMIN)
        )
        outcome = _dispatch(dispatcher, "admin", user=_user(PermissionLevel.SUPER_ADMIN))
        assert outcome.result.success is True
        handler.assert_awaited_once()


class TestCooldown:
    def test_second_call_inside_window_is_rate_limited(self):
        handler = AsyncMock(return_value=HandlerReply(text="ok"))
        dispatcher = _dispatcher(CommandDescriptor(name="status", handler=handler, cooldown_seconds=10))

        first = _dispatch(dispatcher, "status", now=T0)
        second = _dispatch(dispatcher, "status", now=T0 + timedelta(seconds=4))

        assert first.result.success is True
        assert second.result.error_kind == ErrorKind.RATE_LIMITED
        assert "6" in second.result.reply_text
        assert second.result.error_detail == "cooldown 6s"
        assert handler.await_count == 1

    def test_call_after_window_runs(self):
        handler = AsyncMock(return_value=HandlerReply(text="ok"))
        dispatcher = _dispatcher(CommandDescriptor(name="status", handler=handler, cooldown_seconds=10))
        _dispatch(dispatcher, "status", now=T0)
        again = _dispatch(dispatcher, "status", now=T0 + timedelta(seconds=10))
        assert again.result.success is True
        assert handler.await_count == 2

    def test_cooldown_is_per_user(self):
        handler = AsyncMock(return_value=HandlerReply(text="ok"))
        dispatcher = _dispatcher(CommandDescriptor(name="status", handler=handler, cooldown_seconds=10))
        _dispatch(dispatcher, "status", user=User(identity="a"))
        other = _dispatch(dispatcher, "status", user=User(identity="b"))
        assert other.result.success is True

    def test_failed_handler_does_not_start_cooldown(self):
        handler = AsyncMock(side_effect=[RuntimeError("boom"), HandlerReply(text="ok")])
        dispatcher = _dispatcher(CommandDescriptor(name="status", handler=handler, cooldown_seconds=60))
        failed = _dispatch(dispatcher, "status", now=T0)
        retried = _dispatch(dispatcher, "status", now=T0 + timedelta(seconds=1))
        assert failed.result.error_kind == ErrorKind.INTERNAL
        assert retried.result.success is True
        assert dispatcher.usage_stats() == {"status": 1}


class TestHandlerFaults:
    def test_exception_becomes_internal_error(self):
        handler = AsyncMock(side_effect=KeyError("missing"))
        dispatcher = _dispatcher(CommandDescriptor(name="boom", handler=handler))
        outcome = _dispatch(dispatcher, "boom")
        assert outcome.result.success is False
        assert outcome.result.error_kind == ErrorKind.INTERNAL
        assert "KeyError" in outcome.result.error_detail
        assert "KeyError" not in outcome.result.reply_text

    def test_validation_error_is_shown_verbatim(self):
        handler = AsyncMock(side_effect=ValidationError("Date must look like YYYY-MM-DD"))
        dispatcher = _dispatcher(CommandDescriptor(name="book", handler=handler))
        outcome = _dispatch(dispatcher, "book")
        assert outcome.result.error_kind == ErrorKind.VALIDATION
        assert outcome.result.reply_text == "Date must look like YYYY-MM-DD"

    def test_classified_error_keeps_its_kind(self):
        handler = AsyncMock(side_effect=NotFoundError("no such item"))
        dispatcher = _dispatcher(CommandDescriptor(name="find", handler=handler))
        outcome = _dispatch(dispatcher, "find")
        assert outcome.result.error_kind == ErrorKind.NOT_FOUND

    def test_advance_directive_from_command_is_rejected(self):
        handler = AsyncMock(return_value=HandlerReply(directive=AdvanceContext("registration", {})))
        dispatcher = _dispatcher(CommandDescriptor(name="sneaky", handler=handler))
        outcome = _dispatch(dispatcher, "sneaky")
        assert outcome.result.error_kind == ErrorKind.INTERNAL
        assert outcome.directive is None

    def test_start_directive_is_returned(self):
        handler = AsyncMock(return_value=HandlerReply(text="name?", directive=StartContext("registration")))
        dispatcher = _dispatcher(CommandDescriptor(name="registro", handler=handler))
        outcome = _dispatch(dispatcher, "registro")
        assert outcome.directive == StartContext("registration")


class TestParameters:
    def test_bad_argument_is_validation_error_and_handler_skipped(self):
        handler = AsyncMock(return_value=HandlerReply(text="ok"))
        dispatcher = _dispatcher(
            CommandDescriptor(
                name="wait",
                handler=handler,
                parameters=(CommandParameter("seconds", kind="number", required=True),),
            )
        )
        outcome = _dispatch(dispatcher, "wait", args=["soon"])
        assert outcome.result.error_kind == ErrorKind.VALIDATION
        assert outcome.result.reply_text == "seconds must be a number."
        handler.assert_not_called()

    def test_params_reach_handler(self):
        handler = AsyncMock(return_value=HandlerReply(text="ok"))
        dispatcher = _dispatcher(
            CommandDescriptor(
                name="wait",
                handler=handler,
                parameters=(CommandParameter("seconds", kind="number", required=True),),
            )
        )
        _dispatch(dispatcher, "wait", args=["15"])
        call = handler.await_args.args[0]
        assert call.params == {"seconds": 15}
        assert call.args == ["15"]


class TestRegistrySwap:
    def test_replace_registry(self):
        old_handler = AsyncMock(return_value=HandlerReply(text="old"))
        new_handler = AsyncMock(return_value=HandlerReply(text="new"))
        dispatcher = _dispatcher(CommandDescriptor(name="ping", handler=old_handler))

        dispatcher.replace_registry(CommandRegistry([CommandDescriptor(name="pong", handler=new_handler)]))

        assert _dispatch(dispatcher, "ping").result.error_kind == ErrorKind.NOT_FOUND
        assert _dispatch(dispatcher, "pong").result.reply_text == "new"

    def test_available_for_filters_by_level(self):
        handler = AsyncMock(return_value=HandlerReply(text="x"))
        dispatcher = _dispatcher(
            CommandDescriptor(name="help", handler=handler, required_level=PermissionLevel.GUEST),
            CommandDescriptor(name="admin", handler=handler, required_level=PermissionLevel.ADMIN),
            CommandDescriptor(name="secret", handler=handler, hidden=True),
        )
        names = [d.name for d in dispatcher.available_for(_user())]
        assert names == ["help"]


@pytest.mark.parametrize("level", list(PermissionLevel))
def test_guest_commands_open_to_every_level(level):
    handler = AsyncMock(return_value=HandlerReply(text="hi"))
    dispatcher = _dispatcher(CommandDescriptor(name="help", handler=handler, required_level=PermissionLevel.GUEST))
    assert _dispatch(dispatcher, "help", user=_user(level)).result.success is True
