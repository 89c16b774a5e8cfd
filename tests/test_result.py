from drasbot.services.errors import ErrorKind
from drasbot.services.result import ContextEffect, PipelineResult, Result, Route


class TestResultSuccess:
    def test_success_creates_ok_result(self):
        result = Result.success("34600111222@s.whatsapp.net")
        assert result.ok is True
        assert result.value == "34600111222@s.whatsapp.net"
        assert result.error is None


class TestResultFailure:
    def test_failure_creates_not_ok_result(self):
        result = Result.failure("bridge down", "transport_error")
        assert result.ok is False
        assert result.error == "bridge down"
        assert result.error_code == "transport_error"
        assert result.value is None

    def test_failure_default_code(self):
        assert Result.failure("Error message").error_code == "unknown"


class TestResultUnwrapOr:
    def test_unwrap_or_returns_value_on_success(self):
        assert Result.success("actual").unwrap_or("default") == "actual"

    def test_unwrap_or_returns_default_on_failure(self):
        assert Result.failure("Error", "code").unwrap_or("default") == "default"


class TestPipelineResult:
    def test_ok_defaults(self):
        result = PipelineResult.ok("hi", route=Route.FALLBACK)
        assert result.success is True
        assert result.reply_text == "hi"
        assert result.error_kind is None
        assert result.context_effect == ContextEffect.NONE
        assert result.delivered is False

    def test_failed_carries_kind(self):
        result = PipelineResult.failed(ErrorKind.NOT_FOUND, reply_text="unknown", detail="no such command")
        assert result.success is False
        assert result.error_kind == ErrorKind.NOT_FOUND
        assert result.error_detail == "no such command"

    def test_clears_context_flag(self):
        assert PipelineResult.ok(context_effect=ContextEffect.CANCELLED).clears_context is True
        assert PipelineResult.ok(context_effect=ContextEffect.CLEARED_ON_ERROR).clears_context is True
        assert PipelineResult.ok(context_effect=ContextEffect.ADVANCED).clears_context is False
