from drasbot.services.context_manager import ContextHandler
from drasbot.services.domain import HandlerCall, HandlerReply, UserUpdates
from drasbot.services.errors import ValidationError

REGISTRATION = "registration"
LANGUAGES = ("es", "en", "pt")
NAME_MIN, NAME_MAX = 2, 50

STEP_NAME = 0
STEP_LANGUAGE = 1


class RegistrationFlow(ContextHandler):
    """Two steps: ask the name, then the preferred language."""

    context_type = REGISTRATION

    async def begin(self, call: HandlerCall) -> HandlerReply:
        key = "registration.reattach" if call.params.get("reattached") else "registration.ask_name"
        return HandlerReply(
            text=call.render(key),
            directive=call.actions.start(payload={}, step=STEP_NAME),
        )

    async def handle(self, call: HandlerCall) -> HandlerReply:
        step = call.context.step
        payload = dict(call.context.payload)
        answer = call.message.text.strip()

        if step == STEP_NAME:
            if not NAME_MIN <= len(answer) <= NAME_MAX:
                raise ValidationError("invalid name", template_key="registration.invalid_name")
            payload["name"] = answer
            return HandlerReply(
                text=call.render("registration.ask_language", name=answer),
                directive=call.actions.advance(payload, step=STEP_LANGUAGE),
            )

        if step == STEP_LANGUAGE:
            language = answer.casefold()
            if language not in LANGUAGES:
                raise ValidationError("invalid language", template_key="registration.invalid_language")
            name = payload["name"]
            return HandlerReply(
                text=call.render("registration.done", name=name),
                directive=call.actions.complete(),
                user_updates=UserUpdates(display_name=name, is_registered=True, metadata={"language": language}),
            )

        raise ValueError(f"unexpected registration step {step}")
