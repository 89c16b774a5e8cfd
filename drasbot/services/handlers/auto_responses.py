from drasbot.services.detectors import (
    Detector,
    HandlerRoute,
    StartContextRoute,
    all_of,
    contains_phrase,
    keywords,
    recently_completed,
)
from drasbot.services.domain import HandlerCall, HandlerReply, InboundMessage, User
from drasbot.services.handlers.registration import REGISTRATION

GREETING_WORDS = ("hola", "hello", "hi", "hey", "buenas", "buenos dias", "buenos días", "buenas tardes", "buenas noches")
THANKS_WORDS = ("gracias", "muchas gracias", "thanks", "thank you", "obrigado")
BYE_WORDS = ("adios", "adiós", "bye", "chao", "hasta luego", "nos vemos")
REGISTRATION_PHRASES = ("quiero registrarme", "registrarme", "register me", "sign me up")
REATTACH_WORDS = ("cambiar", "corregir", "editar", "change", "edit")


def not_registered(message: InboundMessage, user: User) -> bool:
    return not user.is_registered


async def greet(call: HandlerCall) -> HandlerReply:
    name = call.user.display_name
    return HandlerReply(text=call.render("greetings.hello", name_suffix=f" {name}" if name else ""))


async def thank(call: HandlerCall) -> HandlerReply:
    return HandlerReply(text=call.render("greetings.thanks"))


async def farewell(call: HandlerCall) -> HandlerReply:
    return HandlerReply(text=call.render("greetings.bye"))


async def fallback_reply(call: HandlerCall) -> HandlerReply:
    return HandlerReply(text=call.render("fallback.default"))


def build_default_detectors(grace_seconds: int = 120) -> list[Detector]:
    return [
        Detector(
            name="registration_reattach",
            priority=30,
            predicate=all_of(recently_completed(REGISTRATION, grace_seconds), keywords(*REATTACH_WORDS)),
            route=StartContextRoute(REGISTRATION, payload={"reattached": True}),
        ),
        Detector(
            name="registration_start",
            priority=20,
            predicate=all_of(not_registered, contains_phrase(*REGISTRATION_PHRASES)),
            route=StartContextRoute(REGISTRATION),
        ),
        Detector(name="greeting", priority=10, predicate=keywords(*GREETING_WORDS), route=HandlerRoute("greeting", greet)),
        Detector(name="thanks", priority=10, predicate=keywords(*THANKS_WORDS), route=HandlerRoute("thanks", thank)),
        Detector(name="farewell", priority=10, predicate=keywords(*BYE_WORDS), route=HandlerRoute("farewell", farewell)),
    ]
