from drasbot.services.command_registry import CommandDescriptor, CommandParameter
from drasbot.services.domain import HandlerCall, HandlerReply, UserUpdates
from drasbot.services.errors import NotFoundError
from drasbot.services.handlers.registration import LANGUAGES, REGISTRATION
from drasbot.services.permissions import PermissionLevel


async def help_command(call: HandlerCall) -> HandlerReply:
    catalog = call.catalog
    if call.params.get("command"):
        token = call.params["command"].lstrip(catalog.prefix)
        descriptor = catalog.resolve(token)
        if descriptor is None or descriptor not in catalog.available_for(call.user):
            raise NotFoundError(
                f"unknown command {token}",
                template_key="errors.unknown_command",
                variables={"command": token},
            )
        return HandlerReply(
            text=call.render(
                "help.detail",
                name=descriptor.name,
                description=descriptor.description,
                aliases=", ".join(descriptor.aliases) or "-",
                usage=descriptor.usage(catalog.prefix),
            )
        )

    lines = [call.render("help.header")]
    for descriptor in catalog.available_for(call.user):
        lines.append(call.render("help.line", name=descriptor.name, description=descriptor.description))
    lines.append(call.render("help.footer"))
    return HandlerReply(text="\n".join(lines))


async def status_command(call: HandlerCall) -> HandlerReply:
    user = call.user
    return HandlerReply(
        text=call.render(
            "status.body",
            name=user.display_name or user.identity,
            level=user.level.label,
            registered="✅" if user.is_registered else "❌",
            messages=user.message_count,
        )
    )


async def register_command(call: HandlerCall) -> HandlerReply:
    if call.user.is_registered:
        return HandlerReply(text=call.render("registration.already", name=call.user.display_name or call.user.identity))
    return HandlerReply(
        text=call.render("registration.ask_name"),
        directive=call.actions.start(REGISTRATION),
    )


async def language_command(call: HandlerCall) -> HandlerReply:
    language = call.params["language"]
    return HandlerReply(
        text=call.render("language.changed", language=language),
        user_updates=UserUpdates(metadata={"language": language}),
    )


async def admin_command(call: HandlerCall) -> HandlerReply:
    stats = call.catalog.usage_stats()
    lines = [call.render("admin.header")]
    if not stats:
        lines.append(call.render("admin.empty"))
    for name, count in sorted(stats.items(), key=lambda item: (-item[1], item[0])):
        lines.append(call.render("admin.line", name=name, count=count))
    return HandlerReply(text="\n".join(lines))


def build_default_commands() -> list[CommandDescriptor]:
    return [
        CommandDescriptor(
            name="help",
            aliases=("ayuda", "comandos"),
            handler=help_command,
            required_level=PermissionLevel.GUEST,
            description="Muestra los comandos disponibles",
            category="basic",
            parameters=(CommandParameter(name="command"),),
            examples=("!help", "!help status"),
        ),
        CommandDescriptor(
            name="status",
            aliases=("estado", "info"),
            handler=status_command,
            required_level=PermissionLevel.GUEST,
            cooldown_seconds=5,
            description="Muestra tu estado en el bot",
            category="basic",
        ),
        CommandDescriptor(
            name="registro",
            aliases=("register", "registrar", "signup"),
            handler=register_command,
            required_level=PermissionLevel.GUEST,
            cooldown_seconds=10,
            description="Inicia el registro de usuario",
            category="basic",
        ),
        CommandDescriptor(
            name="idioma",
            aliases=("language", "lang"),
            handler=language_command,
            required_level=PermissionLevel.USER,
            description="Cambia el idioma de las respuestas",
            category="basic",
            parameters=(CommandParameter(name="language", kind="choice", required=True, choices=LANGUAGES),),
            examples=("!idioma en",),
        ),
        CommandDescriptor(
            name="admin",
            aliases=("administration", "panel"),
            handler=admin_command,
            required_level=PermissionLevel.ADMIN,
            description="Estadísticas de uso de comandos",
            category="admin",
        ),
    ]
