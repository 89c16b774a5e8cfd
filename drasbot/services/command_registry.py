import re
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Optional

from drasbot.services.domain import Handler
from drasbot.services.errors import RegistryConflictError, ValidationError
from drasbot.services.permissions import PermissionLevel

PARAMETER_KINDS = {"text", "number", "boolean", "choice"}
_TRUE_WORDS = {"1", "true", "yes", "si", "sí", "on"}
_FALSE_WORDS = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class CommandParameter:
    name: str
    kind: str = "text"
    required: bool = False
    choices: tuple[str, ...] = ()
    pattern: Optional[str] = None
    default: Any = None
    # Swallow the rest of the arguments as one text value.
    greedy: bool = False


@dataclass(frozen=True)
class CommandDescriptor:
    name: str
    handler: Handler
    aliases: tuple[str, ...] = ()
    required_level: PermissionLevel = PermissionLevel.USER
    cooldown_seconds: float = 0
    description: str = ""
    category: str = "general"
    enabled: bool = True
    hidden: bool = False
    parameters: tuple[CommandParameter, ...] = ()
    examples: tuple[str, ...] = ()

    @property
    def keys(self) -> list[str]:
        return [self.name.casefold()] + [alias.casefold() for alias in self.aliases]

    def usage(self, prefix: str) -> str:
        parts = [f"{prefix}{self.name}"]
        for param in self.parameters:
            parts.append(f"<{param.name}>" if param.required else f"[{param.name}]")
        return " ".join(parts)


@dataclass(frozen=True)
class ParsedCommand:
    name: str
    args: list[str]
    raw_args: str


def parse_command(text: str, prefix: str) -> Optional[ParsedCommand]:
    """Split ``<prefix><name> arg ...``; None when the text is not a command."""
    text = (text or "").strip()
    if not prefix or not text.startswith(prefix):
        return None
    body = text[len(prefix):]
    parts = body.split(maxsplit=1)
    if not parts or body[:1].isspace():
        return None
    raw_args = parts[1].strip() if len(parts) > 1 else ""
    return ParsedCommand(name=parts[0].casefold(), args=raw_args.split(), raw_args=raw_args)


def _validate_descriptor(descriptor: CommandDescriptor) -> None:
    if not descriptor.name or not descriptor.name.strip() or any(c.isspace() for c in descriptor.name):
        raise RegistryConflictError(f"Invalid command name: {descriptor.name!r}")
    if descriptor.cooldown_seconds < 0:
        raise RegistryConflictError(f"Negative cooldown for {descriptor.name}")
    if not isinstance(descriptor.required_level, PermissionLevel):
        raise RegistryConflictError(f"Unknown permission level for {descriptor.name}")
    if descriptor.handler is None:
        raise RegistryConflictError(f"Command {descriptor.name} has no handler")
    for param in descriptor.parameters:
        if param.kind not in PARAMETER_KINDS:
            raise RegistryConflictError(f"Unknown parameter kind {param.kind!r} in {descriptor.name}")
        if param.kind == "choice" and not param.choices:
            raise RegistryConflictError(f"Choice parameter {param.name} in {descriptor.name} has no choices")


class CommandRegistry:
    """Immutable name/alias index. Keys are unique case-insensitively across the whole set."""

    def __init__(self, descriptors: Iterable[CommandDescriptor] = (), reserved: Iterable[str] = ()):
        reserved_keys = {word.strip().casefold() for word in reserved if word and word.strip()}
        by_key: dict[str, CommandDescriptor] = {}
        ordered: list[CommandDescriptor] = []
        for descriptor in descriptors:
            _validate_descriptor(descriptor)
            for key in descriptor.keys:
                if key in reserved_keys:
                    raise RegistryConflictError(f"'{key}' is reserved and cannot name a command")
                if key in by_key:
                    raise RegistryConflictError(
                        f"'{key}' of {descriptor.name} is already used by {by_key[key].name}"
                    )
                by_key[key] = descriptor
            ordered.append(descriptor)
        self._by_key = by_key
        self._descriptors = tuple(ordered)

    def resolve(self, token: str) -> Optional[CommandDescriptor]:
        if not token:
            return None
        return self._by_key.get(token.strip().casefold())

    def __iter__(self) -> Iterator[CommandDescriptor]:
        return iter(self._descriptors)

    def __len__(self) -> int:
        return len(self._descriptors)

    @property
    def names(self) -> list[str]:
        return [d.name for d in self._descriptors]


def bind_parameters(descriptor: CommandDescriptor, args: list[str]) -> dict[str, Any]:
    """Convert positional args into typed parameters, raising ValidationError on bad input."""
    values: dict[str, Any] = {}
    remaining = list(args)
    for param in descriptor.parameters:
        if param.greedy:
            raw = " ".join(remaining) if remaining else None
            remaining = []
        else:
            raw = remaining.pop(0) if remaining else None
        if raw is None:
            if param.required:
                raise ValidationError(
                    f"Missing parameter: {param.name}",
                    template_key="validation.missing",
                    variables={"param": param.name},
                )
            values[param.name] = param.default
            continue
        values[param.name] = _convert(param, raw)
    return values


def _convert(param: CommandParameter, raw: str) -> Any:
    if param.pattern and not re.fullmatch(param.pattern, raw):
        raise ValidationError(
            f"Invalid format for {param.name}",
            template_key="validation.format",
            variables={"param": param.name, "value": raw},
        )
    if param.kind == "number":
        try:
            number = float(raw)
        except ValueError:
            raise ValidationError(
                f"{param.name} must be a number",
                template_key="validation.number",
                variables={"param": param.name, "value": raw},
            )
        return int(number) if number.is_integer() else number
    if param.kind == "boolean":
        folded = raw.casefold()
        if folded in _TRUE_WORDS:
            return True
        if folded in _FALSE_WORDS:
            return False
        raise ValidationError(
            f"{param.name} must be yes or no",
            template_key="validation.boolean",
            variables={"param": param.name, "value": raw},
        )
    if param.kind == "choice":
        folded = raw.casefold()
        for choice in param.choices:
            if choice.casefold() == folded:
                return choice
        raise ValidationError(
            f"{param.name} must be one of: {', '.join(param.choices)}",
            template_key="validation.choice",
            variables={"param": param.name, "value": raw, "choices": ", ".join(param.choices)},
        )
    return raw
