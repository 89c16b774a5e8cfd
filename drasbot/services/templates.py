from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml

from drasbot.logging_config import get_logger

logger = get_logger("templates")

DEFAULT_TEMPLATES_PATH = Path(__file__).resolve().parents[1] / "templates" / "responses.yaml"


@lru_cache(maxsize=4)
def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data if isinstance(data, dict) else {}


class _SafeVars(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def _lookup(tree: dict, key: str) -> Optional[Any]:
    node: Any = tree
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


class YamlTemplateRenderer:
    """Renders reply texts from a YAML document keyed by language, then dotted key."""

    def __init__(self, path: Optional[Path] = None, default_language: str = "es"):
        self.path = Path(path) if path else DEFAULT_TEMPLATES_PATH
        self.default_language = default_language

    @property
    def languages(self) -> list[str]:
        return sorted(_load_yaml(self.path).keys())

    def render(self, key: str, variables: Optional[dict] = None, language: Optional[str] = None) -> str:
        templates = _load_yaml(self.path)
        template = None
        for lang in (language, self.default_language):
            if lang and isinstance(templates.get(lang), dict):
                template = _lookup(templates[lang], key)
                if template is not None:
                    break
        if template is None:
            logger.warning("Template not found", extra={"context": {"key": key, "language": language}})
            return key
        if isinstance(template, list):
            template = "\n".join(str(line) for line in template)
        return str(template).format_map(_SafeVars(variables or {}))
