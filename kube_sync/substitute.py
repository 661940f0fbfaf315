"""Post-render variable substitution for rendered manifests.

Rendered documents may reference variables as `${VAR}` or with a default
value as `${VAR:=default}`. Substitution happens on the serialized document
so a variable may appear anywhere a YAML scalar may. A literal `$${VAR}` is
escaped and left as `${VAR}`.
"""

import logging
import re
from typing import Any

import yaml

from .exceptions import RenderError

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "substitute",
    "substitute_docs",
]

_VAR_RE = re.compile(
    r"(?P<escape>\$)?\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::=(?P<default>[^}]*))?\}"
)

DISABLE_ANNOTATION = "kube-sync.io/substitute"
DISABLED = "disabled"


def substitute(content: str, values: dict[str, str], strict: bool = True) -> str:
    """Replace variable references in the content with values.

    In strict mode a reference with no value and no default is an error,
    otherwise the reference is replaced with an empty string.
    """
    missing: list[str] = []

    def _replace(match: re.Match[str]) -> str:
        if match.group("escape"):
            return match.group(0)[1:]
        name = match.group("name")
        if name in values:
            return str(values[name])
        if (default := match.group("default")) is not None:
            return default
        missing.append(name)
        return ""

    result = _VAR_RE.sub(_replace, content)
    if missing and strict:
        raise RenderError(
            f"Missing substitution variable(s): {', '.join(sorted(set(missing)))}"
        )
    return result


def _disabled(doc: dict[str, Any]) -> bool:
    annotations = (doc.get("metadata") or {}).get("annotations") or {}
    return annotations.get(DISABLE_ANNOTATION) == DISABLED


def substitute_docs(
    docs: list[dict[str, Any]], values: dict[str, str], strict: bool = True
) -> list[dict[str, Any]]:
    """Substitute variables in each rendered document.

    Documents annotated with `kube-sync.io/substitute: disabled`
    are returned unchanged.
    """
    result: list[dict[str, Any]] = []
    for doc in docs:
        if _disabled(doc):
            result.append(doc)
            continue
        content = yaml.dump(doc, sort_keys=False)
        if "${" not in content:
            result.append(doc)
            continue
        try:
            result.append(yaml.safe_load(substitute(content, values, strict=strict)))
        except RenderError as err:
            name = (doc.get("metadata") or {}).get("name", "<unknown>")
            raise RenderError(f"{doc.get('kind')}/{name}: {err}") from err
        except yaml.YAMLError as err:
            raise RenderError(
                f"Substitution produced invalid YAML for {doc.get('kind')}: {err}"
            ) from err
    _LOGGER.debug("Substituted variables in %d documents", len(result))
    return result
