"""Template variable resolution for ``{{identifier.path}}`` references.

Roots resolve, in order, against the active loop scope, node names (output of
successful nodes only), node ids and finally global variables. Anything that
cannot be resolved is left in the text verbatim.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol, Sequence, Tuple

TOKEN_PATTERN = re.compile(r"\{\{([^{}]+?)\}\}")

# Output keys that stand in for each other when one is missing
_KEY_ALIASES = {"result": "结果", "结果": "result"}

_MISSING = object()


class RootMatch(Protocol):
    kind: str
    value: Any


class VariableScope(Protocol):
    def lookup_root(self, name: str) -> Optional[RootMatch]: ...


@dataclass(frozen=True)
class VariableReference:
    raw: str
    root: str
    path: Tuple[str, ...]

    @property
    def dotted(self) -> str:
        return ".".join((self.root,) + self.path)


def parse_reference(inner: str) -> Optional[VariableReference]:
    """Split the text between braces into root and path segments."""
    parts = [part.strip() for part in inner.split(".")]
    if not parts or any(not part for part in parts):
        return None
    return VariableReference(raw="{{" + inner + "}}", root=parts[0], path=tuple(parts[1:]))


def find_tokens(template: str) -> List[VariableReference]:
    if not isinstance(template, str):
        return []
    refs = []
    for match in TOKEN_PATTERN.finditer(template):
        ref = parse_reference(match.group(1))
        if ref is not None:
            refs.append(ref)
    return refs


def _parse_json_container(text: str) -> Any:
    stripped = text.strip()
    if not stripped or stripped[0] not in "{[":
        return _MISSING
    try:
        return json.loads(stripped)
    except ValueError:
        return _MISSING


def _step(value: Any, segment: str) -> Any:
    if isinstance(value, str):
        value = _parse_json_container(value)
        if value is _MISSING:
            return _MISSING
    if isinstance(value, Mapping):
        if segment in value:
            return value[segment]
        alias = _KEY_ALIASES.get(segment)
        if alias is not None and alias in value:
            return value[alias]
        return _MISSING
    if isinstance(value, (list, tuple)):
        try:
            index = int(segment)
        except ValueError:
            return _MISSING
        if -len(value) <= index < len(value):
            return value[index]
        return _MISSING
    return _MISSING


def default_node_value(data: Any) -> Any:
    """Value of a bare ``{{NodeName}}`` reference."""
    if isinstance(data, Mapping):
        for key in ("result", "结果"):
            if key in data:
                return data[key]
        if len(data) == 1:
            return next(iter(data.values()))
    return data


def _resolve_reference(ref: VariableReference, scope: VariableScope) -> Any:
    match = scope.lookup_root(ref.root)
    if match is None:
        return _MISSING
    if not ref.path:
        return default_node_value(match.value) if match.kind == "node" else match.value
    value = match.value
    for segment in ref.path:
        value = _step(value, segment)
        if value is _MISSING:
            return _MISSING
    return value


def to_display(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return json.dumps(value)
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)
    return str(value)


def resolve_template(template: Any, scope: VariableScope) -> Any:
    """Replace every resolvable token in ``template``; non-strings pass through."""
    if not isinstance(template, str) or "{{" not in template:
        return template

    def _replace(match: re.Match) -> str:
        ref = parse_reference(match.group(1))
        if ref is None:
            return match.group(0)
        value = _resolve_reference(ref, scope)
        if value is _MISSING:
            return match.group(0)
        return to_display(value)

    return TOKEN_PATTERN.sub(_replace, template)


def lookup(reference: str, scope: VariableScope) -> Tuple[bool, Any]:
    """Return ``(found, raw_value)`` for ``node.path`` or ``{{node.path}}``."""
    text = reference.strip() if isinstance(reference, str) else ""
    full = TOKEN_PATTERN.fullmatch(text)
    ref = parse_reference(full.group(1) if full else text)
    if ref is None:
        return False, None
    value = _resolve_reference(ref, scope)
    if value is _MISSING:
        return False, None
    return True, value


def resolve_value(value: Any, scope: VariableScope) -> Any:
    """Recursively resolve templates inside dicts and lists.

    A string made of exactly one token yields the raw referenced value, so
    numbers, lists and objects keep their type.
    """
    if isinstance(value, str):
        full = TOKEN_PATTERN.fullmatch(value.strip())
        if full:
            found, raw = lookup(value, scope)
            return raw if found else value
        return resolve_template(value, scope)
    if isinstance(value, Mapping):
        return {key: resolve_value(item, scope) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_value(item, scope) for item in value]
    return value


def find_unresolved(template: Any, scope: VariableScope) -> List[str]:
    """Tokens in ``template`` that would be left literal in this scope."""
    if isinstance(template, Mapping):
        return [tok for item in template.values() for tok in find_unresolved(item, scope)]
    if isinstance(template, (list, tuple)):
        return [tok for item in template for tok in find_unresolved(item, scope)]
    return [
        ref.raw
        for ref in find_tokens(template)
        if _resolve_reference(ref, scope) is _MISSING
    ]


def collect_references(values: Sequence[Any]) -> List[VariableReference]:
    refs: List[VariableReference] = []
    for value in values:
        if isinstance(value, Mapping):
            refs.extend(collect_references(list(value.values())))
        elif isinstance(value, (list, tuple)):
            refs.extend(collect_references(list(value)))
        else:
            refs.extend(find_tokens(value))
    return refs
