"""Template resolution for node configurations.

Resolves ``{{ path }}`` and ``{{ helper arg1 arg2 }}`` expressions against the
read-only namespace of an execution:

    trigger.*            trigger payload
    nodes.<id>.*         outputs of nodes that succeeded
    execution.id         execution id (also workflow_id, workflow_version)

Paths use dots and brackets: ``nodes.fetch.data.items[0]["full name"]``.
A string that is exactly one expression keeps the resolved value's type;
embedded expressions are stringified (objects and arrays as JSON).

A missing path always fails the whole resolution with ``TemplateError``
naming that path. ``default`` is the only way to tolerate a missing value.
"""

import json
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Tuple, Union

from flowengine.core.errors import TemplateError
from flowengine.core.logging import get_logger

logger = get_logger(__name__)

# Compiled regexes for template matching
TEMPLATE_PATTERN = re.compile(r'\{\{(.*?)\}\}', re.DOTALL)
TOKEN_PATTERN = re.compile(
    r'\s*(?:"((?:[^"\\]|\\.)*)"'          # "double quoted"
    r"|'((?:[^'\\]|\\.)*)'"                # 'single quoted'
    r'|((?:[^\s"\'\[]|\[[^\]]*\])+))'      # bare word / path with brackets
)
PATH_HEAD = re.compile(r'[A-Za-z_$][\w$-]*')
PATH_SEGMENT = re.compile(
    r'\.([A-Za-z_$][\w$-]*|\d+)'
    r'|\[(\d+)\]'
    r'|\[\s*"((?:[^"\\]|\\.)*)"\s*\]'
    r"|\[\s*'((?:[^'\\]|\\.)*)'\s*\]"
)
NUMBER_PATTERN = re.compile(r'-?\d+(\.\d+)?$')
WORD_PATTERN = re.compile(r'[A-Z]+(?![a-z])|[A-Z]?[a-z]+|\d+')

LITERALS = {"true": True, "false": False, "null": None}

Namespace = Dict[str, Any]
PathSegment = Union[str, int]


def _unescape(text: str) -> str:
    return re.sub(r'\\(.)', r'\1', text)


def parse_path(text: str, require_head: bool = True) -> List[PathSegment]:
    """Split a path into keys (str) and list indices (int).

    Raises:
        TemplateError: MALFORMED_TEMPLATE when the path does not parse.
    """
    segments: List[PathSegment] = []
    pos = 0
    head = PATH_HEAD.match(text)
    if head:
        segments.append(head.group(0))
        pos = head.end()
    elif require_head:
        raise TemplateError(f"Malformed path '{text}'", code="MALFORMED_TEMPLATE", path=text)
    elif text[:1].isdigit():
        # relative path starting with a list index, e.g. "0.name"
        text = "." + text

    while pos < len(text):
        match = PATH_SEGMENT.match(text, pos)
        if not match:
            raise TemplateError(f"Malformed path '{text}'", code="MALFORMED_TEMPLATE", path=text)
        dotted, index, dquoted, squoted = match.groups()
        if dotted is not None:
            segments.append(int(dotted) if dotted.isdigit() else dotted)
        elif index is not None:
            segments.append(int(index))
        else:
            segments.append(_unescape(dquoted if dquoted is not None else squoted))
        pos = match.end()
    return segments


def lookup_path(data: Any, segments: List[PathSegment], path: str) -> Any:
    """Walk ``segments`` into ``data``; a missing step raises UNRESOLVED_PATH."""
    current = data
    for segment in segments:
        if isinstance(current, dict):
            key = str(segment)
            if key not in current:
                raise TemplateError(f"Unresolved path '{path}'", path=path)
            current = current[key]
        elif isinstance(current, (list, tuple)) and isinstance(segment, int):
            if not 0 <= segment < len(current):
                raise TemplateError(f"Unresolved path '{path}' (index {segment} out of range)", path=path)
            current = current[segment]
        else:
            raise TemplateError(f"Unresolved path '{path}'", path=path)
    return current


def stringify(value: Any) -> str:
    """Render a resolved value inside surrounding text."""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple, bool)) or value is None:
        return json.dumps(value, default=str)
    return str(value)


# =============================================================================
# HELPERS
# =============================================================================

def _words(value: Any) -> List[str]:
    return WORD_PATTERN.findall(str(value))


def _snake_case(value: Any) -> str:
    return "_".join(w.lower() for w in _words(value))


def _kebab_case(value: Any) -> str:
    return "-".join(w.lower() for w in _words(value))


def _camel_case(value: Any) -> str:
    words = [w.lower() for w in _words(value)]
    if not words:
        return ""
    return words[0] + "".join(w.capitalize() for w in words[1:])


def _capitalize(value: Any) -> str:
    text = str(value)
    return text[:1].upper() + text[1:]


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, bool):
        raise ValueError("boolean is not a date")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value).strip()
    if NUMBER_PATTERN.match(text):
        return datetime.fromtimestamp(float(text), tz=timezone.utc)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _format_date(value: Any, fmt: str = "%Y-%m-%dT%H:%M:%S") -> str:
    return _to_datetime(value).strftime(fmt)


def _to_json(value: Any) -> str:
    return json.dumps(value, default=str)


def _from_json(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    return json.loads(value)


def _lookup(value: Any, path: str) -> Any:
    return lookup_path(value, parse_path(str(path), require_head=False), str(path))


HELPERS: Dict[str, Callable[..., Any]] = {
    "upper": lambda v: str(v).upper(),
    "lower": lambda v: str(v).lower(),
    "capitalize": _capitalize,
    "snakeCase": _snake_case,
    "camelCase": _camel_case,
    "kebabCase": _kebab_case,
    "formatDate": _format_date,
    "toJson": _to_json,
    "fromJson": _from_json,
    "lookup": _lookup,
}


class TemplateResolver:
    """Pure resolver: no I/O, no mutation of the namespace."""

    def resolve(self, template: str, ctx: Any) -> Any:
        """Resolve every expression in ``template``.

        Args:
            template: String possibly containing ``{{ ... }}`` expressions
            ctx: ExecutionContext (anything with ``namespace()``) or a namespace dict

        Raises:
            TemplateError: unresolved path, malformed expression, unknown or failing helper.
        """
        namespace = ctx.namespace() if hasattr(ctx, "namespace") else ctx
        return self._resolve_string(template, namespace)

    def resolve_config(self, config: Dict[str, Any], ctx: Any) -> Dict[str, Any]:
        """Resolve every string leaf of ``config`` recursively.

        Non-string leaves pass through unchanged; keys are never resolved.
        """
        namespace = ctx.namespace() if hasattr(ctx, "namespace") else ctx

        def resolve(value: Any) -> Any:
            if isinstance(value, str):
                return self._resolve_string(value, namespace) if "{{" in value else value
            if isinstance(value, dict):
                return {k: resolve(v) for k, v in value.items()}
            if isinstance(value, list):
                return [resolve(item) for item in value]
            return value

        return {k: resolve(v) for k, v in config.items()}

    def has_templates(self, value: Any) -> bool:
        if isinstance(value, str):
            return "{{" in value
        if isinstance(value, dict):
            return any(self.has_templates(v) for v in value.values())
        if isinstance(value, list):
            return any(self.has_templates(v) for v in value)
        return False

    # -------------------------------------------------------------------------

    def _resolve_string(self, value: str, namespace: Namespace) -> Any:
        matches = list(TEMPLATE_PATTERN.finditer(value))
        leftover = TEMPLATE_PATTERN.sub("", value)
        if "{{" in leftover or "}}" in leftover:
            raise TemplateError(f"Unbalanced template braces in '{value}'", code="MALFORMED_TEMPLATE")
        if not matches:
            return value

        # Entire value is one expression: preserve type
        if len(matches) == 1 and matches[0].group(0) == value.strip():
            return self._evaluate(matches[0].group(1), namespace)

        parts = []
        pos = 0
        for match in matches:
            parts.append(value[pos:match.start()])
            parts.append(stringify(self._evaluate(match.group(1), namespace)))
            pos = match.end()
        parts.append(value[pos:])
        return "".join(parts)

    def _tokenize(self, expression: str) -> List[Tuple[str, str]]:
        tokens = []
        pos = 0
        text = expression.strip()
        while pos < len(text):
            match = TOKEN_PATTERN.match(text, pos)
            if not match or match.end() == pos:
                raise TemplateError(f"Malformed expression '{{{{{expression}}}}}'", code="MALFORMED_TEMPLATE")
            dquoted, squoted, word = match.groups()
            if word is not None:
                tokens.append(("word", word))
            else:
                tokens.append(("str", _unescape(dquoted if dquoted is not None else squoted)))
            pos = match.end()
            while pos < len(text) and text[pos].isspace():
                pos += 1
        return tokens

    def _evaluate(self, expression: str, namespace: Namespace) -> Any:
        tokens = self._tokenize(expression)
        if not tokens:
            raise TemplateError("Empty template expression", code="MALFORMED_TEMPLATE")

        if len(tokens) == 1:
            return self._value(tokens[0], namespace)

        kind, name = tokens[0]
        if kind != "word" or (name not in HELPERS and name != "default"):
            raise TemplateError(f"Unknown helper '{name}'", code="UNKNOWN_HELPER", path=name)

        if name == "default":
            if len(tokens) != 3:
                raise TemplateError("default expects a path and a fallback", code="MALFORMED_TEMPLATE")
            try:
                found = self._value(tokens[1], namespace)
            except TemplateError as e:
                if e.code != "UNRESOLVED_PATH":
                    raise
                found = None
            return self._value(tokens[2], namespace) if found is None else found

        args = [self._value(token, namespace) for token in tokens[1:]]
        try:
            return HELPERS[name](*args)
        except TemplateError:
            raise
        except (TypeError, ValueError, OverflowError) as e:
            raise TemplateError(f"Helper '{name}' failed: {e}", code="HELPER_FAILED", path=name) from e

    def _value(self, token: Tuple[str, str], namespace: Namespace) -> Any:
        kind, text = token
        if kind == "str":
            return text
        if text in LITERALS:
            return LITERALS[text]
        if NUMBER_PATTERN.match(text):
            return float(text) if "." in text else int(text)
        return lookup_path(namespace, parse_path(text), text)
