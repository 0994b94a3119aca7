"""Speculative structured parser: recovers a typed object from a truncated payload.

Three tiers of decreasing strictness:

  Tier 1  strict ``json.loads`` of the whole fragment (trailing fence removed)
  Tier 2  strict parse of the first balanced object that validates
  Tier 3  field-level recovery driven by the target model's fields; strings
          are scanned directly, nested lists and models go through json_repair

``parse`` never raises. A miss is ``ParsedArtifact(value=None)`` and the
caller keeps whatever it displayed before.
"""

from __future__ import annotations

import json
import logging
import re
from types import NoneType, UnionType
from typing import Any, Generic, TypeVar, Union, get_args, get_origin

from json_repair import repair_json
from pydantic import BaseModel, TypeAdapter, ValidationError

from docstream.schemas import ParsedArtifact

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

FENCE = "```"

_ESCAPES = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}
_CLOSERS = {"{": "}", "[": "]"}
_SCALAR = re.compile(r"[^,}\]\s]+")
_HEX4 = re.compile(r"[0-9a-fA-F]{4}")
_PARTIAL_UNICODE_ESCAPE = re.compile(r"(\\(u[0-9a-fA-F]{0,4})?)?")
# a backslash run, then an unfinished \u escape or a lone high surrogate
_TRAILING_ESCAPE = re.compile(r"(\\+)(u[0-9a-fA-F]{0,3}|u[dD][89abAB][0-9a-fA-F]{2})?$")


# ---------------------------------------------------------------------------
# Low-level scanning
# ---------------------------------------------------------------------------


def strip_fences(fragment: str) -> str:
    """Drop a leading fence opener line and a trailing unmatched fence marker."""
    text = fragment.strip()
    if text.startswith(FENCE):
        newline = text.find("\n")
        text = text[newline + 1 :] if newline != -1 else ""
    if text.endswith(FENCE):
        text = text[: -len(FENCE)]
    return text.strip()


def unescape(raw: str) -> str:
    """Reverse JSON string escapes. An escape cut off by the stream is dropped."""
    out: list[str] = []
    i, n = 0, len(raw)
    while i < n:
        ch = raw[i]
        if ch != "\\":
            out.append(ch)
            i += 1
            continue
        if i + 1 >= n:
            break
        code = raw[i + 1]
        if code != "u":
            out.append(_ESCAPES.get(code, code))
            i += 2
            continue
        point = _hex4(raw, i + 2)
        if point is None:
            if n - i < 6:
                break
            out.append(raw[i : i + 6])
            i += 6
            continue
        i += 6
        if 0xD800 <= point < 0xDC00:
            rest = raw[i : i + 6]
            if len(rest) < 6 and _PARTIAL_UNICODE_ESCAPE.fullmatch(rest):
                # low half of the pair has not arrived yet
                break
            low = _hex4(raw, i + 2) if rest.startswith("\\u") else None
            if low is not None and 0xDC00 <= low < 0xE000:
                point = 0x10000 + ((point - 0xD800) << 10) + (low - 0xDC00)
                i += 6
        if 0xD800 <= point < 0xE000:
            point = 0xFFFD
        out.append(chr(point))
    return "".join(out)


def _hex4(raw: str, i: int) -> int | None:
    digits = raw[i : i + 4]
    if len(digits) < 4 or not _HEX4.fullmatch(digits):
        return None
    return int(digits, 16)


def scan_string(text: str, start: int) -> tuple[str, int, bool]:
    """Read the string whose opening quote is at ``start``.

    Returns (raw contents, index after the closing quote, closed?). An unclosed
    string runs to the end of the text.
    """
    i, n = start + 1, len(text)
    while i < n:
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == '"':
            return text[start + 1 : i], i + 1, True
        i += 1
    return text[start + 1 :], n, False


def find_balanced(text: str, start: int) -> int:
    """Index just past the bracket matching ``text[start]``, or -1.

    Brackets inside strings are not structural. A mismatched closer also
    returns -1.
    """
    stack: list[str] = []
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(_CLOSERS[ch])
        elif ch in "}]":
            if not stack or stack.pop() != ch:
                return -1
            if not stack:
                return i + 1
    return -1


def _skip(text: str, i: int, chars: str = " \t\r\n") -> int:
    n = len(text)
    while i < n and text[i] in chars:
        i += 1
    return i


def skip_value(text: str, i: int) -> int:
    """Index after the JSON value starting at ``i``; -1 if it is still truncated."""
    n = len(text)
    if i >= n:
        return -1
    ch = text[i]
    if ch == '"':
        _, end, closed = scan_string(text, i)
        return end if closed else -1
    if ch in _CLOSERS:
        return find_balanced(text, i)
    match = _SCALAR.match(text, i)
    if match is None or match.end() >= n:
        return -1
    return match.end()


def object_members(text: str, start: int) -> tuple[dict[str, int], bool]:
    """Map each key of the object opening at ``start`` to its value's index.

    Only direct members are reported. The second element is True when the scan
    stopped on malformed syntax rather than on the closing brace or the end
    of the text.
    """
    members: dict[str, int] = {}
    n = len(text)
    i = start + 1
    while True:
        i = _skip(text, i, " \t\r\n,")
        if i >= n or text[i] == "}":
            return members, False
        if text[i] != '"':
            return members, True
        raw, i, closed = scan_string(text, i)
        if not closed:
            return members, False
        i = _skip(text, i)
        if i >= n:
            return members, False
        if text[i] != ":":
            return members, True
        i = _skip(text, i + 1)
        members.setdefault(unescape(raw), i)
        i = skip_value(text, i)
        if i == -1:
            return members, False


def loose_string(text: str, key: str) -> str | None:
    """First ``"key": "..."`` anywhere in the text, read up to its quote or the end."""
    match = re.search(rf'"{re.escape(key)}"\s*:\s*"', text)
    if match is None:
        return None
    raw, _, _ = scan_string(text, match.end() - 1)
    return unescape(raw)


def string_field(text: str, key: str) -> str | None:
    """Value of a top-level string member, falling back to a loose search."""
    text = strip_fences(text)
    if text.startswith("{"):
        members, malformed = object_members(text, 0)
        pos = members.get(key)
        if pos is not None:
            if pos < len(text) and text[pos] == '"':
                raw, _, _ = scan_string(text, pos)
                return unescape(raw)
            return None
        if not malformed:
            return None
    return loose_string(text, key)


# ---------------------------------------------------------------------------
# Model-driven recovery (Tier 3)
# ---------------------------------------------------------------------------


def _filled(value: Any) -> bool:
    return value is not None and value != "" and value != [] and value != {}


def _has_content(value: Any) -> bool:
    if isinstance(value, dict):
        return any(_has_content(v) for v in value.values())
    if isinstance(value, list):
        return any(_has_content(v) for v in value)
    return _filled(value)


def _unwrap_optional(annotation: Any) -> Any:
    if get_origin(annotation) in (Union, UnionType):
        args = [a for a in get_args(annotation) if a is not NoneType]
        if len(args) == 1:
            return args[0]
    return annotation


def _is_model(annotation: Any) -> bool:
    return isinstance(annotation, type) and issubclass(annotation, BaseModel)


def trim_dangling_escape(text: str) -> str:
    """Drop a trailing escape the stream has not finished sending."""
    while True:
        match = _TRAILING_ESCAPE.search(text)
        if match is None or len(match.group(1)) % 2 == 0:
            return text
        text = text[: match.end(1) - 1]


def repair_object(fragment: str) -> dict[str, Any]:
    """Close a truncated object with json_repair. Empty when nothing usable comes back."""
    repaired = repair_json(trim_dangling_escape(fragment))
    try:
        data = json.loads(repaired)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _validated(adapter: TypeAdapter, value: Any) -> Any:
    try:
        return adapter.dump_python(adapter.validate_python(value))
    except ValidationError:
        return None


def _coerce(value: Any, annotation: Any, complete: bool) -> Any:
    """Fit a repaired value to ``annotation``, dropping what does not validate."""
    if value is None:
        return None
    if get_origin(annotation) is list:
        if not isinstance(value, list):
            return None
        args = get_args(annotation)
        adapter = TypeAdapter(args[0] if args else Any)
        items = (_validated(adapter, item) for item in value)
        return [item for item in items if _has_content(item)]
    # scalars are only trusted once their literal has ended
    if not complete and not _is_model(annotation):
        return None
    result = _validated(TypeAdapter(annotation), value)
    return result if _has_content(result) else None


def _recover_object(text: str, start: int, model: type[BaseModel]) -> dict[str, Any]:
    members, malformed = object_members(text, start)
    repaired: dict[str, Any] | None = None
    data: dict[str, Any] = {}
    for name, field in model.model_fields.items():
        annotation = _unwrap_optional(field.annotation)
        pos = members.get(name)
        if annotation is str:
            if pos is not None:
                value = None
                if pos < len(text) and text[pos] == '"':
                    raw, _, _ = scan_string(text, pos)
                    value = unescape(raw)
            elif malformed:
                # lenient: the object is already broken, take the first match anywhere
                value = loose_string(text[start:], name)
            else:
                continue
        elif pos is not None:
            if repaired is None:
                repaired = repair_object(text[start:])
            value = _coerce(repaired.get(name), annotation, skip_value(text, pos) != -1)
        else:
            continue
        if _filled(value):
            data[name] = value
    return data


def _merge(current: Any, previous: Any) -> Any:
    """Overlay ``current`` on ``previous`` without emptying anything ``previous`` filled."""
    if isinstance(current, dict) and isinstance(previous, dict):
        merged = dict(current)
        for key, value in previous.items():
            merged[key] = _merge(merged.get(key), value)
        return merged
    if isinstance(current, list) and isinstance(previous, list):
        merged = [_merge(c, p) for c, p in zip(current, previous)]
        merged.extend(current[len(previous) :])
        merged.extend(previous[len(current) :])
        return merged
    return current if _filled(current) else previous


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class StructuredParser(Generic[M]):
    """Parses payload fragments into instances of ``model``."""

    def __init__(self, model: type[M]) -> None:
        self.model = model

    def parse(
        self,
        fragment: str,
        previous: ParsedArtifact[M] | None = None,
        closed: bool = True,
    ) -> ParsedArtifact[M]:
        """Recover as much of ``model`` as ``fragment`` allows.

        Fields missing from this fragment keep their value from ``previous``.
        ``closed=False`` means the enclosing fence is still open, so the result
        stays partial even when the object itself is complete.
        """
        try:
            return self._parse(fragment, previous, closed)
        except Exception as e:  # noqa: BLE001 - a parse miss must never reach the caller
            logger.warning(f"Speculative parse failed unexpectedly: {e}", exc_info=True)
            return ParsedArtifact()

    def _parse(
        self, fragment: str, previous: ParsedArtifact[M] | None, closed: bool
    ) -> ParsedArtifact[M]:
        text = strip_fences(fragment)
        if not text:
            return ParsedArtifact()
        if fragment.lstrip().startswith(FENCE) and not fragment.rstrip().endswith(FENCE):
            closed = False

        # Tier 1
        data = self._strict(text)
        if data is not None:
            complete = closed and text.endswith(("}", "]"))
            return self._build(data, previous, tier=1, partial=not complete)

        # Tier 2: the first balanced object that validates. An unbalanced
        # one is still streaming, so the scan stops there.
        first = text.find("{")
        truncated = -1
        pos = first
        while pos != -1:
            end = find_balanced(text, pos)
            if end == -1:
                truncated = pos
                break
            data = self._strict(text[pos:end])
            if data is not None:
                return self._build(data, previous, tier=2, partial=True)
            pos = text.find("{", end)

        # Tier 3
        start = truncated if truncated != -1 else first
        if start != -1:
            data = _recover_object(text, start, self.model)
        else:
            data = self._loose(text)
        if data:
            return self._build(data, previous, tier=3, partial=True)

        logger.debug(f"No recognizable fields in fragment ({len(fragment)} chars)")
        return ParsedArtifact()

    def _strict(self, text: str) -> dict[str, Any] | None:
        try:
            parsed = json.loads(text)
        except ValueError:
            return None
        if not isinstance(parsed, dict):
            return None
        try:
            dumped = self.model.model_validate(parsed).model_dump()
        except ValidationError:
            return None
        data = {k: v for k, v in dumped.items() if k in parsed and _filled(v)}
        return data or None

    def _loose(self, text: str) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for name, field in self.model.model_fields.items():
            if _unwrap_optional(field.annotation) is str:
                value = loose_string(text, name)
                if value:
                    data[name] = value
        return data

    def _build(
        self,
        data: dict[str, Any],
        previous: ParsedArtifact[M] | None,
        *,
        tier: int,
        partial: bool,
    ) -> ParsedArtifact[M]:
        merged = dict(data)
        if previous is not None and previous.value is not None:
            merged = _merge(merged, previous.value.model_dump())
        try:
            value = self.model.model_validate(merged)
        except ValidationError as e:
            logger.debug(f"Recovered fields do not validate as {self.model.__name__}: {e}")
            return ParsedArtifact()
        return ParsedArtifact(value=value, is_partial=partial, tier=tier)
