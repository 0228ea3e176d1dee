"""Normalization of tool-call argument payloads.

Models emit the arguments of a tool call in several shapes:

* a JSON object, either already decoded or as JSON text;
* a JSON string whose contents are themselves a JSON object (double-encoded);
* a JSON string wrapping ``{"arguments": ["...", "..."]}``, or a bare array of strings.

``classify_arguments`` maps a raw payload onto one of the variants below and
``normalize_arguments`` collapses every variant into one ``Dict[str, Any]`` so business
logic never sees the encoding.
"""

import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Union

from carematch.services.errors import ArgumentParseError

LIST_ARGUMENT_KEY = "arguments"


@dataclass(frozen=True)
class ObjectArguments:
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EncodedObjectArguments:
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StringListArguments:
    items: List[str] = field(default_factory=list)


ToolArguments = Union[ObjectArguments, EncodedObjectArguments, StringListArguments]


def classify_arguments(raw: Any) -> ToolArguments:
    if raw is None:
        return ObjectArguments()
    if isinstance(raw, dict):
        return _from_object(raw, encoded=False)
    if isinstance(raw, list):
        return _from_list(raw, raw)
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ArgumentParseError("arguments are not valid UTF-8", raw_payload=raw) from exc
    if not isinstance(raw, str):
        raise ArgumentParseError(f"unsupported arguments type: {type(raw).__name__}", raw_payload=raw)

    text = raw.strip()
    if not text:
        return ObjectArguments()

    decoded = _loads(text, raw)
    if isinstance(decoded, dict):
        return _from_object(decoded, encoded=False)
    if isinstance(decoded, list):
        return _from_list(decoded, raw)
    if isinstance(decoded, str):
        inner = _loads(decoded.strip(), raw)
        if isinstance(inner, dict):
            return _from_object(inner, encoded=True)
        if isinstance(inner, list):
            return _from_list(inner, raw)
    raise ArgumentParseError("arguments did not decode to an object or a list", raw_payload=raw)


def normalize_arguments(raw: Any) -> Dict[str, Any]:
    parsed = classify_arguments(raw)
    if isinstance(parsed, StringListArguments):
        return {LIST_ARGUMENT_KEY: list(parsed.items)}
    return dict(parsed.fields)


def extract_string_list(raw: Any) -> List[str]:
    """Return the string items of a list-shaped tool call; an absent list is empty."""
    parsed = classify_arguments(raw)
    if isinstance(parsed, StringListArguments):
        return list(parsed.items)
    value = parsed.fields.get(LIST_ARGUMENT_KEY)
    if isinstance(value, list):
        return _string_items(value)
    list_values = [v for v in parsed.fields.values() if isinstance(v, list)]
    if len(list_values) == 1:
        return _string_items(list_values[0])
    return []


def coerce_text(args: Dict[str, Any], key: str, default: str = "") -> str:
    value = args.get(key)
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return default


def coerce_float(args: Dict[str, Any], key: str, default: float = 0.0) -> float:
    """Accept 35, 35.0 or "35"; anything else resolves to ``default``."""
    value = args.get(key)
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        parsed = float(value)
    elif isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return default
    else:
        return default
    if not math.isfinite(parsed):
        return default
    return parsed


def coerce_int(args: Dict[str, Any], key: str, default: int = 0) -> int:
    parsed = coerce_float(args, key, default=float(default))
    return int(parsed)


def _loads(text: str, raw: Any) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ArgumentParseError(f"failed to parse arguments: {exc}", raw_payload=raw) from exc


def _from_object(obj: Dict[str, Any], encoded: bool) -> ToolArguments:
    items = obj.get(LIST_ARGUMENT_KEY)
    if set(obj) == {LIST_ARGUMENT_KEY} and isinstance(items, list):
        return StringListArguments(items=_string_items(items))
    if encoded:
        return EncodedObjectArguments(fields=dict(obj))
    return ObjectArguments(fields=dict(obj))


def _from_list(items: List[Any], raw: Any) -> StringListArguments:
    if not all(isinstance(item, (str, int, float)) and not isinstance(item, bool) for item in items):
        raise ArgumentParseError("list arguments must contain only strings", raw_payload=raw)
    return StringListArguments(items=_string_items(items))


def _string_items(items: List[Any]) -> List[str]:
    result: List[str] = []
    for item in items:
        if isinstance(item, bool):
            continue
        if isinstance(item, str):
            text = item.strip()
        elif isinstance(item, (int, float)):
            text = str(item)
        else:
            continue
        if text:
            result.append(text)
    return result
