"""
Typed slot values - tagged union matching SlotKind

Responsibilities:
- Represent a slot's held value as ScalarValue | ListValue | StructValue
- Coerce raw model/user output into the variant a slot kind expects
- Merge a new value into a held value (type-checked)
- JSON round-trip for persistence rows

Design principles:
- Frozen dataclasses (values are replaced, never mutated)
- Coercion fails loudly with ValueError; callers decide whether that is a
  soft rejection (extraction) or a caller bug (direct writes)
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from slot_engine.contracts import SlotKind

# Separators used to split free text into list items
LIST_SPLIT_PATTERN = re.compile(r"\s*[;,\n]\s*")


@dataclass(frozen=True)
class ScalarValue:
    """Single free-text value"""
    text: str

    kind = SlotKind.SCALAR

    def is_empty(self) -> bool:
        return not self.text.strip()

    def to_json(self) -> Any:
        return self.text

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class ListValue:
    """Ordered list of strings"""
    items: Tuple[str, ...]

    kind = SlotKind.LIST

    def is_empty(self) -> bool:
        return len(self.items) == 0

    def to_json(self) -> Any:
        return list(self.items)

    def __str__(self) -> str:
        return ", ".join(self.items)


@dataclass(frozen=True)
class StructValue:
    """
    String-to-string mapping.

    Stored as sorted key/value pairs so the dataclass stays hashable and
    immutable. Use as_dict() for lookups.
    """
    fields: Tuple[Tuple[str, str], ...]

    kind = SlotKind.STRUCTURED

    def as_dict(self) -> Dict[str, str]:
        return dict(self.fields)

    def is_empty(self) -> bool:
        return len(self.fields) == 0

    def to_json(self) -> Any:
        return self.as_dict()

    def __str__(self) -> str:
        return "; ".join(f"{k}: {v}" for k, v in self.fields)


TypedValue = Union[ScalarValue, ListValue, StructValue]


def coerce_value(kind: SlotKind, raw: Any) -> TypedValue:
    """
    Build the typed value a slot kind expects from raw output.

    Args:
        kind: Target slot kind
        raw: Raw value (str, number, list, dict, or an already typed value)

    Returns:
        TypedValue variant matching kind

    Raises:
        ValueError: If raw is empty or cannot represent that kind
    """
    if isinstance(raw, (ScalarValue, ListValue, StructValue)):
        if raw.kind != kind:
            raise ValueError(f"expected {kind.value} value, got {raw.kind.value}")
        if raw.is_empty():
            raise ValueError(f"empty {kind.value} value")
        return raw

    if raw is None:
        raise ValueError("value is None")

    if kind == SlotKind.SCALAR:
        if isinstance(raw, bool):
            text = "yes" if raw else "no"
        elif isinstance(raw, (str, int, float)):
            text = str(raw).strip()
        elif isinstance(raw, list):
            text = "; ".join(str(item).strip() for item in raw if str(item).strip())
        else:
            raise ValueError(f"cannot coerce {type(raw).__name__} to scalar")
        if not text:
            raise ValueError("empty scalar value")
        return ScalarValue(text=text)

    if kind == SlotKind.LIST:
        if isinstance(raw, str):
            items = [part for part in LIST_SPLIT_PATTERN.split(raw.strip()) if part]
        elif isinstance(raw, (list, tuple)):
            items = []
            for item in raw:
                if isinstance(item, dict):
                    # Model sometimes returns [{"name": ..., "role": ...}]
                    item = ", ".join(f"{k}: {v}" for k, v in item.items())
                text = str(item).strip()
                if text:
                    items.append(text)
        else:
            raise ValueError(f"cannot coerce {type(raw).__name__} to list")
        items = _dedupe(items)
        if not items:
            raise ValueError("empty list value")
        return ListValue(items=tuple(items))

    if kind == SlotKind.STRUCTURED:
        if not isinstance(raw, dict):
            raise ValueError(f"cannot coerce {type(raw).__name__} to structured")
        fields = {}
        for key, value in raw.items():
            if value is None:
                continue
            text = str(value).strip()
            if text:
                fields[str(key)] = text
        if not fields:
            raise ValueError("empty structured value")
        return StructValue(fields=tuple(sorted(fields.items())))

    raise ValueError(f"unknown slot kind: {kind}")


def merge_values(
    kind: SlotKind,
    held: Optional[TypedValue],
    new: TypedValue,
    held_confidence: float,
    new_confidence: float
) -> TypedValue:
    """
    Fold a new value into the held value.

    Rules:
    - No held value: new value wins
    - List: order-preserving, case-insensitive union
    - Scalar: replaced only if new_confidence >= held_confidence
    - Structured: merged key by key; existing keys overwritten only if
      new_confidence >= held_confidence, new keys always added

    Raises:
        ValueError: If either value does not match kind
    """
    if new.kind != kind:
        raise ValueError(f"expected {kind.value} value, got {new.kind.value}")
    if held is None:
        return new
    if held.kind != kind:
        raise ValueError(f"held value is {held.kind.value}, slot is {kind.value}")

    if kind == SlotKind.LIST:
        return ListValue(items=tuple(_dedupe(list(held.items) + list(new.items))))

    if kind == SlotKind.STRUCTURED:
        merged = held.as_dict()
        for key, value in new.as_dict().items():
            if key not in merged or new_confidence >= held_confidence:
                merged[key] = value
        return StructValue(fields=tuple(sorted(merged.items())))

    return new if new_confidence >= held_confidence else held


def value_to_json(value: Optional[TypedValue]) -> Optional[Dict[str, Any]]:
    """Serialize to {'kind': ..., 'value': ...} or None"""
    if value is None:
        return None
    return {'kind': value.kind.value, 'value': value.to_json()}


def value_from_json(data: Optional[Dict[str, Any]]) -> Optional[TypedValue]:
    """
    Inverse of value_to_json.

    Raises:
        ValueError: If kind tag is unknown or payload does not fit it
    """
    if data is None:
        return None
    kind = SlotKind(data['kind'])
    return coerce_value(kind, data['value'])


def _dedupe(items):
    """Order-preserving case-insensitive de-duplication"""
    seen = set()
    result = []
    for item in items:
        key = item.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(item)
    return result
