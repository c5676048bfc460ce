"""RFC 8785 canonical JSON for prompt version fingerprints.

Two prompt versions with the same content and the same ordered instruction
list hash to the same fingerprint no matter how the values were built
(enum members vs. their string values, tuples vs. lists, key order).
"""

from __future__ import annotations

import dataclasses
import hashlib
from collections.abc import Sequence
from datetime import datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

JsonValue = bool | int | float | str | None | list[Any] | dict[str, Any]


def _jcs_value(value: Any) -> JsonValue:
    """Reduce records, enums and timestamps to the primitives rfc8785 accepts.

    Raises:
        TypeError: For any value with no JSON representation.
    """
    # str-valued enums are str instances, so unwrap them first.
    if isinstance(value, Enum):
        return _jcs_value(value.value)
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return _jcs_value(value.model_dump(mode="json"))
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {field.name: _jcs_value(getattr(value, field.name)) for field in dataclasses.fields(value)}
    if isinstance(value, dict):
        return {str(key): _jcs_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jcs_value(item) for item in value]
    raise TypeError(f"{type(value).__name__} has no canonical JSON form")


def to_canonical_json(value: Any) -> str:
    """Serialize ``value`` to byte-for-byte reproducible JSON (RFC 8785).

    Raises:
        TypeError: If ``value`` holds a type with no JSON form.
        rfc8785.CanonicalizationError: If rfc8785 rejects the reduced value.
    """
    return rfc8785.dumps(_jcs_value(value)).decode("utf-8")


def sha256_fingerprint(value: Any) -> str:
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()


def prompt_fingerprint(content: str, instruction_list: Sequence[str]) -> str:
    """Fingerprint of a prompt's content and ordered rules; rule order matters."""
    return sha256_fingerprint({"content": content, "instruction_list": list(instruction_list)})
