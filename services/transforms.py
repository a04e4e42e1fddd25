"""Row to index-document transforms.

A transform never sees the caller's payload object: it receives a deep copy
behind a read-only mapping, and whatever it returns is normalised through a
sorted-key JSON round trip. Two runs over the same payload therefore produce
byte-identical documents, which is what makes retries safe.
"""

from __future__ import annotations

import copy
import json
import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from services.errors import TransformError


# keys that describe the queue row rather than the source record
INTERNAL_KEYS = frozenset({"document_id"})


def canonical_bytes(document: Mapping[str, Any]) -> bytes:
    return json.dumps(document, ensure_ascii=False, sort_keys=True, separators=(",", ":"), allow_nan=False).encode("utf-8")


def _freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(item) for item in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_thaw(item) for item in value]
    return value


@dataclass(frozen=True)
class Transform:
    name: str
    build: Callable[[Mapping[str, Any]], Dict[str, Any]]
    required_fields: Tuple[str, ...] = field(default_factory=tuple)

    def missing_fields(self, row: Mapping[str, Any]) -> Tuple[str, ...]:
        return tuple(
            name for name in self.required_fields if row.get(name) is None or row.get(name) == ""
        )

    def apply(self, row: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        if row is None:
            raise TransformError(f"{self.name}: payload is empty")
        missing = self.missing_fields(row)
        if missing:
            raise TransformError(f"{self.name}: missing required fields: {', '.join(missing)}")
        view = _freeze(copy.deepcopy(dict(row)))
        try:
            document = self.build(view)
        except TransformError:
            raise
        except (KeyError, TypeError, ValueError, OverflowError, AttributeError) as exc:
            raise TransformError(f"{self.name}: {type(exc).__name__}: {exc}") from exc
        if not isinstance(document, Mapping):
            raise TransformError(f"{self.name}: transform must return a mapping")
        try:
            return json.loads(canonical_bytes(_thaw(document)))
        except (TypeError, ValueError) as exc:
            raise TransformError(f"{self.name}: document is not JSON serialisable: {exc}") from exc


class TransformRegistry:
    def __init__(self, transforms: Iterable[Transform] = ()) -> None:
        self._transforms: Dict[str, Transform] = {}
        for transform in transforms:
            self.register(transform)

    def register(self, transform: Transform) -> None:
        if transform.name in self._transforms:
            raise ValueError(f"Transform already registered: {transform.name}")
        self._transforms[transform.name] = transform

    def get(self, selector: str) -> Transform:
        try:
            return self._transforms[selector]
        except KeyError:
            raise TransformError(f"Unknown transform selector: {selector}") from None

    def names(self) -> Tuple[str, ...]:
        return tuple(sorted(self._transforms))

    def __contains__(self, selector: object) -> bool:
        return selector in self._transforms


def _price(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    price = float(value)
    if not math.isfinite(price):
        raise ValueError(f"price must be a finite number, got {value!r}")
    return round(price, 2)


def _int(value: Any, default: int = 0) -> int:
    if value in (None, ""):
        return default
    return int(value)


def build_product_document(row: Mapping[str, Any]) -> Dict[str, Any]:
    available = _int(row.get("available_qty"))
    document = {
        "name": str(row["name"]).strip(),
        "sku": str(row["sku"]).strip(),
        "description": row.get("description") or "",
        "manufacturer": row.get("manufacturer") or None,
        "productFamily": row.get("product_family") or None,
        "brand": row.get("brand") or None,
        "availableQty": available,
        "inStock": available > 0,
        "moq": _int(row.get("moq"), 1),
        "listPrice": _price(row.get("list_price")),
        "unitPrice": _price(row.get("unit_price")),
    }
    facets = [value for value in (document["productFamily"], document["brand"]) if value]
    document["_tags"] = sorted(set(facets))
    return document


def build_passthrough_document(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in row.items() if key not in INTERNAL_KEYS}


PRODUCT = Transform(
    name="product",
    build=build_product_document,
    required_fields=("sku", "name"),
)
PASSTHROUGH = Transform(name="passthrough", build=build_passthrough_document)


def default_registry() -> TransformRegistry:
    return TransformRegistry([PRODUCT, PASSTHROUGH])


__all__ = [
    "Transform",
    "TransformRegistry",
    "PRODUCT",
    "PASSTHROUGH",
    "canonical_bytes",
    "default_registry",
    "build_product_document",
    "build_passthrough_document",
]
