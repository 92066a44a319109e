"""Line-item extraction from PayPal's numbered cart fields.

Cart payloads carry item_number1, quantity1, item_name1, item_number2, ...
"Buy Now" payloads carry a single unindexed item_number/quantity/item_name
triple, which is normalized into position 1 before iterating.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field

from ipn_inventory.payload import NotificationPayload

logger = logging.getLogger(__name__)

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")

SKIP_INVALID_MATERIAL = "invalid_material"
SKIP_NON_POSITIVE_QUANTITY = "non_positive_quantity"


@dataclass(frozen=True)
class LineItem:
    """One actionable purchased line."""

    position: int
    material_id: int
    quantity: int
    name: str = ""


@dataclass(frozen=True)
class SkippedPosition:
    position: int
    reason: str
    raw_value: str


@dataclass
class ExtractionResult:
    items: list[LineItem] = field(default_factory=list)
    skipped: list[SkippedPosition] = field(default_factory=list)


def parse_material_id(raw: str) -> int | None:
    """Parse a material reference. Integral numerics only ("42", " 42 ", "42.0")."""
    value = raw.strip()
    if not value:
        return None
    # int() also takes "1_000" and non-ASCII digits
    if not value.isascii() or "_" in value:
        return None
    try:
        return int(value)
    except ValueError:
        pass
    try:
        as_float = float(value)
    except ValueError:
        return None
    if not math.isfinite(as_float) or not as_float.is_integer():
        return None
    return int(as_float)


def coerce_quantity(raw: str | None) -> int:
    """Leading-integer coercion: "3" -> 3, "2.7" -> 2, "abc" -> 0. Absent -> 1."""
    if raw is None:
        return 1
    match = _LEADING_INT.match(raw)
    return int(match.group(1)) if match else 0


def normalize_single_item(payload: NotificationPayload) -> NotificationPayload:
    """Return a copy with an unindexed single item moved to position 1."""
    if "item_number1" in payload or "item_number" not in payload:
        return payload
    normalized = dict(payload)
    normalized["item_number1"] = payload["item_number"]
    normalized["quantity1"] = payload.get("quantity", "1")
    normalized["item_name1"] = payload.get("item_name", "")
    return normalized


def extract(payload: NotificationPayload) -> ExtractionResult:
    """Walk positions 1..N until the first missing item_number<N>.

    Bad positions are skipped and reported; they never abort the cart.
    """
    payload = normalize_single_item(payload)
    result = ExtractionResult()

    position = 1
    while f"item_number{position}" in payload:
        raw_ref = payload[f"item_number{position}"]
        raw_qty = payload.get(f"quantity{position}")
        name = payload.get(f"item_name{position}", "")

        material_id = parse_material_id(raw_ref)
        if material_id is None:
            logger.warning(
                "Skipping PayPal line item %d with invalid material reference: %r",
                position,
                raw_ref,
            )
            result.skipped.append(SkippedPosition(position, SKIP_INVALID_MATERIAL, raw_ref))
            position += 1
            continue

        quantity = coerce_quantity(raw_qty)
        if quantity <= 0:
            logger.warning(
                "Skipping PayPal line item for material %d with non-positive quantity %d",
                material_id,
                quantity,
            )
            result.skipped.append(
                SkippedPosition(position, SKIP_NON_POSITIVE_QUANTITY, raw_qty or "")
            )
            position += 1
            continue

        result.items.append(LineItem(position, material_id, quantity, name))
        position += 1

    return result
