"""IPN payload decoding, raw form body to a typed Transaction.

PayPal posts a flat application/x-www-form-urlencoded body. Nothing in it is
guaranteed present, so every accessor defaults to an empty string.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Union
from urllib.parse import parse_qsl

NotificationPayload = dict[str, str]

COMPLETED = "Completed"
TAB_CHECKOUT = "tab_checkout"
# Anonymous checkouts carry uid 0
ANONYMOUS_BUYER_ID = "0"


def parse_notification(raw_body: bytes | str) -> NotificationPayload:
    """Decode the raw request body. A repeated key keeps its last value."""
    if isinstance(raw_body, bytes):
        raw_body = raw_body.decode("utf-8", errors="replace")
    return dict(parse_qsl(raw_body, keep_blank_values=True))


def _buyer_id(raw: str) -> str | None:
    value = raw.strip()
    if not value or value == ANONYMOUS_BUYER_ID:
        return None
    return value


@dataclass(frozen=True)
class StructuredCustom:
    """Custom field that decoded to a JSON object."""

    data: dict[str, Any] = field(default_factory=dict)

    @property
    def buyer_id(self) -> str | None:
        uid = self.data.get("uid")
        if uid is None:
            return None
        return _buyer_id(str(uid))

    @property
    def sale_type(self) -> str:
        return str(self.data.get("type") or "unknown")


@dataclass(frozen=True)
class RawCustom:
    """Custom field carried as an opaque string (the buyer id itself, or empty)."""

    value: str = ""

    @property
    def buyer_id(self) -> str | None:
        return _buyer_id(self.value)

    @property
    def sale_type(self) -> str:
        return "unknown"


CustomField = Union[StructuredCustom, RawCustom]


def decode_custom(raw: str) -> CustomField:
    """Try JSON first; anything that isn't a JSON object stays raw."""
    if not raw:
        return RawCustom("")
    try:
        decoded = json.loads(raw)
    except ValueError:
        return RawCustom(raw)
    if isinstance(decoded, dict):
        return StructuredCustom(decoded)
    return RawCustom(raw)


@dataclass(frozen=True)
class Transaction:
    """Typed view over the fields of one notification."""

    transaction_id: str
    tracking_id: str
    payment_status: str
    transaction_type: str
    currency: str
    receiver_identities: tuple[str, ...]
    payer_email: str
    payer_name: str
    custom: CustomField

    @property
    def is_completed(self) -> bool:
        return self.payment_status == COMPLETED

    @property
    def is_tab_checkout(self) -> bool:
        return self.custom.sale_type == TAB_CHECKOUT

    @classmethod
    def from_payload(cls, payload: NotificationPayload) -> Transaction:
        first = payload.get("first_name", "")
        last = payload.get("last_name", "")
        return cls(
            transaction_id=payload.get("txn_id", "").strip(),
            tracking_id=payload.get("ipn_track_id", "").strip(),
            payment_status=payload.get("payment_status", ""),
            transaction_type=payload.get("txn_type", ""),
            currency=payload.get("mc_currency", ""),
            receiver_identities=(
                payload.get("receiver_email", ""),
                payload.get("business", ""),
                payload.get("receiver_id", ""),
            ),
            payer_email=payload.get("payer_email", "").strip(),
            payer_name=f"{first} {last}".strip(),
            custom=decode_custom(payload.get("custom", "")),
        )
