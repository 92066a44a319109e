"""Shared fixtures for the IPN listener test suite."""

from __future__ import annotations

from urllib.parse import urlencode
from unittest.mock import MagicMock

import pytest

from ipn_inventory.catalog import CatalogStorageError, InventoryAdjustment
from ipn_inventory.emitter import AdjustmentEmitter
from ipn_inventory.idempotency import MemoryIdempotencyStore
from ipn_inventory.pipeline import NotificationPipeline
from ipn_inventory.verification import IpnVerifier


class RecordingStorage:
    """CatalogStorage double that keeps adjustments in a list.

    Material ids in ``fail_for`` raise CatalogStorageError, ids in
    ``explode_for`` raise a plain RuntimeError.
    """

    def __init__(self) -> None:
        self.adjustments: list[InventoryAdjustment] = []
        self.fail_for: set[int] = set()
        self.explode_for: set[int] = set()

    def create_adjustment(self, adjustment: InventoryAdjustment) -> int:
        if adjustment.material_id in self.fail_for:
            raise CatalogStorageError(f"material {adjustment.material_id} is locked")
        if adjustment.material_id in self.explode_for:
            raise RuntimeError("connection reset")
        self.adjustments.append(adjustment)
        return len(self.adjustments)


@pytest.fixture
def storage() -> RecordingStorage:
    return RecordingStorage()


@pytest.fixture
def store() -> MemoryIdempotencyStore:
    return MemoryIdempotencyStore()


@pytest.fixture
def verifier() -> MagicMock:
    """Verifier that accepts everything unless told otherwise."""
    v = MagicMock(spec=IpnVerifier)
    v.verify.return_value = True
    return v


@pytest.fixture
def make_pipeline(verifier, store, storage):
    """Factory for pipelines wired to the shared doubles."""

    def _make(**kwargs) -> NotificationPipeline:
        return NotificationPipeline(
            verifier=kwargs.pop("verifier", verifier),
            store=kwargs.pop("store", store),
            emitter=AdjustmentEmitter(kwargs.pop("storage", storage)),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_body():
    """Factory for URL-encoded IPN bodies with sensible completed-sale defaults."""

    def _make(**fields: str | None) -> bytes:
        data = {
            "payment_status": "Completed",
            "txn_id": "9XK12345AB678901C",
            "txn_type": "cart",
            "mc_currency": "USD",
            "receiver_email": "shop@example.com",
            "business": "shop@example.com",
            "receiver_id": "MERCHANT123",
            "payer_email": "buyer@example.org",
            "first_name": "Ada",
            "last_name": "Lovelace",
        }
        for key, value in fields.items():
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
        return urlencode(data).encode()

    return _make
