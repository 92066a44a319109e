"""Adjustment emitter: one inventory adjustment per line item.

Failures are isolated at the item boundary: a storage error on one line is
logged and the next line is still attempted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ipn_inventory.catalog import CatalogStorage, CatalogStorageError, InventoryAdjustment
from ipn_inventory.extractor import LineItem
from ipn_inventory.payload import Transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmitResult:
    material_id: int
    success: bool
    reason: str = ""
    adjustment_id: int | None = None


@dataclass
class EmissionSummary:
    results: list[EmitResult] = field(default_factory=list)

    @property
    def created(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def any_succeeded(self) -> bool:
        return self.created > 0


def quantity_change_for(item: LineItem, transaction: Transaction) -> int:
    """Tab checkouts were deducted when added to the tab; record 0 for reconciliation."""
    if transaction.is_tab_checkout:
        return 0
    return -item.quantity


def compose_memo(item: LineItem, transaction: Transaction) -> str:
    memo = "Sold to {} ({}) - Item: {}".format(
        transaction.payer_name.strip() or "Unknown buyer",
        transaction.payer_email.strip() or "no-email",
        item.name.strip() or "Unknown item",
    )
    buyer_id = transaction.custom.buyer_id
    if buyer_id:
        memo = f"[UID:{buyer_id}] {memo}"
    return memo


class AdjustmentEmitter:
    """Builds and persists InventoryAdjustments through the catalog storage."""

    def __init__(self, storage: CatalogStorage):
        self._storage = storage

    @property
    def storage(self) -> CatalogStorage:
        return self._storage

    def emit(self, item: LineItem, transaction: Transaction) -> EmitResult:
        logger.info(
            "Recording PayPal sale for material %d, quantity %d (txn_id %s)",
            item.material_id,
            item.quantity,
            transaction.transaction_id,
        )
        try:
            adjustment = InventoryAdjustment(
                material_id=item.material_id,
                quantity_change=quantity_change_for(item, transaction),
                memo=compose_memo(item, transaction),
            )
            adjustment_id = self._storage.create_adjustment(adjustment)
        except CatalogStorageError as e:
            logger.error(
                "Failed to create inventory adjustment for material %d: %s",
                item.material_id,
                e,
            )
            return EmitResult(item.material_id, False, f"storage_error: {e}")
        except Exception as e:
            logger.exception(
                "Unexpected error creating inventory adjustment for material %d: %s",
                item.material_id,
                e,
            )
            return EmitResult(item.material_id, False, f"unexpected_error: {e}")

        logger.info(
            "Inventory adjustment %s saved for material %d", adjustment_id, item.material_id
        )
        return EmitResult(item.material_id, True, adjustment_id=adjustment_id)

    def emit_all(self, items: list[LineItem], transaction: Transaction) -> EmissionSummary:
        summary = EmissionSummary()
        for item in items:
            summary.results.append(self.emit(item, transaction))
        return summary
