"""Inventory adjustment records and their Postgres storage.

Adjustments are append-only: the listener creates them and never updates or
deletes them. The materials catalog itself belongs to another system; this
module only needs the material id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import psycopg
from psycopg.rows import dict_row

logger = logging.getLogger(__name__)

SALE_REASON = "sale"


class CatalogStorageError(Exception):
    """The storage layer refused or failed to persist an adjustment."""


@dataclass(frozen=True)
class InventoryAdjustment:
    material_id: int
    quantity_change: int
    memo: str
    reason: str = SALE_REASON


@runtime_checkable
class CatalogStorage(Protocol):
    """Create-and-save access to inventory adjustments."""

    def create_adjustment(self, adjustment: InventoryAdjustment) -> int:
        """Persist the adjustment and return its id. Raises CatalogStorageError."""
        ...


class PostgresCatalogStorage:
    """Writes adjustments to the inventory_adjustments table."""

    def __init__(self, database_url: str):
        self._database_url = database_url

    def _get_conn(self) -> psycopg.Connection:
        return psycopg.connect(self._database_url, autocommit=True, row_factory=dict_row)

    def init_tables(self) -> None:
        """Create the adjustments table if it doesn't exist.  Idempotent."""
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS inventory_adjustments (
                    id              SERIAL PRIMARY KEY,
                    material_id     INTEGER NOT NULL,
                    quantity_change INTEGER NOT NULL,
                    reason          TEXT NOT NULL,
                    memo            TEXT NOT NULL DEFAULT '',
                    created_at      TIMESTAMPTZ NOT NULL DEFAULT now()
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_inventory_adjustments_material
                ON inventory_adjustments (material_id)
            """)
        logger.info("Inventory adjustment table ready")

    def create_adjustment(self, adjustment: InventoryAdjustment) -> int:
        try:
            with self._get_conn() as conn:
                row = conn.execute(
                    """INSERT INTO inventory_adjustments
                           (material_id, quantity_change, reason, memo)
                       VALUES (%s, %s, %s, %s)
                       RETURNING id""",
                    (
                        adjustment.material_id,
                        adjustment.quantity_change,
                        adjustment.reason,
                        adjustment.memo,
                    ),
                ).fetchone()
        except psycopg.Error as e:
            raise CatalogStorageError(str(e)) from e
        return row["id"]
