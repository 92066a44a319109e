"""IPN notification pipeline — verify, guard, dedupe, extract, emit, record.

Every path ends in ACKNOWLEDGED. PayPal retries anything that isn't a 200,
so rejections are reported through logs and the returned outcome only.

Guard order:
1. PayPal postback verification
2. payment_status == "Completed"
3. txn_id present
4. txn_type absent or cart/web_accept
5. mc_currency absent or the configured currency
6. receiver matches the configured business id (when one is configured)
7. txn_id / ipn_track_id not already recorded

Idempotency keys are recorded only after at least one adjustment was saved,
so a notification that produced nothing can be redelivered and succeed.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from ipn_inventory.catalog import CatalogStorage
from ipn_inventory.emitter import AdjustmentEmitter
from ipn_inventory.extractor import SkippedPosition, extract
from ipn_inventory.idempotency import IdempotencyStore, tracking_key, transaction_key
from ipn_inventory.payload import Transaction, parse_notification
from ipn_inventory.verification import IpnVerifier

logger = logging.getLogger(__name__)

DEFAULT_ACCEPTED_TXN_TYPES = frozenset({"cart", "web_accept"})


class PipelineState(str, Enum):
    RECEIVED = "received"
    VERIFYING = "verifying"
    VALIDATING = "validating"
    DEDUP_CHECKING = "dedup_checking"
    EXTRACTING = "extracting"
    EMITTING = "emitting"
    RECORDING = "recording"
    ACKNOWLEDGED = "acknowledged"


@dataclass
class PipelineOutcome:
    """What happened to one notification. state is always ACKNOWLEDGED."""

    halted_at: PipelineState = PipelineState.RECEIVED
    reason: str = ""
    transaction_id: str = ""
    adjustments_created: int = 0
    skipped: list[SkippedPosition] = field(default_factory=list)
    recorded_keys: list[str] = field(default_factory=list)
    state: PipelineState = PipelineState.ACKNOWLEDGED

    @property
    def processed(self) -> bool:
        return self.reason == "processed"


class _Halt(Exception):
    """Internal: a guard rejected the notification."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class NotificationPipeline:
    """Turns one PayPal IPN into inventory adjustments, at most once."""

    def __init__(
        self,
        verifier: IpnVerifier,
        store: IdempotencyStore,
        emitter: AdjustmentEmitter,
        business_id: str = "",
        currency: str = "USD",
        accepted_txn_types: frozenset[str] = DEFAULT_ACCEPTED_TXN_TYPES,
        strict_dedup: bool = False,
        clock: Callable[[], float] | None = None,
    ):
        self._verifier = verifier
        self._store = store
        self._emitter = emitter
        self._business_id = business_id
        self._currency = currency
        self._accepted_txn_types = accepted_txn_types
        self._strict_dedup = strict_dedup
        self._clock = clock

    @property
    def verifier(self) -> IpnVerifier:
        return self._verifier

    @property
    def storage(self) -> CatalogStorage:
        return self._emitter.storage

    def process(self, raw_body: bytes, origin_is_trusted_local: bool = False) -> PipelineOutcome:
        """Run the full pipeline. Never raises."""
        outcome = PipelineOutcome()
        try:
            self._run(raw_body, origin_is_trusted_local, outcome)
        except _Halt as halt:
            outcome.reason = halt.reason
        except Exception:
            logger.exception(
                "PayPal IPN processing failed at %s (txn_id %s)",
                outcome.halted_at.value,
                outcome.transaction_id or "unknown",
            )
            outcome.reason = "internal_error"
        outcome.state = PipelineState.ACKNOWLEDGED
        return outcome

    def _now(self) -> float:
        return self._clock() if self._clock else time.time()

    def _enter(self, outcome: PipelineOutcome, state: PipelineState) -> None:
        outcome.halted_at = state

    def _run(self, raw_body: bytes, trusted_local: bool, outcome: PipelineOutcome) -> None:
        self._enter(outcome, PipelineState.VERIFYING)
        if not self._verifier.verify(raw_body, trusted_local):
            logger.error("Invalid IPN: PayPal verification failed")
            raise _Halt("unverified")

        self._enter(outcome, PipelineState.VALIDATING)
        payload = parse_notification(raw_body)
        txn = Transaction.from_payload(payload)
        outcome.transaction_id = txn.transaction_id
        self._validate(txn)

        self._enter(outcome, PipelineState.DEDUP_CHECKING)
        keys = [transaction_key(txn.transaction_id)]
        if txn.tracking_id:
            keys.append(tracking_key(txn.tracking_id))
        if any(self._store.has(key) for key in keys):
            logger.info("Skipping duplicate PayPal IPN (txn_id %s)", txn.transaction_id)
            raise _Halt("duplicate")

        reserved = False
        if self._strict_dedup:
            if not self._store.reserve(keys[0], self._now()):
                logger.info(
                    "Skipping concurrent duplicate PayPal IPN (txn_id %s)", txn.transaction_id
                )
                raise _Halt("duplicate")
            reserved = True

        try:
            self._enter(outcome, PipelineState.EXTRACTING)
            extraction = extract(payload)
            outcome.skipped = extraction.skipped

            self._enter(outcome, PipelineState.EMITTING)
            summary = self._emitter.emit_all(extraction.items, txn)
            outcome.adjustments_created = summary.created
        except Exception:
            if reserved:
                self._store.release(keys[0])
            raise

        self._enter(outcome, PipelineState.RECORDING)
        if not summary.any_succeeded:
            if reserved:
                self._store.release(keys[0])
            logger.warning(
                "PayPal IPN did not create inventory adjustments (txn_id %s)",
                txn.transaction_id,
            )
            raise _Halt("no_adjustments")

        recorded_at = self._now()
        for key in keys:
            self._store.set(key, recorded_at)
        outcome.recorded_keys = keys
        outcome.reason = "processed"
        logger.info(
            "PayPal IPN processed (txn_id %s): %d adjustment(s), %d skipped line(s)",
            txn.transaction_id,
            summary.created,
            len(extraction.skipped),
        )

    def _validate(self, txn: Transaction) -> None:
        if not txn.is_completed:
            logger.error(
                "Payment status is not \"Completed\" (status %r, txn_id %s)",
                txn.payment_status,
                txn.transaction_id or "unknown",
            )
            raise _Halt("not_completed")

        if not txn.transaction_id:
            logger.warning("Skipping PayPal IPN with missing txn_id")
            raise _Halt("missing_txn_id")

        if txn.transaction_type and txn.transaction_type not in self._accepted_txn_types:
            logger.warning(
                "Skipping PayPal IPN with unsupported txn_type %s (txn_id %s)",
                txn.transaction_type,
                txn.transaction_id,
            )
            raise _Halt("unsupported_txn_type")

        if txn.currency and txn.currency != self._currency:
            logger.warning(
                "Skipping PayPal IPN with unexpected currency %s (txn_id %s)",
                txn.currency,
                txn.transaction_id,
            )
            raise _Halt("unsupported_currency")

        if self._business_id and self._business_id not in txn.receiver_identities:
            logger.warning(
                "Skipping PayPal IPN with mismatched business receiver (txn_id %s)",
                txn.transaction_id,
            )
            raise _Halt("receiver_mismatch")
