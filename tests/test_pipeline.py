"""Tests for the notification pipeline: guards, dedup, recording."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from freezegun import freeze_time

from ipn_inventory.idempotency import MemoryIdempotencyStore
from ipn_inventory.pipeline import PipelineState

ONE_ITEM = {"item_number1": "42", "quantity1": "2", "item_name1": "Birch ply"}


class TestGuards:
    """Each guard halts before any side effect."""

    @pytest.mark.parametrize("status", ["Pending", "Refunded", "Denied", "completed", None])
    def test_non_completed_status_has_no_side_effects(
        self, status, make_pipeline, make_body, storage, store
    ):
        outcome = make_pipeline().process(make_body(payment_status=status, **ONE_ITEM))
        assert outcome.reason == "not_completed"
        assert storage.adjustments == []
        assert store.has("txn:9XK12345AB678901C") is False

    def test_failed_verification(self, make_pipeline, make_body, verifier, storage, store):
        verifier.verify.return_value = False
        outcome = make_pipeline().process(make_body(**ONE_ITEM))
        assert outcome.reason == "unverified"
        assert outcome.halted_at == PipelineState.VERIFYING
        assert outcome.state == PipelineState.ACKNOWLEDGED
        assert storage.adjustments == []
        assert store.has("txn:9XK12345AB678901C") is False

    def test_trusted_local_flag_passed_to_verifier(self, make_pipeline, make_body, verifier):
        body = make_body(**ONE_ITEM)
        make_pipeline().process(body, origin_is_trusted_local=True)
        verifier.verify.assert_called_once_with(body, True)

    def test_missing_txn_id(self, make_pipeline, make_body, storage):
        outcome = make_pipeline().process(make_body(txn_id=None, **ONE_ITEM))
        assert outcome.reason == "missing_txn_id"
        assert storage.adjustments == []

    def test_unsupported_txn_type(self, make_pipeline, make_body, storage):
        outcome = make_pipeline().process(make_body(txn_type="subscr_payment", **ONE_ITEM))
        assert outcome.reason == "unsupported_txn_type"
        assert storage.adjustments == []

    @pytest.mark.parametrize("txn_type", ["cart", "web_accept", None])
    def test_accepted_or_absent_txn_type(self, txn_type, make_pipeline, make_body):
        assert make_pipeline().process(make_body(txn_type=txn_type, **ONE_ITEM)).processed

    def test_unsupported_currency(self, make_pipeline, make_body, storage):
        outcome = make_pipeline().process(make_body(mc_currency="EUR", **ONE_ITEM))
        assert outcome.reason == "unsupported_currency"
        assert storage.adjustments == []

    def test_absent_currency_accepted(self, make_pipeline, make_body):
        assert make_pipeline().process(make_body(mc_currency=None, **ONE_ITEM)).processed

    def test_configured_currency(self, make_pipeline, make_body):
        pipeline = make_pipeline(currency="CAD")
        assert pipeline.process(make_body(mc_currency="CAD", **ONE_ITEM)).processed

    def test_receiver_mismatch(self, make_pipeline, make_body, storage, store):
        body = make_body(
            business="other@example.com",
            receiver_email="someone@example.com",
            receiver_id="XYZ",
            **ONE_ITEM,
        )
        outcome = make_pipeline(business_id="shop@example.com").process(body)
        assert outcome.reason == "receiver_mismatch"
        assert storage.adjustments == []
        assert outcome.recorded_keys == []
        assert store.has("txn:9XK12345AB678901C") is False

    @pytest.mark.parametrize("field", ["business", "receiver_email", "receiver_id"])
    def test_any_receiver_candidate_matches(self, field, make_pipeline, make_body):
        fields = {"business": "x", "receiver_email": "y", "receiver_id": "z", field: "MERCHANT9"}
        outcome = make_pipeline(business_id="MERCHANT9").process(make_body(**fields, **ONE_ITEM))
        assert outcome.processed

    def test_no_configured_receiver_skips_check(self, make_pipeline, make_body):
        body = make_body(business="anyone", receiver_email="", receiver_id="", **ONE_ITEM)
        assert make_pipeline(business_id="").process(body).processed


class TestIdempotency:
    def test_redelivery_creates_nothing(self, make_pipeline, make_body, storage):
        pipeline = make_pipeline()
        body = make_body(ipn_track_id="trk-1", **ONE_ITEM)
        first = pipeline.process(body)
        second = pipeline.process(body)
        assert first.processed
        assert second.reason == "duplicate"
        assert len(storage.adjustments) == 1

    def test_tracking_id_alone_suppresses(self, make_pipeline, make_body, storage, store):
        store.set("track:trk-1", 1.0)
        outcome = make_pipeline().process(make_body(ipn_track_id="trk-1", **ONE_ITEM))
        assert outcome.reason == "duplicate"
        assert storage.adjustments == []

    def test_transaction_id_alone_suppresses(self, make_pipeline, make_body, storage, store):
        store.set("txn:9XK12345AB678901C", 1.0)
        outcome = make_pipeline().process(make_body(ipn_track_id="fresh", **ONE_ITEM))
        assert outcome.reason == "duplicate"
        assert storage.adjustments == []

    @freeze_time("2026-03-01 12:00:00")
    def test_records_both_keys_with_current_time(self, make_pipeline, make_body, store):
        outcome = make_pipeline().process(make_body(ipn_track_id="trk-1", **ONE_ITEM))
        assert outcome.recorded_keys == ["txn:9XK12345AB678901C", "track:trk-1"]
        assert store.get("txn:9XK12345AB678901C") == 1772366400.0
        assert store.get("track:trk-1") == 1772366400.0

    def test_no_tracking_id_records_only_transaction(self, make_pipeline, make_body):
        outcome = make_pipeline().process(make_body(**ONE_ITEM))
        assert outcome.recorded_keys == ["txn:9XK12345AB678901C"]

    def test_injected_clock(self, make_pipeline, make_body, store):
        make_pipeline(clock=lambda: 123.0).process(make_body(**ONE_ITEM))
        assert store.get("txn:9XK12345AB678901C") == 123.0

    def test_zero_actionable_items_records_nothing(self, make_pipeline, make_body, store, caplog):
        body = make_body(item_number1="abc", item_number2="7", quantity2="0")
        outcome = make_pipeline().process(body)
        assert outcome.reason == "no_adjustments"
        assert len(outcome.skipped) == 2
        assert store.has("txn:9XK12345AB678901C") is False
        assert "did not create inventory adjustments" in caplog.text

    def test_corrected_redelivery_succeeds_later(self, make_pipeline, make_body, storage):
        pipeline = make_pipeline()
        assert pipeline.process(make_body(item_number1="abc")).reason == "no_adjustments"
        assert pipeline.process(make_body(item_number1="42")).processed
        assert len(storage.adjustments) == 1

    def test_total_storage_failure_records_nothing(self, make_pipeline, make_body, storage, store):
        storage.fail_for = {42}
        outcome = make_pipeline().process(make_body(**ONE_ITEM))
        assert outcome.reason == "no_adjustments"
        assert store.has("txn:9XK12345AB678901C") is False


class TestStrictDedup:
    def test_lost_reservation_is_duplicate(self, make_pipeline, make_body, storage):
        store = MagicMock()
        store.has.return_value = False
        store.reserve.return_value = False
        outcome = make_pipeline(store=store, strict_dedup=True).process(make_body(**ONE_ITEM))
        assert outcome.reason == "duplicate"
        assert storage.adjustments == []

    def test_reservation_released_when_nothing_created(self, make_pipeline, make_body, store):
        pipeline = make_pipeline(strict_dedup=True)
        outcome = pipeline.process(make_body(item_number1="abc"))
        assert outcome.reason == "no_adjustments"
        assert store.has("txn:9XK12345AB678901C") is False

    def test_reservation_kept_on_success(self, make_pipeline, make_body, store):
        outcome = make_pipeline(strict_dedup=True).process(make_body(ipn_track_id="t", **ONE_ITEM))
        assert outcome.processed
        assert store.has("txn:9XK12345AB678901C")
        assert store.has("track:t")

    def test_relaxed_mode_never_reserves(self, make_pipeline, make_body):
        store = MagicMock()
        store.has.return_value = False
        make_pipeline(store=store).process(make_body(**ONE_ITEM))
        store.reserve.assert_not_called()


class TestCartProcessing:
    def test_bad_third_position_keeps_first_two(self, make_pipeline, make_body, storage):
        body = make_body(
            item_number1="10", quantity1="1",
            item_number2="11", quantity2="2",
            item_number3="not-a-number", quantity3="1",
        )
        outcome = make_pipeline().process(body)
        assert outcome.processed
        assert outcome.adjustments_created == 2
        assert [s.position for s in outcome.skipped] == [3]
        assert [a.material_id for a in storage.adjustments] == [10, 11]

    def test_single_item_buy_now(self, make_pipeline, make_body, storage):
        outcome = make_pipeline().process(
            make_body(txn_type="web_accept", item_number="42", quantity="3")
        )
        assert outcome.processed
        assert len(storage.adjustments) == 1
        assert storage.adjustments[0].material_id == 42
        assert storage.adjustments[0].quantity_change == -3
        assert storage.adjustments[0].memo.endswith("Item: Unknown item")

    def test_tab_checkout_records_zero_change(self, make_pipeline, make_body, storage):
        body = make_body(custom='{"type":"tab_checkout"}', item_number1="42", quantity1="5")
        outcome = make_pipeline().process(body)
        assert outcome.processed
        assert storage.adjustments[0].quantity_change == 0

    def test_partial_storage_failure_still_records(self, make_pipeline, make_body, storage, store):
        storage.fail_for = {10}
        body = make_body(item_number1="10", item_number2="11")
        outcome = make_pipeline().process(body)
        assert outcome.processed
        assert outcome.adjustments_created == 1
        assert store.has("txn:9XK12345AB678901C")


class TestAlwaysAcknowledged:
    def test_store_outage_is_contained(self, make_pipeline, make_body, storage, caplog):
        store = MagicMock()
        store.has.side_effect = ConnectionError("redis down")
        outcome = make_pipeline(store=store).process(make_body(**ONE_ITEM))
        assert outcome.reason == "internal_error"
        assert outcome.halted_at == PipelineState.DEDUP_CHECKING
        assert outcome.state == PipelineState.ACKNOWLEDGED
        assert storage.adjustments == []
        assert "processing failed" in caplog.text

    def test_garbage_body(self, make_pipeline):
        outcome = make_pipeline().process(b"\x00\xff not a form")
        assert outcome.state == PipelineState.ACKNOWLEDGED
        assert outcome.reason == "not_completed"
