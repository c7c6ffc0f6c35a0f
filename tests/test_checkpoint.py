"""Tests for the checkpoint store."""

import json

import pytest

from clementine_withdraw.checkpoint import CheckpointStore, WithdrawalRecord
from clementine_withdraw.errors import CheckpointLockedError, InvalidCheckpointError

from conftest import MARKER_TXID


class TestWithdrawalRecord:
    """Test record (de)serialization."""

    def test_absent_fields_are_not_written(self, fresh_record):
        data = fresh_record.to_dict()
        assert set(data) == {"descriptor", "address", "destinationAddress"}

    def test_vout_zero_is_written(self, fresh_record):
        fresh_record.marker_txid = MARKER_TXID
        fresh_record.marker_vout = 0
        assert fresh_record.to_dict()["markerVout"] == 0

    def test_legacy_keys(self):
        record = WithdrawalRecord.from_dict({
            "descriptor": "tr(k)",
            "address": "tb1p",
            "withdrawalAddress": "tb1dest",
            "txid": MARKER_TXID,
            "vout": 0,
            "withdrawalIdx": "5",
            "receipt": {"blockNumber": 10},
        })
        assert record.destination_address == "tb1dest"
        assert record.marker_txid == MARKER_TXID
        assert record.payout_index == 5
        # unknown keys survive a rewrite
        assert record.to_dict()["receipt"] == {"blockNumber": 10}

    def test_invalid_integer(self):
        with pytest.raises(InvalidCheckpointError) as exc_info:
            WithdrawalRecord.from_dict({"payoutIndex": "seven"})
        assert exc_info.value.field == "payout_index"


class TestCheckpointStore:
    """Test durable storage."""

    def test_save_and_load(self, store, fresh_record):
        fresh_record.marker_txid = MARKER_TXID
        fresh_record.marker_vout = 0
        fresh_record.payout_index = 7

        store.save(fresh_record)
        loaded = store.load()

        assert loaded.marker_txid == MARKER_TXID
        assert loaded.marker_vout == 0
        assert loaded.payout_index == 7
        assert loaded.descriptor == fresh_record.descriptor

    def test_save_overwrites_fully(self, store, fresh_record):
        fresh_record.burn_tx_hash = "0xaa"
        store.save(fresh_record)
        fresh_record.burn_tx_hash = "0xbb"
        store.save(fresh_record)

        with open(store.path) as f:
            assert json.load(f)["burnTxHash"] == "0xbb"
        # no temp files left behind
        leftovers = [p.name for p in store.path.parent.iterdir() if p.name.startswith(".")]
        assert leftovers == []

    def test_failed_write_keeps_previous_file(self, store, fresh_record):
        store.save(fresh_record)
        fresh_record.extra["bad"] = object()

        with pytest.raises(TypeError):
            store.save(fresh_record)

        assert store.load().address == fresh_record.address
        leftovers = [p.name for p in store.path.parent.iterdir() if p.name.startswith(".")]
        assert leftovers == []

    def test_load_missing(self, store):
        with pytest.raises(InvalidCheckpointError) as exc_info:
            store.load()
        assert exc_info.value.reason == "missing"

    def test_load_corrupt(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text("{not json")
        with pytest.raises(InvalidCheckpointError):
            store.load()

    def test_load_not_an_object(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text("[1, 2]")
        with pytest.raises(InvalidCheckpointError):
            store.load()

    def test_create_refuses_existing(self, store, fresh_record):
        store.create(fresh_record)
        with pytest.raises(InvalidCheckpointError) as exc_info:
            store.create(fresh_record)
        assert exc_info.value.reason == "exists"

    def test_lock_is_exclusive(self, store):
        other = CheckpointStore(store.path)
        with store.lock():
            with pytest.raises(CheckpointLockedError):
                with other.lock():
                    pass
        # released afterwards
        with other.lock():
            pass
