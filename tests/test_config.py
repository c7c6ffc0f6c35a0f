"""Tests for configuration loading."""

import json
from dataclasses import FrozenInstanceError
from decimal import Decimal

import pytest

from clementine_withdraw.config import Config, backup_path, load_config, read_config_file
from clementine_withdraw.errors import InvalidCheckpointError


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "bitcoinRpcUrl": "http://127.0.0.1:18443",
        "bitcoinRpcUser": "admin",
        "bitcoinRpcPassword": "admin",
        "citreaPrivateKey": "0xfile",
        "operatorEndpoints": ["http://a/withdrawals", "http://b/withdrawals"],
        "minWithdrawalAmount": 9.995,
        "backupFolderPath": "my-backups/",
    }))
    return str(path)


class TestLoadConfig:
    """Test defaults, file values and overrides."""

    def test_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CITREA_PRIVATE_KEY", raising=False)
        config = load_config(str(tmp_path / "missing.json"))

        assert config == Config()
        assert config.min_withdrawal_amount == Decimal("9.99")
        assert config.precision == Decimal("0.001")
        assert config.operator_endpoints == ("https://api.testnet.citrea.xyz/withdrawals",)

    def test_file_values(self, config_file):
        config = load_config(config_file)

        assert config.bitcoin_rpc_url == "http://127.0.0.1:18443"
        assert config.operator_endpoints == ("http://a/withdrawals", "http://b/withdrawals")
        assert config.min_withdrawal_amount == Decimal("9.995")
        assert config.backup_dir == "my-backups/"

    def test_overrides_win(self, config_file):
        config = load_config(config_file, {
            "citrea_private_key": "0xflag",
            "operator_endpoints": "http://c/withdrawals, http://d/withdrawals",
            "precision": "0.0005",
            "bitcoin_rpc_user": None,
        })

        assert config.citrea_private_key == "0xflag"
        assert config.operator_endpoints == ("http://c/withdrawals", "http://d/withdrawals")
        assert config.precision == Decimal("0.0005")
        # None overrides leave the file value alone
        assert config.bitcoin_rpc_user == "admin"

    def test_private_key_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CITREA_PRIVATE_KEY", "0xenv")
        config = load_config(str(tmp_path / "missing.json"))
        assert config.citrea_private_key == "0xenv"

    def test_file_key_beats_environment(self, config_file, monkeypatch):
        monkeypatch.setenv("CITREA_PRIVATE_KEY", "0xenv")
        assert load_config(config_file).citrea_private_key == "0xfile"

    def test_invalid_decimal(self, tmp_path):
        with pytest.raises(InvalidCheckpointError) as exc_info:
            load_config(str(tmp_path / "missing.json"), {"precision": "abc"})
        assert exc_info.value.field == "precision"

    @pytest.mark.parametrize("name", ["round_delay", "request_timeout", "receipt_timeout"])
    def test_invalid_number(self, tmp_path, name):
        with pytest.raises(InvalidCheckpointError) as exc_info:
            load_config(str(tmp_path / "missing.json"), {name: "soon"})
        assert exc_info.value.field == name

    def test_invalid_number_in_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"roundDelay": "1s"}))
        with pytest.raises(InvalidCheckpointError) as exc_info:
            load_config(str(path))
        assert exc_info.value.field == "round_delay"

    def test_empty_endpoints(self, tmp_path):
        with pytest.raises(InvalidCheckpointError) as exc_info:
            load_config(str(tmp_path / "missing.json"), {"operator_endpoints": " , "})
        assert exc_info.value.field == "operator_endpoints"

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{")
        with pytest.raises(InvalidCheckpointError):
            load_config(str(path))

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"someFutureKey": 1, "precision": "0.01"}))
        assert read_config_file(str(path)) == {"precision": "0.01"}

    def test_config_is_frozen(self):
        config = Config()
        with pytest.raises(FrozenInstanceError):
            config.precision = Decimal("1")


class TestHelpers:
    def test_missing_connection_settings(self):
        config = Config(bitcoin_rpc_url="http://node", bitcoin_rpc_user="u")
        assert config.missing_connection_settings() == [
            "--bitcoin-rpc-password",
            "--citrea-private-key",
        ]

    def test_backup_path(self):
        config = Config(backup_dir="backups/")
        assert str(backup_path(config, "tb1pabc")) == "backups/tb1pabc.json"
