import os

import pytest
from pydantic import ValidationError

from kvsession import StoreConfig


def test_from_env_reads_settings(tmp_path) -> None:
    config = StoreConfig.from_env(
        {
            "KVSESSION_DATA_DIR": str(tmp_path),
            "KVSESSION_BUSY_TIMEOUT_MS": "250",
            "KVSESSION_JOURNAL_MODE": "delete",
            "KVSESSION_SYNCHRONOUS": "full",
        }
    )
    assert config.data_dir == str(tmp_path)
    assert config.busy_timeout_ms == 250
    assert config.journal_mode == "DELETE"
    assert config.synchronous == "FULL"


def test_from_env_defaults(monkeypatch) -> None:
    for key in ("KVSESSION_DATA_DIR", "KVSESSION_BUSY_TIMEOUT_MS", "KVSESSION_JOURNAL_MODE", "KVSESSION_SYNCHRONOUS"):
        monkeypatch.delenv(key, raising=False)
    config = StoreConfig.from_env({})
    assert config.data_dir == os.getcwd()
    assert config.busy_timeout_ms == 5000
    assert config.engine_options() == {
        "busy_timeout_ms": 5000,
        "journal_mode": "WAL",
        "synchronous": "NORMAL",
    }


def test_invalid_integer_is_rejected() -> None:
    with pytest.raises(ValidationError):
        StoreConfig.from_env({"KVSESSION_BUSY_TIMEOUT_MS": "soon"})


def test_process_environment_is_read_with_prefix(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("KVSESSION_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("KVSESSION_SYNCHRONOUS", "off")
    monkeypatch.delenv("KVSESSION_JOURNAL_MODE", raising=False)
    config = StoreConfig.from_env()
    assert config.data_dir == str(tmp_path)
    assert config.synchronous == "OFF"
    assert config.journal_mode == "WAL"


def test_config_is_immutable(tmp_path) -> None:
    config = StoreConfig(data_dir=str(tmp_path))
    with pytest.raises(ValidationError):
        config.busy_timeout_ms = 1


def test_invalid_choices_are_rejected() -> None:
    with pytest.raises(ValueError):
        StoreConfig.from_env({"KVSESSION_JOURNAL_MODE": "fast"})
    with pytest.raises(ValueError):
        StoreConfig(synchronous="sometimes")
    with pytest.raises(ValueError):
        StoreConfig(busy_timeout_ms=-1)


def test_path_for_encodes_store_names(tmp_path) -> None:
    config = StoreConfig(data_dir=str(tmp_path))
    assert config.path_for("orders") == os.path.join(str(tmp_path), "orders.kvdb")
    assert config.path_for("a/b c") == os.path.join(str(tmp_path), "a%2Fb%20c.kvdb")
    with pytest.raises(ValueError):
        config.path_for("")
