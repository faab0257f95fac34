"""
Tests for the Secret Store: closed schema, atomic batches, encryption and
the plaintext compatibility path.
"""

import json
import logging

import pytest
from cryptography.fernet import Fernet

from devicelock.errors import InvalidInput
from devicelock.secret_store import SecretStore


# ── Schema ─────────────────────────────────────────────────────────────

def test_put_get_round_trip(store):
    store.put("locked", True)
    store.put("offlineUnlockCount", 2)
    assert store.get("locked") is True
    assert store.get("offlineUnlockCount") == 2
    assert store.get("dueDate") is None
    assert store.get("dueDate", "n/a") == "n/a"


def test_unknown_key_rejected(store):
    with pytest.raises(InvalidInput):
        store.put("favouriteColour", "blue")
    with pytest.raises(InvalidInput):
        store.get("favouriteColour")


def test_wrong_type_rejected(store):
    with pytest.raises(InvalidInput):
        store.put("locked", "yes")
    with pytest.raises(InvalidInput):
        store.put("offlineUnlockCount", True)
    with pytest.raises(InvalidInput):
        store.put("isRegistered", 1)


def test_remove(store):
    store.put("dueDate", "2025-01-15")
    store.remove("dueDate")
    assert "dueDate" not in store.snapshot()


# ── Batches ────────────────────────────────────────────────────────────

def test_edit_applies_all_at_once(store):
    with store.edit() as e:
        e.put("locked", False)
        e.put("offlineUnlockCount", (e.get("offlineUnlockCount") or 0) + 1)
        assert e.get("locked") is False
    snap = store.snapshot()
    assert snap["locked"] is False
    assert snap["offlineUnlockCount"] == 1


def test_edit_is_discarded_when_block_raises(store):
    store.put("locked", True)
    with pytest.raises(RuntimeError):
        with store.edit() as e:
            e.put("locked", False)
            raise RuntimeError("boom")
    assert store.get("locked") is True


def test_edit_with_bad_key_writes_nothing(store):
    with pytest.raises(InvalidInput):
        with store.edit() as e:
            e.put("locked", True)
            e.put("nope", 1)
    assert store.get("locked") is None


# ── Encryption ─────────────────────────────────────────────────────────

def test_file_is_encrypted(tmp_path):
    store = SecretStore(tmp_path)
    store.put("pinHash", "a" * 64)
    raw = (tmp_path / "ahk_prefs.enc").read_bytes()
    assert b"pinHash" not in raw
    assert store.encrypted
    assert not (tmp_path / "ahk_prefs.json").exists()


def test_values_survive_reopen(tmp_path):
    SecretStore(tmp_path).put("dueDate", "2025-01-15")
    assert SecretStore(tmp_path).get("dueDate") == "2025-01-15"


def test_explicit_key(tmp_path):
    key = Fernet.generate_key().decode()
    SecretStore(tmp_path, key=key).put("locked", True)
    assert SecretStore(tmp_path, key=key).get("locked") is True
    assert not (tmp_path / "ahk_prefs.key").exists()


def test_decryption_failure_falls_back_to_plaintext(tmp_path, caplog):
    (tmp_path / "ahk_prefs.json").write_text(json.dumps({"locked": True, "deviceId": "legacy"}))
    (tmp_path / "ahk_prefs.enc").write_bytes(b"not a fernet token")
    store = SecretStore(tmp_path)

    with caplog.at_level(logging.WARNING, logger="devicelock.secret_store"):
        assert store.get("locked") is True
        assert store.get("deviceId") == "legacy"
    fallback_logs = [r for r in caplog.records if "decryption failed" in r.getMessage()]
    assert len(fallback_logs) == 1

    # Writes still go to the encrypted file
    store.put("locked", False)
    assert store.get("locked") is False
    assert json.loads((tmp_path / "ahk_prefs.json").read_text())["locked"] is True
