"""
Process-local authenticated-encrypted key/value store for agent state.

The store is a single JSON object encrypted with Fernet (AES-128-CBC +
HMAC-SHA256) in `<namespace>.enc`. `<namespace>.json` is the plaintext
compatibility file: reads fall back to it when the encrypted file cannot be
decrypted, writes always go to the encrypted file when a key is available.

The key set is closed; unknown keys and mistyped values raise InvalidInput.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from cryptography.fernet import Fernet, InvalidToken

from .config import PREFS_NAMESPACE
from .errors import InvalidInput

logger = logging.getLogger("devicelock.secret_store")

SCHEMA: dict[str, type] = {
    # Device Record mirror
    "deviceId": str,
    "locked": bool,
    "dueDate": str,
    "dueAmount": str,
    "dueDetails": str,
    "customerName": str,
    "customerPhone": str,
    "deviceModel": str,
    "imei": str,
    "pinHash": str,
    "paymentLink": str,
    "paymentLinkUpdatedAt": str,
    "lastSeenTimestamp": int,
    "offlineUnlockCount": int,
    "lastOfflineUnlock": int,
    # Agent-only flags
    "isRegistered": bool,
    "kioskMode": bool,
    "nativeLockDisabled": bool,
    "sequentialLockMode": bool,
    "paymentLinkLastUpdated": int,
}


def check_entry(key: str, value: Any) -> None:
    expected = SCHEMA.get(key)
    if expected is None:
        raise InvalidInput(f"unknown store key: {key}")
    if value is None:
        return
    # bool is an int subclass; keep the two apart in both directions.
    if expected is int and isinstance(value, bool):
        raise InvalidInput(f"{key} expects int, got bool")
    if not isinstance(value, expected):
        raise InvalidInput(f"{key} expects {expected.__name__}, got {type(value).__name__}")


class Editor:
    """Batch of pending writes; reads see the pending values first."""

    def __init__(self, current: dict[str, Any]):
        self._current = current
        self._pending: dict[str, Any] = {}

    def get(self, key: str, default: Any = None) -> Any:
        check_entry(key, None)
        if key in self._pending:
            value = self._pending[key]
            return default if value is None else value
        return self._current.get(key, default)

    def put(self, key: str, value: Any) -> "Editor":
        check_entry(key, value)
        self._pending[key] = value
        return self

    def remove(self, key: str) -> "Editor":
        return self.put(key, None)

    @property
    def pending(self) -> dict[str, Any]:
        return dict(self._pending)


class SecretStore:
    def __init__(
        self,
        directory: Path | str,
        namespace: str = PREFS_NAMESPACE,
        key: Optional[str] = None,
    ):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.namespace = namespace
        self.encrypted_path = self.directory / f"{namespace}.enc"
        self.plain_path = self.directory / f"{namespace}.json"
        self.key_path = self.directory / f"{namespace}.key"
        self._lock = threading.RLock()
        self._fallback_logged = False
        self._fernet = self._load_fernet(key)

    # ── key material ───────────────────────────────────────────────────

    def _load_fernet(self, key: Optional[str]) -> Optional[Fernet]:
        try:
            if key:
                return Fernet(key.encode("utf-8"))
            if self.key_path.exists():
                return Fernet(self.key_path.read_bytes().strip())
            raw = Fernet.generate_key()
            self._write_atomic(self.key_path, raw)
            os.chmod(self.key_path, 0o600)
            logger.info(f"STORE | generated master key path={self.key_path}")
            return Fernet(raw)
        except (ValueError, OSError) as e:
            logger.warning(f"STORE | master key unavailable, writes fall back to plaintext: {e}")
            return None

    @property
    def encrypted(self) -> bool:
        return self._fernet is not None

    # ── file I/O ───────────────────────────────────────────────────────

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    def _read_plain(self) -> dict[str, Any]:
        if not self.plain_path.exists():
            return {}
        with open(self.plain_path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _log_fallback(self, reason: str) -> None:
        if not self._fallback_logged:
            logger.warning(f"STORE | decryption failed ({reason}), reading plaintext store")
            self._fallback_logged = True

    def _load(self) -> dict[str, Any]:
        if self._fernet is not None and self.encrypted_path.exists():
            try:
                raw = self._fernet.decrypt(self.encrypted_path.read_bytes())
                return json.loads(raw.decode("utf-8"))
            except InvalidToken:
                self._log_fallback("invalid token")
            except (ValueError, OSError) as e:
                self._log_fallback(str(e))
        elif self._fernet is None and self.encrypted_path.exists():
            self._log_fallback("no master key")
        return self._read_plain()

    def _save(self, data: dict[str, Any]) -> None:
        payload = json.dumps(data, sort_keys=True).encode("utf-8")
        if self._fernet is not None:
            self._write_atomic(self.encrypted_path, self._fernet.encrypt(payload))
        else:
            self._write_atomic(self.plain_path, payload)

    # ── public API ─────────────────────────────────────────────────────

    def get(self, key: str, default: Any = None) -> Any:
        check_entry(key, None)
        with self._lock:
            return self._load().get(key, default)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._load())

    def put(self, key: str, value: Any) -> None:
        with self.edit() as e:
            e.put(key, value)

    def remove(self, key: str) -> None:
        with self.edit() as e:
            e.remove(key)

    @contextmanager
    def edit(self) -> Iterator[Editor]:
        """
        Atomic batch write. The store lock is held for the whole block, so
        values read through the editor cannot change underneath it.
        Nothing is written if the block raises.
        """
        with self._lock:
            current = self._load()
            editor = Editor(current)
            yield editor
            if not editor.pending:
                return
            for key, value in editor.pending.items():
                if value is None:
                    current.pop(key, None)
                else:
                    current[key] = value
            self._save(current)
