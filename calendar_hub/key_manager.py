from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from cryptography.fernet import Fernet, InvalidToken

from calendar_hub.errors import KeyRotationError
from calendar_hub.state_store import StateStore


logger = logging.getLogger(__name__)


class KeyManager:
    """Process-wide Fernet key, loaded or generated on first use.

    Construct once at startup and pass it to whatever needs to encrypt or
    decrypt. ``rotate`` holds the same lock as every read of the key.
    """

    def __init__(self, key_path: str | os.PathLike[str]) -> None:
        self.key_path = Path(key_path)
        self._lock = threading.RLock()
        self._fernet: Fernet | None = None
        self._key: bytes | None = None

    def _load_or_create(self) -> Fernet:
        if self._fernet is not None:
            return self._fernet
        if self.key_path.exists():
            key = self.key_path.read_bytes().strip()
        else:
            key = Fernet.generate_key()
            self._write_key(key)
            logger.info("Generated credential key at %s", self.key_path)
        self._key = key
        self._fernet = Fernet(key)
        return self._fernet

    def _write_key(self, key: bytes) -> None:
        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.key_path.with_suffix(self.key_path.suffix + ".tmp")
        tmp_path.write_bytes(key)
        os.chmod(tmp_path, 0o600)
        tmp_path.replace(self.key_path)

    def fingerprint(self) -> str:
        with self._lock:
            self._load_or_create()
            return hashlib.sha256(self._key or b"").hexdigest()[:16]

    def encrypt(self, payload: dict[str, Any]) -> str:
        cleaned = {key: value for key, value in (payload or {}).items() if str(value or "").strip()}
        if not cleaned:
            return ""
        data = json.dumps(cleaned, sort_keys=True).encode("utf-8")
        with self._lock:
            return self._load_or_create().encrypt(data).decode("ascii")

    def decrypt(self, token: str | None) -> dict[str, Any]:
        if not token:
            return {}
        with self._lock:
            fernet = self._load_or_create()
            try:
                data = fernet.decrypt(token.encode("ascii"))
            except (InvalidToken, ValueError):
                logger.warning("Could not decrypt stored credentials; treating them as empty")
                return {}
        loaded = json.loads(data.decode("utf-8"))
        return loaded if isinstance(loaded, dict) else {}

    @contextmanager
    def reading(self) -> Iterator[None]:
        """Hold the key steady while a stored blob is read and used."""
        with self._lock:
            yield

    def rotate(self, store: StateStore) -> int:
        """Re-encrypt every stored credential blob under a fresh key.

        Rows are rewritten in one transaction; the new key is written to disk
        only after that commits. On failure the old key stays in effect.
        """
        with self._lock:
            old = self._load_or_create()
            new_key = Fernet.generate_key()
            new = Fernet(new_key)

            def reencrypt(token: str) -> str:
                return new.encrypt(old.decrypt(token.encode("ascii"))).decode("ascii")

            try:
                count = store.rewrite_credentials(reencrypt)
            except (InvalidToken, ValueError) as exc:
                raise KeyRotationError(f"Credential key rotation failed: {exc}") from exc
            try:
                self._write_key(new_key)
            except OSError as exc:
                # Rows are already under the new key; put them back before giving up.
                store.rewrite_credentials(lambda token: old.encrypt(new.decrypt(token.encode("ascii"))).decode("ascii"))
                raise KeyRotationError(f"Could not persist rotated key: {exc}") from exc
            self._key = new_key
            self._fernet = new
            logger.info("Rotated credential key, re-encrypted %s sources", count)
            return count


class CredentialStore:
    """Secret store over the encrypted ``credentials`` column of each source."""

    def __init__(self, state_store: StateStore, key_manager: KeyManager) -> None:
        self.state_store = state_store
        self.key_manager = key_manager

    def get(self, source_id: int) -> dict[str, Any]:
        with self.key_manager.reading():
            return self.key_manager.decrypt(self.state_store.get_source_credentials(source_id))

    def set(self, source_id: int, credentials: dict[str, Any] | None) -> None:
        with self.key_manager.reading():
            self.state_store.set_source_credentials(source_id, self.key_manager.encrypt(credentials or {}))
