"""Process secret bootstrap.

The gateway signs session cookies and bearer tokens, and derives every
per-user credential key, from one secret. Resolution order:

1. an explicit override (``SESSION_SECRET``),
2. the persisted secret file under the config directory,
3. a freshly generated value, written atomically with owner-only
   permissions.

If the file cannot be written the store keeps a volatile in-memory value
and flags itself as degraded. Everything issued during such a run becomes
invalid at the next restart, so the condition is logged at critical level
and reported by ``/health``.
"""

from __future__ import annotations

import os
import secrets
import tempfile
import threading
import time
from pathlib import Path

import structlog

logger = structlog.get_logger()

SECRET_BYTES = 64

_EXCLUSIVE_WAIT_ROUNDS = 20
_EXCLUSIVE_WAIT_SECONDS = 0.05

SOURCE_OVERRIDE = "override"
SOURCE_PERSISTED = "persisted"
SOURCE_GENERATED = "generated"
SOURCE_VOLATILE = "volatile"


def _decode(raw: bytes | str) -> bytes:
    """Secrets are stored as hex; anything else is taken as raw bytes."""
    if isinstance(raw, str):
        raw = raw.encode()
    raw = raw.strip()
    try:
        return bytes.fromhex(raw.decode("ascii"))
    except ValueError:
        return raw


class SecretStore:
    """Produce and memoize the single process-wide secret."""

    def __init__(self, path: Path | str, override: str = "") -> None:
        self.path = Path(path)
        self._override = override
        self._lock = threading.Lock()
        self._secret: bytes | None = None
        self.source: str | None = None
        self.degraded = False

    def get_secret(self) -> bytes:
        """Return the secret, bootstrapping it on first use."""
        secret = self._secret
        if secret is not None:
            return secret
        with self._lock:
            if self._secret is None:
                self._secret, self.source = self._bootstrap()
            return self._secret

    def _bootstrap(self) -> tuple[bytes, str]:
        if self._override:
            logger.info("secret_loaded", source=SOURCE_OVERRIDE)
            return _decode(self._override), SOURCE_OVERRIDE

        try:
            existing = self._read_existing()
        except OSError as e:
            # Present but unreadable: never overwrite a secret we could not see.
            return self._volatile(e)
        if existing is not None:
            logger.info("secret_loaded", source=SOURCE_PERSISTED, path=str(self.path))
            return existing, SOURCE_PERSISTED

        return self._generate()

    def _read_existing(self) -> bytes | None:
        """Return the persisted secret, or None when the file is absent or empty."""
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return None
        if not raw.strip():
            logger.warning("secret_file_empty", path=str(self.path))
            return None
        return _decode(raw)

    def _volatile(self, error: OSError) -> tuple[bytes, str]:
        self.degraded = True
        logger.critical(
            "secret_store_degraded",
            path=str(self.path),
            error=str(error),
            consequence="sessions and stored credentials issued now will not survive a restart",
        )
        return secrets.token_bytes(SECRET_BYTES), SOURCE_VOLATILE

    def _generate(self) -> tuple[bytes, str]:
        value = secrets.token_bytes(SECRET_BYTES)
        try:
            winner = self._persist(value)
        except OSError as e:
            return self._volatile(e)

        if winner != value:
            # Another process created the file between our read and our write.
            logger.info("secret_loaded", source=SOURCE_PERSISTED, path=str(self.path))
            return winner, SOURCE_PERSISTED

        logger.info("secret_generated", path=str(self.path), bytes=SECRET_BYTES)
        return value, SOURCE_GENERATED

    def _persist(self, value: bytes) -> bytes:
        """Atomically create the secret file and return the value it holds.

        The value is written to a temp file in the same directory and then
        hard-linked into place, which fails if the target already exists.
        An existing empty file is replaced instead. Filesystems without hard
        links (SMB shares, some FUSE and NAS volumes) fall back to an
        exclusive create of the target.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".secret-", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(value.hex())
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp_name, 0o600)
            try:
                os.link(tmp_name, self.path)
            except FileExistsError:
                existing = self._read_existing()
                if existing is not None:
                    return existing
                os.replace(tmp_name, self.path)
            except OSError as e:
                logger.info("secret_link_unsupported", path=str(self.path), error=str(e))
                return self._create_exclusive(value, tmp_name)
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
        return value

    def _create_exclusive(self, value: bytes, tmp_name: str) -> bytes:
        """Create the secret file with ``O_EXCL``; if another process won, use its value."""
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            # The winner may still be writing; give it a moment before
            # treating an empty file as abandoned.
            for _ in range(_EXCLUSIVE_WAIT_ROUNDS):
                existing = self._read_existing()
                if existing is not None:
                    return existing
                time.sleep(_EXCLUSIVE_WAIT_SECONDS)
            os.replace(tmp_name, self.path)
            return value
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(value.hex())
            fh.flush()
            os.fsync(fh.fileno())
        return value

    def status(self) -> dict:
        """Non-secret description of where the secret came from."""
        return {
            "source": SOURCE_VOLATILE if self.degraded else (self.source or "uninitialized"),
            "degraded": self.degraded,
            "path": str(self.path),
        }
