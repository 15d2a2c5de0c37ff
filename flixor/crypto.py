"""Key derivation and the per-user credential cipher."""

from __future__ import annotations

import base64
import re
import uuid

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from flixor.errors import CredentialInvalid
from flixor.secret_store import SecretStore

ENVELOPE_MARKER = "enc"
ENVELOPE_VERSION = "v1"
ENVELOPE_PREFIX = f"{ENVELOPE_MARKER}:{ENVELOPE_VERSION}:"

_KDF_SALT = b"flixor-gateway"

_ENVELOPE_RE = re.compile(rf"^{ENVELOPE_MARKER}:v\d+:")


def derive_key(secret: bytes, purpose: str, context: bytes = b"", length: int = 32) -> bytes:
    """Derive a purpose-bound key from the process secret with HKDF-SHA256."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=_KDF_SALT,
        info=purpose.encode() + b"\x00" + context,
    )
    return hkdf.derive(secret)


class CredentialCipher:
    """Encrypt/decrypt upstream tokens with a Fernet key derived per user.

    No per-user key is stored anywhere: the key is recomputed from the
    process secret and the user id, so a ciphertext copied onto another
    user's row does not decrypt.
    """

    def __init__(self, secret_store: SecretStore) -> None:
        self._secret_store = secret_store

    def _fernet(self, user_id: uuid.UUID | str) -> Fernet:
        key = derive_key(
            self._secret_store.get_secret(), "user-credential", str(user_id).encode()
        )
        return Fernet(base64.urlsafe_b64encode(key))

    @staticmethod
    def is_encrypted(value: object) -> bool:
        """True for envelopes produced by ``encrypt``; never raises."""
        return isinstance(value, str) and _ENVELOPE_RE.match(value) is not None

    def encrypt(self, user_id: uuid.UUID | str, plaintext: str) -> str:
        token = self._fernet(user_id).encrypt(plaintext.encode()).decode()
        return ENVELOPE_PREFIX + token

    def decrypt(self, user_id: uuid.UUID | str, envelope: str) -> str:
        """Open an envelope.

        Raises:
            CredentialInvalid: If the value is not an envelope, uses an unknown
                version, or was sealed for another user or under another secret.
        """
        if not self.is_encrypted(envelope):
            raise CredentialInvalid("value is not an encrypted envelope")
        parts = envelope.split(":", 2)
        if len(parts) != 3:
            raise CredentialInvalid("truncated credential envelope")
        _, version, token = parts
        if version != ENVELOPE_VERSION:
            raise CredentialInvalid(f"unsupported envelope version {version!r}")
        try:
            return self._fernet(user_id).decrypt(token.encode()).decode()
        except (InvalidToken, ValueError) as e:
            raise CredentialInvalid("credential envelope failed to decrypt") from e
