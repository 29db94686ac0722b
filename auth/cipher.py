"""
auth/cipher.py -- AES-256-GCM envelope encryption for provider tokens at rest.

Envelope format:
  v1:<base64(iv[12] || tag[16] || ciphertext)>

Every value written by encrypt() carries the "v1:" tag. Rows written before
the tag existed hold the bare base64 form; decrypt() still reads those through
a heuristic (base64 alphabet and at least 29 decoded bytes) and anything that
fails the heuristic is treated as legacy plaintext.

Key rotation:
  ENCRYPTION_KEY is the active key: every encrypt() uses it, every decrypt()
  tries it first. ENCRYPTION_KEY_PREVIOUS is only ever tried for decryption,
  so the active key can be promoted without re-encrypting every row at once.
  needs_reencryption() flags rows that should be rewritten under the active key.

Fail-open decryption [E2]:
  When neither key authenticates a value, decrypt() logs a warning and returns
  the input unchanged instead of raising. Stored rows stay readable when a key
  is missing, at the cost of not distinguishing "wrong key" from "already
  plaintext". Tightening this changes behaviour for stored data and needs an
  explicit decision, not a drive-by fix.

Disabled mode:
  With no active key configured, encrypt() and decrypt() are pass-through.

SecretCipher holds only immutable key material and is safe to share between
threads.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.config import Settings

logger = logging.getLogger("keygate.auth.cipher")

IV_LENGTH = 12
TAG_LENGTH = 16
ENVELOPE_PREFIX = "v1:"

_LEGACY_MIN_LENGTH = IV_LENGTH + TAG_LENGTH + 1
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+=*$")


def generate_key() -> str:
    """Return a fresh 256-bit key as 64 hex characters (ENCRYPTION_KEY format)."""
    return secrets.token_hex(32)


class SecretCipher:
    """Encrypt/decrypt opaque secrets with an active and an optional previous key.

    Usage:
        cipher = SecretCipher.from_settings(get_settings())
        stored = cipher.encrypt("provider-access-token")
        cipher.decrypt(stored)  # "provider-access-token"
    """

    def __init__(self, active_key: bytes | None = None, previous_key: bytes | None = None) -> None:
        for key in (active_key, previous_key):
            if key is not None and len(key) != 32:
                raise ValueError("Encryption keys must be 32 bytes.")
        self._active = AESGCM(active_key) if active_key else None
        self._previous = AESGCM(previous_key) if previous_key else None

    @classmethod
    def from_settings(cls, settings: Settings) -> SecretCipher:
        active = bytes.fromhex(settings.encryption_key) if settings.encryption_key else None
        previous = bytes.fromhex(settings.encryption_key_previous) if settings.encryption_key_previous else None
        if active and previous:
            logger.info("Key rotation enabled with previous key")
        return cls(active, previous)

    @property
    def enabled(self) -> bool:
        return self._active is not None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: str) -> str:
        """Return a v1 envelope for plaintext, or plaintext itself when disabled."""
        if self._active is None:
            return plaintext
        iv = secrets.token_bytes(IV_LENGTH)
        sealed = self._active.encrypt(iv, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag; the envelope stores it ahead of the ciphertext.
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return ENVELOPE_PREFIX + base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decrypt(self, value: str) -> str:
        """Return the plaintext for value. Never raises on bad input [E2]."""
        if self._active is None:
            return value
        blob, _tagged = _parse_envelope(value)
        if blob is None:
            return value
        for key in (self._active, self._previous):
            if key is None:
                continue
            plaintext = _open(blob, key)
            if plaintext is not None:
                return plaintext
        logger.warning("Decryption failed with every configured key, returning input unchanged")
        return value

    def needs_reencryption(self, value: str) -> bool:
        """Return True when value should be rewritten under the active key.

        True for legacy plaintext, for untagged legacy envelopes that a
        configured key opens, and for v1 envelopes that only the previous key
        opens. False when encryption is disabled, when the active key already
        opens a v1 envelope, or when no configured key opens the envelope at
        all, tagged or not. Rewriting that would wrap the unreadable
        ciphertext and lose it for good.
        """
        if self._active is None:
            return False
        blob, tagged = _parse_envelope(value)
        if blob is None:
            return True
        if _open(blob, self._active) is not None:
            return not tagged
        return self._previous is not None and _open(blob, self._previous) is not None

    def reencrypt(self, value: str) -> str:
        """Decrypt with whichever key works and encrypt again under the active key."""
        return self.encrypt(self.decrypt(value))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _parse_envelope(value: str) -> tuple[bytes | None, bool]:
    """Return (raw envelope bytes, is_tagged), or (None, False) for plaintext."""
    if value.startswith(ENVELOPE_PREFIX):
        try:
            blob = base64.b64decode(value[len(ENVELOPE_PREFIX) :], validate=True)
        except (binascii.Error, ValueError):
            return None, False
        if len(blob) < IV_LENGTH + TAG_LENGTH:
            return None, False
        return blob, True

    # Legacy heuristic: base64 alphabet and long enough to hold iv + tag + 1 byte.
    if not _BASE64_RE.match(value):
        return None, False
    try:
        blob = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return None, False
    if len(blob) < _LEGACY_MIN_LENGTH:
        return None, False
    return blob, False


def _open(blob: bytes, key: AESGCM) -> str | None:
    iv = blob[:IV_LENGTH]
    tag = blob[IV_LENGTH : IV_LENGTH + TAG_LENGTH]
    ciphertext = blob[IV_LENGTH + TAG_LENGTH :]
    try:
        return key.decrypt(iv, ciphertext + tag, None).decode("utf-8")
    except (InvalidTag, UnicodeDecodeError):
        return None
