"""AES-GCM encryption gateway for journal records at rest.

Every record payload is sealed with AES-256-GCM before it reaches SQLite.
The gateway only sees opaque bytes; it knows nothing about the entry schema.
Only the record id and timestamp stay in plaintext (for ordering/paging).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
from collections import OrderedDict
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16
NONCE_MEMORY = 100_000
PBKDF2_ITERATIONS = 390_000


class EncryptionError(Exception):
    """Raised when encryption/decryption cannot be performed."""


class AuthenticationFailure(EncryptionError):
    """Raised when a sealed payload fails its integrity check.

    Never accompanied by partial plaintext.
    """


@dataclass(frozen=True)
class SealedPayload:
    """Ciphertext plus the nonce and authentication tag needed to open it."""

    ciphertext: bytes
    nonce: bytes
    tag: bytes


def _coerce_key(key: bytes | str) -> bytes:
    if isinstance(key, str):
        if not key.strip():
            raise EncryptionError("Encryption key must not be empty")
        try:
            raw = base64.urlsafe_b64decode(key.strip().encode("ascii"))
        except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
            raise EncryptionError(f"Invalid encryption key: {exc}") from exc
    elif isinstance(key, (bytes, bytearray)):
        raw = bytes(key)
    else:
        raise EncryptionError(f"Invalid encryption key type: {type(key).__name__}")

    if not raw:
        raise EncryptionError("Encryption key must not be empty")
    if len(raw) != KEY_LENGTH:
        raise EncryptionError(
            f"Invalid encryption key: expected {KEY_LENGTH} bytes, got {len(raw)}"
        )
    return raw


class EncryptionGateway:
    """Authenticated encryption of opaque byte payloads (AES-256-GCM).

    The key is held privately and never exposed. Nonces are random 96-bit
    values; the gateway remembers the most recent ``nonce_memory`` nonces it
    has issued or opened so a reused nonce is refused instead of silently
    accepted.

    Usage::

        gateway = EncryptionGateway(EncryptionGateway.generate_key())
        sealed = gateway.encrypt(b"payload", associated_data=b"rec-1:3")
        plaintext = gateway.decrypt(
            sealed.ciphertext, sealed.nonce, sealed.tag, associated_data=b"rec-1:3"
        )
    """

    def __init__(self, key: bytes | str, *, nonce_memory: int = NONCE_MEMORY) -> None:
        """Initialize with a 32-byte key.

        Args:
            key: Raw 32 bytes, or URL-safe base64 text decoding to 32 bytes
                (see :meth:`generate_key`).
            nonce_memory: How many recent nonces to remember for reuse
                detection; the least recently used are forgotten first.

        Raises:
            EncryptionError: If the key is empty or not exactly 32 bytes, or
                ``nonce_memory`` is below 1.
        """
        self._aead = AESGCM(_coerce_key(key))
        if nonce_memory < 1:
            raise EncryptionError("nonce_memory must be at least 1")
        self._nonce_memory = nonce_memory
        # nonce -> digest of the ciphertext it sealed, least recently used first
        self._seen_nonces: OrderedDict[bytes, bytes] = OrderedDict()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(key=<redacted>)"

    def encrypt(self, plaintext: bytes, *, associated_data: bytes = b"") -> SealedPayload:
        """Seal a non-empty byte payload.

        Args:
            plaintext: Bytes to encrypt. Must not be empty.
            associated_data: Authenticated but unencrypted context (e.g. the
                record id and schema version). Must be supplied again on decrypt.

        Returns:
            The sealed payload (ciphertext, nonce, tag).

        Raises:
            EncryptionError: If the plaintext is empty or not bytes.
        """
        if not isinstance(plaintext, (bytes, bytearray)):
            raise EncryptionError("Plaintext must be bytes")
        if not plaintext:
            raise EncryptionError("Plaintext must not be empty")

        nonce = os.urandom(NONCE_LENGTH)
        while nonce in self._seen_nonces:
            nonce = os.urandom(NONCE_LENGTH)

        try:
            sealed = self._aead.encrypt(nonce, bytes(plaintext), associated_data or None)
        except Exception as exc:
            raise EncryptionError(f"Encryption failed: {exc}") from exc

        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        self._remember(nonce, _digest(ciphertext, tag))
        return SealedPayload(ciphertext=ciphertext, nonce=nonce, tag=tag)

    def decrypt(
        self,
        ciphertext: bytes,
        nonce: bytes,
        tag: bytes,
        *,
        associated_data: bytes = b"",
    ) -> bytes:
        """Open a sealed payload, failing closed on any integrity problem.

        Raises:
            AuthenticationFailure: On tag mismatch, truncated nonce/tag, wrong
                key, wrong associated data, or a nonce previously seen with a
                different ciphertext.
        """
        if len(nonce) != NONCE_LENGTH:
            raise AuthenticationFailure("Decryption failed: truncated or malformed nonce")
        if len(tag) != TAG_LENGTH:
            raise AuthenticationFailure("Decryption failed: truncated or malformed tag")
        if not ciphertext:
            raise AuthenticationFailure("Decryption failed: empty ciphertext")

        digest = _digest(ciphertext, tag)
        previous = self._seen_nonces.get(bytes(nonce))
        if previous is not None and previous != digest:
            raise AuthenticationFailure("Decryption failed: nonce reuse detected")

        try:
            plaintext = self._aead.decrypt(
                bytes(nonce), bytes(ciphertext) + bytes(tag), associated_data or None
            )
        except InvalidTag as exc:
            raise AuthenticationFailure(
                "Decryption failed: authentication tag mismatch or wrong key"
            ) from exc

        self._remember(bytes(nonce), digest)
        return plaintext

    def _remember(self, nonce: bytes, digest: bytes) -> None:
        self._seen_nonces[nonce] = digest
        self._seen_nonces.move_to_end(nonce)
        while len(self._seen_nonces) > self._nonce_memory:
            self._seen_nonces.popitem(last=False)

    @staticmethod
    def generate_key() -> str:
        """Generate a new random key.

        Returns:
            URL-safe base64 text encoding 32 random bytes.
        """
        return base64.urlsafe_b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")

    @staticmethod
    def derive_key(passphrase: str, salt: bytes, *, iterations: int = PBKDF2_ITERATIONS) -> str:
        """Derive a key from a user passphrase (PBKDF2-HMAC-SHA256).

        Storing the salt and the passphrase policy is the caller's job.
        """
        if not passphrase:
            raise EncryptionError("Passphrase must not be empty")
        if len(salt) < 16:
            raise EncryptionError("Salt must be at least 16 bytes")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=iterations,
        )
        return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8"))).decode("ascii")


def _digest(ciphertext: bytes, tag: bytes) -> bytes:
    return hashlib.sha256(bytes(ciphertext) + bytes(tag)).digest()
