"""Field-level encryption for sensitive record attributes.

Two ciphertext formats coexist in stored data:

- v2 (written by default): ``"enc:" + urlsafe_b64(0x02 || nonce || ct || tag)``
  using AES-256-GCM with a fresh 12-byte nonce per value and a key derived
  from the provisioned key material with HKDF-SHA256.
- legacy: lowercase hex of AES-256-CBC/PKCS7 under the provisioned key and a
  fixed IV, both space-padded and truncated to 32 and 16 bytes. Always
  readable; only written when explicitly configured.

Rows written before encryption was introduced hold plaintext. decrypt()
returns such values unchanged, so callers never need to know which
representation a row uses.

This module uses the `cryptography` library (pyca/cryptography).
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import re
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import ciphers, hashes, padding
from cryptography.hazmat.primitives.ciphers import algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from recordgate.core.config import CipherWriteFormat
from recordgate.services.errors import CryptoError

if TYPE_CHECKING:
    from recordgate.core.config import CipherSettings

logger = logging.getLogger(__name__)

V2_PREFIX = "enc:"
V2_VERSION = 0x02
KEY_SIZE_BYTES = 32
LEGACY_IV_SIZE_BYTES = 16
GCM_NONCE_SIZE_BYTES = 12
GCM_TAG_SIZE_BYTES = 16
AES_BLOCK_HEX_CHARS = 32
HKDF_INFO = b"recordgate-field-v2"

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


def _fit(raw: str, size: int) -> bytes:
    """Space-pad and truncate key material to an exact byte length."""
    return raw.encode("utf-8").ljust(size, b" ")[:size]


class Cipher:
    """Symmetric cipher for sensitive string fields.

    Stateless apart from the key material provisioned at construction, so
    one instance is shared by the whole process.

    Example:
        cipher = Cipher(settings.cipher)
        stored = cipher.encrypt("Type 2 diabetes")
        cipher.decrypt(stored)  # "Type 2 diabetes"
        cipher.decrypt("written before encryption")  # returned unchanged
    """

    def __init__(self, settings: CipherSettings) -> None:
        """Provision key material.

        Args:
            settings: Key material, legacy IV and write format.

        Raises:
            ValueError: If legacy writes are configured without a legacy IV.
        """
        raw_key = settings.key.get_secret_value()
        raw_iv = settings.legacy_iv.get_secret_value()

        self._legacy_key = _fit(raw_key, KEY_SIZE_BYTES)
        self._legacy_iv = _fit(raw_iv, LEGACY_IV_SIZE_BYTES) if raw_iv else None
        self._aead = AESGCM(
            HKDF(
                algorithm=hashes.SHA256(),
                length=KEY_SIZE_BYTES,
                salt=None,
                info=HKDF_INFO,
            ).derive(raw_key.encode("utf-8"))
        )
        self._write_format = settings.write_format
        self._placeholder = settings.unavailable_placeholder

        if self._write_format == CipherWriteFormat.LEGACY and self._legacy_iv is None:
            msg = "Legacy write format requires a legacy IV"
            raise ValueError(msg)

    @property
    def placeholder(self) -> str:
        """Value returned for ciphertext that cannot be decrypted."""
        return self._placeholder

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def encrypt(self, plaintext: str | None) -> str | None:
        """Encrypt a string in the configured write format.

        Empty and None values are returned unchanged.
        """
        if not plaintext:
            return plaintext
        data = plaintext.encode("utf-8")
        if self._write_format == CipherWriteFormat.LEGACY:
            return self._encrypt_legacy(data)
        return self._encrypt_v2(data)

    def decrypt(self, value: str | None) -> str | None:
        """Decrypt a stored value.

        Values that do not look like ciphertext are legacy plaintext and are
        returned unchanged. Ciphertext that fails to decrypt yields the
        placeholder; this method never raises.
        """
        if not value or not self.looks_encrypted(value):
            return value
        try:
            return self._decrypt(value)
        except CryptoError as e:
            logger.warning(
                "Field decryption failed: %s (length=%d)",
                e.message,
                len(value),
            )
            return self._placeholder

    def looks_encrypted(self, value: Any) -> bool:
        """Check whether a stored value is in one of the ciphertext formats."""
        if not isinstance(value, str) or not value:
            return False
        if value.startswith(V2_PREFIX):
            return self._decode_v2(value) is not None
        return (
            len(value) >= AES_BLOCK_HEX_CHARS
            and len(value) % AES_BLOCK_HEX_CHARS == 0
            and _HEX_RE.match(value) is not None
        )

    def is_ciphertext(self, value: Any) -> bool:
        """Check whether a value is ciphertext that decrypts under this key.

        Stricter than looks_encrypted: a hex string that merely has the shape
        of a legacy blob is plaintext unless its padding checks out.
        """
        if not self.looks_encrypted(value):
            return False
        try:
            self._decrypt(value)
        except CryptoError:
            return False
        return True

    def encrypt_fields(self, payload: Mapping[str, Any], fields: Iterable[str]) -> dict[str, Any]:
        """Return a copy of payload with the named fields encrypted.

        Non-string values are JSON-serialized first. Missing and empty values
        are left alone, as are values that already decrypt under this key.
        """
        result = dict(payload)
        for name in fields:
            value = result.get(name)
            if value is None or value == "" or self.is_ciphertext(value):
                continue
            if not isinstance(value, str):
                value = json.dumps(value, sort_keys=True, default=str)
            result[name] = self.encrypt(value)
        return result

    def decrypt_fields(self, payload: Mapping[str, Any], fields: Iterable[str]) -> dict[str, Any]:
        """Return a copy of payload with the named fields decrypted.

        Decrypted JSON objects and arrays are parsed back; anything else
        stays a string.
        """
        result = dict(payload)
        for name in fields:
            value = result.get(name)
            if not isinstance(value, str) or not self.looks_encrypted(value):
                continue
            plaintext = self.decrypt(value)
            result[name] = _maybe_json(plaintext) if plaintext != self._placeholder else plaintext
        return result

    # -------------------------------------------------------------------------
    # Formats
    # -------------------------------------------------------------------------

    def _decrypt(self, value: str) -> str:
        if value.startswith(V2_PREFIX):
            return self._decrypt_v2(value)
        return self._decrypt_legacy(value)

    def _encrypt_v2(self, data: bytes) -> str:
        nonce = os.urandom(GCM_NONCE_SIZE_BYTES)
        blob = bytes([V2_VERSION]) + nonce + self._aead.encrypt(nonce, data, None)
        return V2_PREFIX + base64.urlsafe_b64encode(blob).decode("ascii")

    def _decode_v2(self, value: str) -> bytes | None:
        try:
            blob = base64.b64decode(value[len(V2_PREFIX) :], altchars=b"-_", validate=True)
        except (binascii.Error, ValueError):
            return None
        if len(blob) < 1 + GCM_NONCE_SIZE_BYTES + GCM_TAG_SIZE_BYTES or blob[0] != V2_VERSION:
            return None
        return blob

    def _decrypt_v2(self, value: str) -> str:
        blob = self._decode_v2(value)
        if blob is None:
            raise CryptoError("Malformed v2 ciphertext")
        nonce = blob[1 : 1 + GCM_NONCE_SIZE_BYTES]
        try:
            data = self._aead.decrypt(nonce, blob[1 + GCM_NONCE_SIZE_BYTES :], None)
        except InvalidTag as e:
            raise CryptoError("Authentication tag mismatch") from e
        return _utf8(data)

    def _encrypt_legacy(self, data: bytes) -> str:
        padder = padding.PKCS7(128).padder()
        padded = padder.update(data) + padder.finalize()
        encryptor = self._legacy_cipher().encryptor()
        return (encryptor.update(padded) + encryptor.finalize()).hex()

    def _decrypt_legacy(self, value: str) -> str:
        if self._legacy_iv is None:
            raise CryptoError("Legacy ciphertext found but no legacy IV is provisioned")
        decryptor = self._legacy_cipher().decryptor()
        padded = decryptor.update(bytes.fromhex(value)) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        try:
            data = unpadder.update(padded) + unpadder.finalize()
        except ValueError as e:
            raise CryptoError("Invalid padding in legacy ciphertext") from e
        return _utf8(data)

    def _legacy_cipher(self) -> ciphers.Cipher:
        return ciphers.Cipher(
            algorithms.AES(self._legacy_key),
            modes.CBC(self._legacy_iv),
        )


def _utf8(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CryptoError("Decrypted bytes are not valid UTF-8") from e


def _maybe_json(text: str | None) -> Any:
    if not text or text[0] not in "{[":
        return text
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text
