"""Encryption Service"""

import base64
import binascii
import hashlib
import hmac
import json
import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
import structlog

from compliance_pipeline.exceptions import (
    DecryptionError,
    EncryptionError,
    SignatureVerificationError,
    SigningKeyMissingError,
)
from compliance_pipeline.models.audit import SignedPayload

logger = structlog.get_logger()

ENVELOPE_VERSION = "v1"
KEY_LENGTH = 32
SALT_LENGTH = 16
IV_LENGTH = 12
PBKDF2_ITERATIONS = 100_000

# Audit attributes encrypted individually before persistence
SENSITIVE_FIELDS = [
    "patient_identifier",
    "ip_address",
    "metadata",
    "old_values",
    "new_values",
    "stack_trace",
]


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _unb64(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


class FieldEncryptor:
    """
    AES-256-GCM field encryption

    Every value gets its own random salt and IV. The AES key is derived
    with PBKDF2-HMAC-SHA512 from the master key and that salt, and the salt
    is bound to the ciphertext as additional authenticated data.

    Envelope format: ``v1:<key_id>:<salt>:<iv>:<ciphertext+tag>`` with
    base64 parts. Older master keys stay available for decryption after
    :meth:`rotate_key`.
    """

    def __init__(
        self,
        master_key: Optional[bytes] = None,
        key_id: str = "default-key",
        iterations: int = PBKDF2_ITERATIONS
    ):
        self.keys: Dict[str, bytes] = {}
        self.active_key_id: Optional[str] = None
        self.iterations = iterations
        if master_key is not None:
            self._add_key(key_id, master_key)
            self.active_key_id = key_id

    @property
    def configured(self) -> bool:
        return self.active_key_id is not None

    def _add_key(self, key_id: str, master_key: bytes) -> None:
        if ":" in key_id:
            raise ValueError("key_id must not contain ':'")
        if len(master_key) != KEY_LENGTH:
            raise ValueError(f"Master key must be {KEY_LENGTH} bytes")
        self.keys[key_id] = master_key

    def _derive_key(self, master_key: bytes, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(master_key)

    def encrypt_bytes(self, plaintext: bytes) -> str:
        """Encrypt raw bytes into an envelope string"""
        if not self.configured:
            raise EncryptionError("Encryption requested but no encryption key is configured")
        try:
            salt = os.urandom(SALT_LENGTH)
            iv = os.urandom(IV_LENGTH)
            key = self._derive_key(self.keys[self.active_key_id], salt)
            ciphertext = AESGCM(key).encrypt(iv, plaintext, salt)
        except Exception as e:
            logger.error("encryption_failed", key_id=self.active_key_id, error_type=type(e).__name__)
            raise EncryptionError("Field encryption failed") from e

        return ":".join([
            ENVELOPE_VERSION,
            self.active_key_id,
            _b64(salt),
            _b64(iv),
            _b64(ciphertext),
        ])

    def decrypt_bytes(self, envelope: str) -> bytes:
        """Decrypt an envelope string; fails closed on any mismatch"""
        parts = envelope.split(":") if isinstance(envelope, str) else []
        if len(parts) != 5 or parts[0] != ENVELOPE_VERSION:
            raise DecryptionError("Malformed encryption envelope")

        _, key_id, salt_b64, iv_b64, ciphertext_b64 = parts
        master_key = self.keys.get(key_id)
        if master_key is None:
            raise DecryptionError(f"Unknown encryption key: {key_id}")

        try:
            salt = _unb64(salt_b64)
            iv = _unb64(iv_b64)
            ciphertext = _unb64(ciphertext_b64)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError("Malformed encryption envelope") from e

        try:
            key = self._derive_key(master_key, salt)
            return AESGCM(key).decrypt(iv, ciphertext, salt)
        except InvalidTag as e:
            logger.warning("decryption_failed", key_id=key_id, reason="authentication_tag_mismatch")
            raise DecryptionError("Ciphertext failed authentication") from e
        except ValueError as e:
            raise DecryptionError("Malformed encryption envelope") from e

    def encrypt(self, plaintext: str) -> str:
        return self.encrypt_bytes(plaintext.encode("utf-8"))

    def decrypt(self, envelope: str) -> str:
        try:
            return self.decrypt_bytes(envelope).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted value is not valid UTF-8") from e

    @staticmethod
    def is_encrypted(value: Any) -> bool:
        return isinstance(value, str) and value.startswith(ENVELOPE_VERSION + ":")

    def encrypt_fields(
        self,
        record: Dict[str, Any],
        fields: Iterable[str] = SENSITIVE_FIELDS
    ) -> Tuple[Dict[str, Any], List[str]]:
        """
        Encrypt the given top-level fields of a record

        Values are JSON encoded first so decryption restores their type.
        None values are left alone.

        Returns:
            Tuple of (encrypted_record, encrypted_field_names)
        """
        encrypted = dict(record)
        encrypted_fields = []
        for field in fields:
            value = record.get(field)
            if value is None:
                continue
            encrypted[field] = self.encrypt(json.dumps(value, sort_keys=True, default=str))
            encrypted_fields.append(field)

        logger.debug(
            "fields_encrypted",
            fields=encrypted_fields,
            key_id=self.active_key_id
        )
        return encrypted, encrypted_fields

    def decrypt_fields(self, record: Dict[str, Any], fields: Iterable[str]) -> Dict[str, Any]:
        """Reverse :meth:`encrypt_fields`; raises DecryptionError on any failure"""
        decrypted = dict(record)
        for field in fields:
            value = record.get(field)
            if value is None:
                continue
            try:
                decrypted[field] = json.loads(self.decrypt(value))
            except json.JSONDecodeError as e:
                raise DecryptionError(f"Decrypted field is not valid JSON: {field}") from e
        return decrypted

    def rotate_key(self, new_master_key: Optional[bytes] = None) -> Dict[str, Any]:
        """
        Activate a new master key

        Previous keys are kept for decrypting existing envelopes.
        """
        old_key_id = self.active_key_id
        new_key_id = f"key-{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S%f')}"
        self._add_key(new_key_id, new_master_key or os.urandom(KEY_LENGTH))
        self.active_key_id = new_key_id

        logger.info(
            "key_rotated",
            old_key_id=old_key_id,
            new_key_id=new_key_id
        )

        return {
            "old_key_id": old_key_id,
            "new_key_id": new_key_id,
            "rotated_at": datetime.now(timezone.utc).isoformat(),
        }

    def list_keys(self) -> List[Dict[str, Any]]:
        """List available encryption keys"""
        return [
            {
                "key_id": key_id,
                "active": key_id == self.active_key_id,
                "algorithm": "AES-256-GCM"
            }
            for key_id in self.keys.keys()
        ]


class AuditSigner:
    """
    HMAC-SHA512 signing over ``data|timestamp``

    Without a signing key every call fails with SigningKeyMissingError,
    unless signing is explicitly disabled. Disabled mode returns payloads
    unsigned and is weaker than the default.
    """

    def __init__(self, signing_key: Optional[bytes] = None, disabled: bool = False):
        self._key = signing_key
        self.disabled = disabled
        if disabled and signing_key is None:
            logger.warning("signing_disabled", detail="audit payloads will not be signed")

    @property
    def configured(self) -> bool:
        return self._key is not None

    def _compute(self, data: str, timestamp: str) -> str:
        message = f"{data}|{timestamp}".encode("utf-8")
        return hmac.new(self._key, message, hashlib.sha512).hexdigest()

    def sign_data(self, data: str, timestamp: Optional[str] = None) -> SignedPayload:
        timestamp = timestamp or datetime.now(timezone.utc).isoformat()
        if self._key is None:
            if self.disabled:
                return SignedPayload(data=data, signature=None, timestamp=timestamp)
            raise SigningKeyMissingError("Signing requested but no signing key is configured")
        return SignedPayload(data=data, signature=self._compute(data, timestamp), timestamp=timestamp)

    def verify_signature(self, payload: SignedPayload) -> bool:
        """Recompute the HMAC and compare in constant time"""
        if self._key is None:
            if self.disabled and payload.signature is None:
                return True
            raise SigningKeyMissingError("Cannot verify signature without a signing key")
        if not payload.signature:
            return False
        expected = self._compute(payload.data, payload.timestamp)
        return hmac.compare_digest(expected, payload.signature)

    def require_valid(self, payload: SignedPayload) -> None:
        if not self.verify_signature(payload):
            logger.warning("signature_verification_failed", timestamp=payload.timestamp)
            raise SignatureVerificationError("Signature does not match payload")
