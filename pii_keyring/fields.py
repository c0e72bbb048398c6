"""
Field-level helpers for encrypting typed PII values into text tokens.

The associated data for a field is ``"<record_id>:<field>"``, so a token
cannot be moved to another record or another column of the same record.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Union

from .errors import SerializationError
from .keys import KeyManager
from .values import EncryptedValue

FieldValue = Union[str, int, float]


class PIIField(Enum):
    """Fields that contain PII."""

    SSN_LAST4 = "ssn_last4"
    DRIVERS_LICENSE = "drivers_license_number"
    CREDIT_SCORE = "credit_score"
    MONTHLY_INCOME = "monthly_income"
    DATE_OF_BIRTH = "date_of_birth"
    PHONE = "phone"
    EMAIL = "email"

    def __str__(self) -> str:
        return self.value


class FieldEncryptor:
    """Encrypts and decrypts typed PII field values through a KeyManager."""

    def __init__(self, key_manager: KeyManager) -> None:
        self._key_manager = key_manager

    @staticmethod
    def associated_data(record_id: object, field: PIIField) -> bytes:
        return f"{record_id}:{field.value}".encode("utf-8")

    def encrypt_field(
        self,
        field: PIIField,
        value: Optional[FieldValue],
        record_id: object,
    ) -> Optional[str]:
        """
        Encrypt a field value into a token under the primary version.

        None and empty strings are stored as None.

        Raises:
            TypeError: If the value type is not supported
            NoPrimaryKeyError: If no primary version is set
        """
        if value is None:
            return None
        if isinstance(value, bool):
            raise TypeError(f"unsupported type {type(value).__name__} for field {field}")
        if isinstance(value, str):
            if value == "":
                return None
            text = value
        elif isinstance(value, (int, float)):
            text = repr(value) if isinstance(value, float) else str(value)
        else:
            raise TypeError(f"unsupported type {type(value).__name__} for field {field}")

        encrypted = self._key_manager.encrypt(
            text.encode("utf-8"), self.associated_data(record_id, field)
        )
        return encrypted.to_token()

    def decrypt_field(
        self,
        field: PIIField,
        token: Optional[str],
        record_id: object,
    ) -> Optional[FieldValue]:
        """
        Decrypt a token and convert it back to the field's type.

        credit_score is returned as int, monthly_income as float, all other
        fields as str.

        Raises:
            SerializationError: If the token or decrypted text is malformed
            KeyNotFoundError: If the token's version is not registered
            AuthenticationFailedError: If the token was tampered with or
                belongs to another record or field
        """
        if not token:
            return None

        value = EncryptedValue.from_token(token)
        text = self._key_manager.decrypt(value, self.associated_data(record_id, field)).decode(
            "utf-8"
        )

        try:
            if field is PIIField.CREDIT_SCORE:
                return int(text)
            if field is PIIField.MONTHLY_INCOME:
                return float(text)
        except ValueError as e:
            raise SerializationError(f"Decrypted {field} is not numeric") from e
        return text

    def reencrypt_field(self, field: PIIField, token: str, record_id: object) -> str:
        """Rewrite a token under the current primary version."""
        value = EncryptedValue.from_token(token)
        return self._key_manager.reencrypt(
            value, self.associated_data(record_id, field)
        ).to_token()
