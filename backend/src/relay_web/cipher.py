"""AES-256-CBC encryption for provider credentials stored in ``app_settings``.

Ciphertexts are ``<version>$<hex iv>:<hex ciphertext>``. Values written before
key versioning existed carry no ``<version>$`` prefix and are read with the
primary key.
"""

from __future__ import annotations

import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .config import Settings

KEY_BYTES = 32
IV_BYTES = 16
_VERSION_SEPARATOR = "$"


class CipherError(ValueError):
    pass


def _derive_key(secret: str) -> bytes:
    key = secret.encode("utf-8")[:KEY_BYTES]
    if len(key) != KEY_BYTES:
        raise CipherError(f"encryption secret must be at least {KEY_BYTES} bytes")
    return key


class SettingsCipher:
    def __init__(self, keys: dict[str, str], *, primary_version: str) -> None:
        if primary_version not in keys:
            raise CipherError(f"primary key version {primary_version!r} is not configured")
        self._keys = {version: _derive_key(secret) for version, secret in keys.items()}
        self.primary_version = primary_version

    @classmethod
    def from_settings(cls, settings: Settings) -> SettingsCipher:
        return cls(settings.encryption_keys(), primary_version=settings.settings_encryption_key_version)

    def encrypt(self, text: str) -> str:
        iv = os.urandom(IV_BYTES)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(text.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._keys[self.primary_version]), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return f"{self.primary_version}{_VERSION_SEPARATOR}{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, value: str) -> str:
        version, body = self.split_version(value)
        key = self._keys.get(version)
        if key is None:
            raise CipherError(f"unknown key version {version!r}")
        iv_hex, sep, ciphertext_hex = body.partition(":")
        if not sep:
            raise CipherError("ciphertext is missing the iv separator")
        try:
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
        except ValueError as exc:
            raise CipherError("ciphertext is not valid hex") from exc
        if len(iv) != IV_BYTES or not ciphertext or len(ciphertext) % IV_BYTES:
            raise CipherError("ciphertext has an invalid length")

        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        try:
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except ValueError as exc:
            # Bad padding is what a wrong or rotated-away key looks like.
            raise CipherError("ciphertext could not be decrypted with the configured key") from exc

    def split_version(self, value: str) -> tuple[str, str]:
        version, sep, body = value.partition(_VERSION_SEPARATOR)
        if not sep:
            return self.primary_version, value
        return version, body

    def needs_rotation(self, value: str) -> bool:
        version, _ = self.split_version(value)
        return _VERSION_SEPARATOR not in value or version != self.primary_version


def encrypt(text: str, settings: Settings) -> str:
    return SettingsCipher.from_settings(settings).encrypt(text)


def decrypt(text: str, settings: Settings) -> str:
    return SettingsCipher.from_settings(settings).decrypt(text)
