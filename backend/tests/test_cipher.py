from __future__ import annotations

import pytest

from relay_web.cipher import CipherError, SettingsCipher, decrypt, encrypt
from relay_web.config import Settings

PRIMARY_SECRET = "primary-secret-key-0123456789abcdef"
OLD_SECRET = "previous-secret-key-0123456789abcdef"


def test_encrypt_then_decrypt_returns_plaintext() -> None:
    cipher = SettingsCipher({"2": PRIMARY_SECRET}, primary_version="2")

    for plaintext in ("a", "twilio-auth-token-value", "ünïcødé ✓", "x" * 1000):
        encrypted = cipher.encrypt(plaintext)
        assert encrypted.startswith("2$")
        assert plaintext not in encrypted
        assert cipher.decrypt(encrypted) == plaintext


def test_encrypt_uses_a_fresh_iv_each_time() -> None:
    cipher = SettingsCipher({"1": PRIMARY_SECRET}, primary_version="1")
    assert cipher.encrypt("same") != cipher.encrypt("same")


def test_untagged_values_are_read_with_primary_key() -> None:
    cipher = SettingsCipher({"1": PRIMARY_SECRET}, primary_version="1")
    _, body = cipher.split_version(cipher.encrypt("legacy-token"))

    assert cipher.decrypt(body) == "legacy-token"
    assert cipher.needs_rotation(body) is True


def test_previous_key_versions_stay_readable_and_need_rotation() -> None:
    old_cipher = SettingsCipher({"1": OLD_SECRET}, primary_version="1")
    stored = old_cipher.encrypt("rotating-token")

    cipher = SettingsCipher({"1": OLD_SECRET, "2": PRIMARY_SECRET}, primary_version="2")
    assert cipher.decrypt(stored) == "rotating-token"
    assert cipher.needs_rotation(stored) is True
    assert cipher.needs_rotation(cipher.encrypt("rotating-token")) is False


def test_decrypt_rejects_unknown_versions_and_corrupt_values() -> None:
    cipher = SettingsCipher({"1": PRIMARY_SECRET}, primary_version="1")
    good = cipher.encrypt("token")

    with pytest.raises(CipherError):
        cipher.decrypt("9$" + good.split("$", 1)[1])
    with pytest.raises(CipherError):
        cipher.decrypt("1$nothex")
    with pytest.raises(CipherError):
        cipher.decrypt("1$zz:zz")
    with pytest.raises(CipherError):
        cipher.decrypt("1$00:00")


def test_decrypt_with_wrong_key_never_recovers_plaintext() -> None:
    stored = SettingsCipher({"1": OLD_SECRET}, primary_version="1").encrypt("token-value-1234")
    other = SettingsCipher({"1": PRIMARY_SECRET}, primary_version="1")

    try:
        recovered = other.decrypt(stored)
    except CipherError:
        return
    assert recovered != "token-value-1234"


def test_short_secrets_are_rejected() -> None:
    with pytest.raises(CipherError):
        SettingsCipher({"1": "too-short"}, primary_version="1")
    with pytest.raises(CipherError):
        SettingsCipher({"1": PRIMARY_SECRET}, primary_version="2")


def test_module_helpers_use_settings_keys() -> None:
    settings = Settings(
        settings_encryption_key=PRIMARY_SECRET,
        settings_encryption_key_version="3",
        settings_encryption_previous_keys={"1": OLD_SECRET},
    )
    encrypted = encrypt("helper-token", settings)

    assert encrypted.startswith("3$")
    assert decrypt(encrypted, settings) == "helper-token"
