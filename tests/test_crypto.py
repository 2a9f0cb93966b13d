import secrets

import pytest

from homestead.service.crypto import SecretCipher, SecretDecryptError


def test_encrypt_produces_iv_and_ciphertext_hex():
    cipher = SecretCipher(secrets.token_hex(32))
    token = cipher.encrypt("JBSWY3DPEHPK3PXP")
    nonce_hex, sealed_hex = token.split(":")
    assert len(bytes.fromhex(nonce_hex)) == 12
    assert bytes.fromhex(sealed_hex)
    assert "JBSWY3DPEHPK3PXP" not in token
    assert cipher.decrypt(token) == "JBSWY3DPEHPK3PXP"


def test_same_plaintext_encrypts_differently():
    cipher = SecretCipher(secrets.token_hex(32))
    assert cipher.encrypt("value") != cipher.encrypt("value")


def test_operator_supplied_non_hex_key_is_accepted():
    cipher = SecretCipher("a passphrase an operator typed")
    assert cipher.decrypt(cipher.encrypt("imap-password")) == "imap-password"


def test_wrong_key_fails_authentication():
    token = SecretCipher(secrets.token_hex(32)).encrypt("value")
    with pytest.raises(SecretDecryptError):
        SecretCipher(secrets.token_hex(32)).decrypt(token)


@pytest.mark.parametrize("token", ["", "nocolon", "zz:zz", "00:00", "0011:"])
def test_malformed_ciphertext(token):
    with pytest.raises(SecretDecryptError):
        SecretCipher(secrets.token_hex(32)).decrypt(token)


def test_empty_key_rejected():
    with pytest.raises(ValueError):
        SecretCipher("")
