"""Decryption of client-encrypted provider API keys.

Clients encrypt keys with a shared passphrase in the OpenSSL "Salted__"
format (AES-256-CBC, key and IV derived with EVP_BytesToKey/MD5), which is
what browser CryptoJS produces for `AES.encrypt(text, passphrase)`.
"""

import base64
import hashlib
import logging
import os
from typing import Optional, Tuple

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

logger = logging.getLogger(__name__)

_MAGIC = b"Salted__"
_KEY_LEN = 32
_IV_LEN = 16


def _derive_key_iv(passphrase: bytes, salt: bytes) -> Tuple[bytes, bytes]:
    derived = b""
    block = b""
    while len(derived) < _KEY_LEN + _IV_LEN:
        block = hashlib.md5(block + passphrase + salt).digest()
        derived += block
    return derived[:_KEY_LEN], derived[_KEY_LEN:_KEY_LEN + _IV_LEN]


def encrypt_api_key(api_key: str, passphrase: str, salt: Optional[bytes] = None) -> str:
    if not api_key:
        return ""
    salt = salt or os.urandom(8)
    key, iv = _derive_key_iv(passphrase.encode("utf-8"), salt)
    padder = padding.PKCS7(128).padder()
    padded = padder.update(api_key.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return base64.b64encode(_MAGIC + salt + ciphertext).decode("ascii")


def decrypt_api_key(encrypted: str, passphrase: str) -> str:
    """Decrypt a key. Returns an empty string if decryption fails."""
    if not encrypted:
        return ""
    try:
        raw = base64.b64decode(encrypted, validate=True)
        if not raw.startswith(_MAGIC) or len(raw) <= 16:
            return ""
        salt, ciphertext = raw[8:16], raw[16:]
        key, iv = _derive_key_iv(passphrase.encode("utf-8"), salt)
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        return (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning("API key decryption failed: %s", type(e).__name__)
        return ""


def is_valid_decrypted_key(key: str) -> bool:
    """Rejects empty, too-short, or still-encrypted ("U2F...") keys."""
    if not key or len(key) < 10:
        return False
    if key.startswith("U2F"):
        logger.warning("Key appears to still be encrypted (double encryption)")
        return False
    return True
