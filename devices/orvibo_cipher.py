"""Orvibo B25 payload cipher.

Payloads are AES-128 in ECB mode with PKCS#7 padding. HELLO-phase traffic uses
the operator-supplied shared key (the "PK" key); everything after HELLO uses
the 16-character key the server hands the plug in its hello reply.
"""

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher
from cryptography.hazmat.primitives.ciphers.algorithms import AES128
from cryptography.hazmat.primitives.ciphers.modes import ECB

KEY_SIZE = 16
_BLOCK_BITS = 128


def _key_bytes(key) -> bytes:
    if isinstance(key, str):
        key = key.encode("ascii")
    if len(key) != KEY_SIZE:
        raise ValueError(f"Orvibo keys are {KEY_SIZE} bytes, got {len(key)}")
    return key


def encrypt(data: bytes, key) -> bytes:
    """Pad and encrypt a plaintext payload."""
    padder = padding.PKCS7(_BLOCK_BITS).padder()
    padded = padder.update(data) + padder.finalize()
    encryptor = Cipher(AES128(_key_bytes(key)), ECB()).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def decrypt(data: bytes, key) -> bytes:
    """Decrypt and unpad a payload. Raises ValueError on bad length or padding."""
    if not data or len(data) % KEY_SIZE:
        raise ValueError(f"Ciphertext length {len(data)} is not a multiple of {KEY_SIZE}")
    decryptor = Cipher(AES128(_key_bytes(key)), ECB()).decryptor()
    padded = decryptor.update(data) + decryptor.finalize()
    unpadder = padding.PKCS7(_BLOCK_BITS).unpadder()
    return unpadder.update(padded) + unpadder.finalize()
