"""
WhatsApp end-to-end media encryption.

Media on the WhatsApp CDN is AES-256-CBC encrypted under keys expanded from a
32-byte per-message ``mediaKey``:

    expanded = HKDF-SHA256(mediaKey, salt=32 zero bytes, info=<type label>, 112 bytes)
    iv = expanded[0:16], cipher_key = expanded[16:48],
    mac_key = expanded[48:80], ref_key = expanded[80:112] (unused here)

The blob is ``ciphertext || mac`` where ``mac`` is the first 10 bytes of
HMAC-SHA256(mac_key, iv || ciphertext).
"""
import base64
import binascii
import hashlib
import hmac
from typing import NamedTuple, Union

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from wapi_ingest.core.errors import MediaDecryptionError, MediaVerificationError


EXPANDED_KEY_LENGTH = 112
MAC_LENGTH = 10
BLOCK_SIZE = 16

MEDIA_KEY_LABELS = {
    "image": b"WhatsApp Image Keys",
    "sticker": b"WhatsApp Image Keys",
    "video": b"WhatsApp Video Keys",
    "audio": b"WhatsApp Audio Keys",
    "document": b"WhatsApp Document Keys",
}


class MediaKeys(NamedTuple):
    iv: bytes
    cipher_key: bytes
    mac_key: bytes
    ref_key: bytes


def coerce_media_key(media_key: Union[bytes, str]) -> bytes:
    """Accept raw key bytes or the base64 string carried in webhook payloads."""
    if isinstance(media_key, bytes):
        return media_key
    try:
        return base64.b64decode(media_key.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise MediaDecryptionError(f"media key is not valid base64: {e}") from e


def label_for(content_type: str) -> bytes:
    try:
        return MEDIA_KEY_LABELS[content_type]
    except KeyError:
        raise MediaDecryptionError(f"no media key label for content type {content_type!r}") from None


def derive_media_keys(media_key: Union[bytes, str], content_type: str) -> MediaKeys:
    """Expand a media key into IV, cipher key, MAC key and ref key."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=EXPANDED_KEY_LENGTH,
        salt=None,  # RFC 5869: absent salt is HashLen zero bytes
        info=label_for(content_type),
    )
    expanded = hkdf.derive(coerce_media_key(media_key))
    return MediaKeys(
        iv=expanded[:16],
        cipher_key=expanded[16:48],
        mac_key=expanded[48:80],
        ref_key=expanded[80:112],
    )


def _mac(keys: MediaKeys, ciphertext: bytes) -> bytes:
    return hmac.new(keys.mac_key, keys.iv + ciphertext, hashlib.sha256).digest()[:MAC_LENGTH]


def decrypt_media(blob: bytes, media_key: Union[bytes, str], content_type: str) -> bytes:
    """Verify and decrypt an encrypted media blob.

    Raises:
        MediaVerificationError: the trailing MAC does not match; nothing is decrypted
        MediaDecryptionError: the blob is malformed or the padding is invalid
    """
    if len(blob) <= MAC_LENGTH:
        raise MediaDecryptionError(f"encrypted blob too short ({len(blob)} bytes)")

    keys = derive_media_keys(media_key, content_type)
    ciphertext, mac = blob[:-MAC_LENGTH], blob[-MAC_LENGTH:]

    if not hmac.compare_digest(_mac(keys, ciphertext), mac):
        raise MediaVerificationError("media MAC verification failed")

    if len(ciphertext) % BLOCK_SIZE:
        raise MediaDecryptionError(f"ciphertext length {len(ciphertext)} is not a multiple of {BLOCK_SIZE}")

    decryptor = Cipher(algorithms.AES(keys.cipher_key), modes.CBC(keys.iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise MediaDecryptionError(f"invalid padding: {e}") from e


def encrypt_media(plaintext: bytes, media_key: Union[bytes, str], content_type: str) -> bytes:
    """Inverse of ``decrypt_media``: returns ``ciphertext || mac``."""
    keys = derive_media_keys(media_key, content_type)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()

    encryptor = Cipher(algorithms.AES(keys.cipher_key), modes.CBC(keys.iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return ciphertext + _mac(keys, ciphertext)
