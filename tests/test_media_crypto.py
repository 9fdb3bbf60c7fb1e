"""
Tests for WhatsApp media encryption and decryption.
"""
import base64
import hashlib
import hmac

import pytest

from tests.factories import JPEG_BYTES, MEDIA_KEY
from wapi_ingest.core.errors import MediaDecryptionError, MediaVerificationError
from wapi_ingest.services.media_crypto import (
    MAC_LENGTH,
    decrypt_media,
    derive_media_keys,
    encrypt_media,
)


class TestKeyDerivation:
    """HKDF expansion of the per-message media key."""

    def test_segments_have_expected_sizes(self):
        keys = derive_media_keys(MEDIA_KEY, "image")
        assert len(keys.iv) == 16
        assert len(keys.cipher_key) == 32
        assert len(keys.mac_key) == 32
        assert len(keys.ref_key) == 32

    def test_matches_rfc5869_with_zero_salt(self):
        """Independent HKDF computation with an explicit 32-byte zero salt."""
        prk = hmac.new(b"\x00" * 32, MEDIA_KEY, hashlib.sha256).digest()
        okm, block = b"", b""
        for counter in range(1, 5):
            block = hmac.new(prk, block + b"WhatsApp Audio Keys" + bytes([counter]), hashlib.sha256).digest()
            okm += block
        keys = derive_media_keys(MEDIA_KEY, "audio")
        assert keys.iv + keys.cipher_key + keys.mac_key + keys.ref_key == okm[:112]

    def test_image_and_sticker_share_a_label(self):
        assert derive_media_keys(MEDIA_KEY, "sticker") == derive_media_keys(MEDIA_KEY, "image")
        assert derive_media_keys(MEDIA_KEY, "video") != derive_media_keys(MEDIA_KEY, "image")

    def test_accepts_base64_key(self):
        encoded = base64.b64encode(MEDIA_KEY).decode("ascii")
        assert derive_media_keys(encoded, "document") == derive_media_keys(MEDIA_KEY, "document")

    def test_unknown_content_type(self):
        with pytest.raises(MediaDecryptionError):
            derive_media_keys(MEDIA_KEY, "text")


class TestDecryption:
    """MAC verification and AES-CBC decryption."""

    @pytest.mark.parametrize("content_type", ["image", "video", "audio", "document", "sticker"])
    def test_round_trip(self, content_type):
        blob = encrypt_media(JPEG_BYTES, MEDIA_KEY, content_type)
        assert decrypt_media(blob, MEDIA_KEY, content_type) == JPEG_BYTES

    def test_round_trip_block_aligned_plaintext(self):
        plaintext = b"\x00" * 64
        blob = encrypt_media(plaintext, MEDIA_KEY, "document")
        assert decrypt_media(blob, MEDIA_KEY, "document") == plaintext

    def test_flipped_ciphertext_byte_fails_verification(self):
        blob = bytearray(encrypt_media(JPEG_BYTES, MEDIA_KEY, "image"))
        blob[5] ^= 0x01
        with pytest.raises(MediaVerificationError):
            decrypt_media(bytes(blob), MEDIA_KEY, "image")

    def test_flipped_mac_byte_fails_verification(self):
        blob = bytearray(encrypt_media(JPEG_BYTES, MEDIA_KEY, "image"))
        blob[-MAC_LENGTH] ^= 0x80
        with pytest.raises(MediaVerificationError):
            decrypt_media(bytes(blob), MEDIA_KEY, "image")

    def test_wrong_label_fails_verification(self):
        blob = encrypt_media(JPEG_BYTES, MEDIA_KEY, "image")
        with pytest.raises(MediaVerificationError):
            decrypt_media(blob, MEDIA_KEY, "video")

    def test_too_short_blob(self):
        with pytest.raises(MediaDecryptionError):
            decrypt_media(b"\x00" * MAC_LENGTH, MEDIA_KEY, "image")

    def test_misaligned_ciphertext_with_valid_mac(self):
        """A MAC-valid blob whose ciphertext is not block aligned is a decryption error."""
        keys = derive_media_keys(MEDIA_KEY, "image")
        ciphertext = b"\x01" * 20
        mac = hmac.new(keys.mac_key, keys.iv + ciphertext, hashlib.sha256).digest()[:MAC_LENGTH]
        with pytest.raises(MediaDecryptionError):
            decrypt_media(ciphertext + mac, MEDIA_KEY, "image")
