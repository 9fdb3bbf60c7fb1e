"""
Tests for media reference location and content extraction.
"""
from wapi_ingest.models.message import ContentType
from wapi_ingest.services.content import detect_content_type, extract_text
from wapi_ingest.services.locator import (
    ReferenceKind,
    is_encrypted_cdn_url,
    locate_media,
    locate_media_key,
)


class TestLocateMedia:
    """First non-empty candidate wins, container fields before generic ones."""

    def test_container_url_in_msg_content(self):
        payload = {
            "msgContent": {
                "imageMessage": {
                    "url": "https://mmg.whatsapp.net/v/t62/abc.enc",
                    "mimetype": "image/jpeg",
                    "mediaKey": "a2V5",
                    "caption": "look",
                }
            }
        }
        reference = locate_media(payload, ContentType.IMAGE, "m1")
        assert reference.kind is ReferenceKind.REMOTE_URL
        assert reference.value == "https://mmg.whatsapp.net/v/t62/abc.enc"
        assert reference.mime == "image/jpeg"
        assert locate_media_key(payload, ContentType.IMAGE) == "a2V5"

    def test_container_beats_generic_fields(self):
        payload = {
            "mediaUrl": "https://files.example/generic.jpg",
            "data": {"message": {"imageMessage": {"url": "https://files.example/specific.jpg"}}},
        }
        reference = locate_media(payload, ContentType.IMAGE, "m1")
        assert reference.value == "https://files.example/specific.jpg"

    def test_inline_base64_before_url_inside_container(self):
        payload = {"audio": {"base64": "T2dnUwAC", "url": "https://files.example/a.ogg"}}
        reference = locate_media(payload, ContentType.AUDIO, "m1")
        assert reference.kind is ReferenceKind.INLINE_DATA
        assert reference.value == "T2dnUwAC"

    def test_data_url_carries_its_mime(self):
        payload = {"sticker": "data:image/webp;base64,UklGRg=="}
        reference = locate_media(payload, ContentType.STICKER, "m1")
        assert reference.kind is ReferenceKind.INLINE_DATA
        assert reference.mime == "image/webp"

    def test_direct_path_uses_whatsapp_cdn(self):
        payload = {"message": {"videoMessage": {"directPath": "/v/t62.7161-24/clip.enc"}}}
        reference = locate_media(payload, ContentType.VIDEO, "m1")
        assert reference.value == "https://mmg.whatsapp.net/v/t62.7161-24/clip.enc"

    def test_document_with_caption_wrapper(self):
        payload = {
            "message": {
                "documentWithCaptionMessage": {
                    "message": {"documentMessage": {"url": "https://files.example/report.pdf",
                                                    "fileName": "report.pdf"}}
                }
            }
        }
        assert detect_content_type(payload) is ContentType.DOCUMENT
        assert locate_media(payload, ContentType.DOCUMENT, "m1").value == "https://files.example/report.pdf"
        assert extract_text(payload, ContentType.DOCUMENT) == "report.pdf"

    def test_generic_url_field(self):
        payload = {"type": "image", "url": "https://cdn.example/x.enc", "mediaKey": "a2V5"}
        reference = locate_media(payload, ContentType.IMAGE, "m1")
        assert reference.kind is ReferenceKind.REMOTE_URL
        assert locate_media_key(payload, ContentType.IMAGE) == "a2V5"

    def test_degenerates_to_fetch_by_id(self):
        payload = {"msgContent": {"imageMessage": {"caption": "no link here"}}}
        reference = locate_media(payload, ContentType.IMAGE, "3EB0FF")
        assert reference.kind is ReferenceKind.FETCH_BY_ID
        assert reference.value == "3EB0FF"

    def test_nothing_without_message_id(self):
        assert locate_media({"msgContent": {"imageMessage": {}}}, ContentType.IMAGE, None) is None

    def test_text_has_no_media(self):
        assert locate_media({"url": "https://files.example/x.jpg"}, ContentType.TEXT, "m1") is None


class TestEncryptedUrls:
    def test_whatsapp_hosts_and_enc_paths(self):
        assert is_encrypted_cdn_url("https://mmg.whatsapp.net/d/f/abc")
        assert is_encrypted_cdn_url("https://cdn.example/x.enc")
        assert not is_encrypted_cdn_url("https://files.example/x.jpg")


class TestContentExtraction:
    """Content type detection and text/caption extraction."""

    def test_text_variants(self):
        assert extract_text({"msgContent": {"conversation": "hi"}}, ContentType.TEXT) == "hi"
        assert extract_text({"message": {"extendedTextMessage": {"text": "hey"}}}, ContentType.TEXT) == "hey"
        assert extract_text({"text": {"message": "olá"}}, ContentType.TEXT) == "olá"
        assert extract_text({"body": "  body text  "}, ContentType.TEXT) == "body text"

    def test_empty_text(self):
        assert extract_text({"text": "   "}, ContentType.TEXT) is None

    def test_caption_from_container(self):
        payload = {"msgContent": {"imageMessage": {"caption": "sunset"}}}
        assert detect_content_type(payload) is ContentType.IMAGE
        assert extract_text(payload, ContentType.IMAGE) == "sunset"

    def test_declared_type_aliases(self):
        assert detect_content_type({"type": "ptt"}) is ContentType.AUDIO
        assert detect_content_type({"messageType": "stickerMessage"}) is ContentType.STICKER
        assert detect_content_type({"text": "hi"}) is ContentType.TEXT
