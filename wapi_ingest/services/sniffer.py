"""
File type recovery from magic bytes, and MIME/extension resolution.
"""
import mimetypes
from typing import Optional, Tuple

SNIFF_BYTES = 64

MIME_BY_EXTENSION = {
    "jpg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "pdf": "application/pdf",
    "ogg": "audio/ogg",
    "mp3": "audio/mpeg",
    "m4a": "audio/mp4",
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "webm": "video/webm",
    "bin": "application/octet-stream",
}

# Declared MIME types that say nothing about the decrypted content
UNRELIABLE_MIMES = {
    "",
    "application/octet-stream",
    "binary/octet-stream",
    "application/encrypted",
    "application/x-binary",
}

EXTENSION_BY_MIME = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "audio/ogg": "ogg",
    "audio/opus": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/mp4": "m4a",
    "audio/m4a": "m4a",
    "audio/x-m4a": "m4a",
    "audio/aac": "aac",
    "audio/wav": "wav",
    "audio/wave": "wav",
    "audio/x-wav": "wav",
    "audio/amr": "amr",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
    "video/3gpp": "3gp",
    "application/pdf": "pdf",
}

DEFAULT_EXTENSIONS = {
    "image": "jpg",
    "sticker": "webp",
    "audio": "ogg",
    "video": "mp4",
    "document": "bin",
}


def sniff_extension(head: bytes) -> Optional[str]:
    """Best-guess extension from the leading bytes, or None."""
    head = head[:SNIFF_BYTES]
    if head.startswith(b"\xff\xd8\xff"):
        return "jpg"
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return "png"
    if head.startswith((b"GIF87a", b"GIF89a")):
        return "gif"
    if head.startswith(b"RIFF") and head[8:12] == b"WEBP":
        return "webp"
    if head.startswith(b"%PDF-"):
        return "pdf"
    if head.startswith(b"OggS"):
        return "ogg"
    if head.startswith(b"ID3") or (len(head) > 1 and head[0] == 0xFF and head[1] & 0xE6 == 0xE2):
        # ID3 tag, or a bare MPEG audio layer III frame header
        return "mp3"
    if head[4:8] == b"ftyp":
        brand = head[8:12]
        if brand == b"qt  ":
            return "mov"
        if brand in (b"M4A ", b"M4B "):
            return "m4a"
        return "mp4"
    return None


def clean_mime(mime: Optional[str]) -> str:
    """Lower-cased MIME without parameters ("audio/ogg; codecs=opus" -> "audio/ogg")."""
    if not mime:
        return ""
    return mime.split(";", 1)[0].strip().lower()


def is_reliable_mime(mime: Optional[str]) -> bool:
    return clean_mime(mime) not in UNRELIABLE_MIMES


def extension_for_mime(mime: Optional[str]) -> Optional[str]:
    """Extension for a declared MIME, or None when the subtype is not recognized."""
    mime = clean_mime(mime)
    if not mime:
        return None
    if mime in EXTENSION_BY_MIME:
        return EXTENSION_BY_MIME[mime]
    guessed = mimetypes.guess_extension(mime)
    return guessed.lstrip(".") if guessed else None


def resolve_type(declared_mime: Optional[str], head: bytes, content_type: str) -> Tuple[str, str]:
    """Pick (extension, mime) for stored media.

    Preference: a trustworthy declared MIME with a known extension, then the
    sniffed type, then the content type's default.
    """
    if is_reliable_mime(declared_mime):
        extension = extension_for_mime(declared_mime)
        if extension:
            return extension, clean_mime(declared_mime)

    extension = sniff_extension(head)
    if extension:
        return extension, MIME_BY_EXTENSION[extension]

    if is_reliable_mime(declared_mime):
        # Unknown but specific MIME (e.g. a docx): keep it, store as .bin
        return "bin", clean_mime(declared_mime)

    extension = DEFAULT_EXTENSIONS.get(content_type, "bin")
    return extension, MIME_BY_EXTENSION.get(extension, "application/octet-stream")
