"""
Media caching: turn a located media reference into a durable local object.
"""
import base64
import binascii
from dataclasses import dataclass
from typing import Optional

import httpx

from wapi_ingest.core.errors import MediaCacheError, MediaDownloadError, MediaStorageError, ProviderError
from wapi_ingest.core.logging import get_logger
from wapi_ingest.services.locator import MediaReference, ReferenceKind, is_encrypted_cdn_url, parse_data_url
from wapi_ingest.services.media_crypto import decrypt_media
from wapi_ingest.services.provider import ProviderClient
from wapi_ingest.services.sniffer import is_reliable_mime, resolve_type
from wapi_ingest.services.storage import LocalObjectStorage, StagedObject

logger = get_logger(__name__)

CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class MediaRequest:
    provider_message_id: str
    reference: MediaReference
    content_type: str
    declared_mime: Optional[str] = None
    instance_id: Optional[str] = None
    token: Optional[str] = None
    media_key: Optional[str] = None


@dataclass(frozen=True)
class CachedMedia:
    reference: str
    mime: str
    size: int


class MediaCache:
    """Obtains plaintext media bytes and persists them to object storage.

    Order of preference:
      (a) encrypted CDN URL with a media key: download, decrypt, sniff, persist
      (b) encrypted CDN URL without a key, or no reference at all: ask the
          gateway to download by message id, then continue with its result
      (c) inline data: decode and persist
      (d) plain URL: stream download (bounded redirects) and persist
    """

    def __init__(self, storage: LocalObjectStorage, provider: ProviderClient, http: httpx.Client,
                 max_bytes: int = 0):
        self.storage = storage
        self.provider = provider
        self.http = http
        self.max_bytes = max_bytes

    def cache(self, request: MediaRequest) -> CachedMedia:
        """Resolve ``request`` to a stored object.

        Raises:
            MediaCacheError: any subclass, when no object could be stored
        """
        return self._cache(request, request.reference, allow_provider=True)

    def _cache(self, request: MediaRequest, reference: MediaReference, allow_provider: bool) -> CachedMedia:
        if reference.kind is ReferenceKind.FETCH_BY_ID:
            return self._via_provider(request)

        if reference.kind is ReferenceKind.INLINE_DATA:
            return self._from_inline(request, reference)

        if is_encrypted_cdn_url(reference.value):
            if request.media_key:
                return self._from_encrypted(request, reference)
            if not allow_provider:
                raise ProviderError(f"provider returned an encrypted URL for {request.provider_message_id}")
            return self._via_provider(request)

        return self._from_url(request, reference)

    def _via_provider(self, request: MediaRequest) -> CachedMedia:
        if not request.instance_id:
            raise ProviderError("connection has no provider instance id")
        media = self.provider.download_media_by_message_id(
            request.instance_id, request.token, request.provider_message_id
        )
        logger.info(
            "Provider media located",
            extra={"extra_data": {
                "message_id": request.provider_message_id,
                "kind": "inline-data" if media.data_url else "remote-url",
            }}
        )
        return self._cache(request, media.to_reference(), allow_provider=False)

    def _from_encrypted(self, request: MediaRequest, reference: MediaReference) -> CachedMedia:
        blob = self._download_bytes(reference.value)
        plaintext = decrypt_media(blob, request.media_key, request.content_type)
        # The CDN serves ciphertext, so only the payload's own MIME describes the content
        return self._persist(self.storage.stage(plaintext), request.declared_mime or reference.mime, request)

    def _from_inline(self, request: MediaRequest, reference: MediaReference) -> CachedMedia:
        value = reference.value.strip()
        mime = parse_data_url(value) or reference.mime
        if value.startswith("data:"):
            value = value.split("base64,", 1)[-1]
        compact = "".join(value.split())
        compact += "=" * (-len(compact) % 4)
        urlsafe = "-" in compact or "_" in compact
        try:
            data = base64.b64decode(compact, altchars=b"-_" if urlsafe else None)
        except (binascii.Error, ValueError) as e:
            raise MediaCacheError(f"inline media is not valid base64: {e}") from e
        if not data:
            raise MediaCacheError("inline media is empty")
        if self.max_bytes and len(data) > self.max_bytes:
            raise MediaStorageError(f"media exceeds {self.max_bytes} bytes")
        return self._persist(self.storage.stage(data), request.declared_mime or mime, request)

    def _from_url(self, request: MediaRequest, reference: MediaReference) -> CachedMedia:
        try:
            with self.http.stream("GET", reference.value) as response:
                response.raise_for_status()
                staged = self.storage.stage_stream(response.iter_bytes(CHUNK_SIZE), max_bytes=self.max_bytes)
                served_mime = response.headers.get("content-type")
        except httpx.HTTPError as e:
            raise MediaDownloadError(f"download failed for {reference.value}: {e}") from e

        declared = request.declared_mime or reference.mime
        if not is_reliable_mime(declared) and is_reliable_mime(served_mime):
            declared = served_mime
        return self._persist(staged, declared, request)

    def _download_bytes(self, url: str) -> bytes:
        try:
            response = self.http.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise MediaDownloadError(f"download failed for {url}: {e}") from e
        if self.max_bytes and len(response.content) > self.max_bytes:
            raise MediaDownloadError(f"media exceeds {self.max_bytes} bytes")
        return response.content

    def _persist(self, staged: StagedObject, declared_mime: Optional[str], request: MediaRequest) -> CachedMedia:
        if staged.size == 0:
            self.storage.discard(staged)
            raise MediaDownloadError(f"empty media body for {request.provider_message_id}")

        extension, mime = resolve_type(declared_mime, staged.head, request.content_type)
        reference = self.storage.commit(staged, extension)
        logger.info(
            "Media cached",
            extra={"extra_data": {
                "message_id": request.provider_message_id,
                "mime": mime,
                "size": staged.size,
            }}
        )
        return CachedMedia(reference=reference, mime=mime, size=staged.size)
