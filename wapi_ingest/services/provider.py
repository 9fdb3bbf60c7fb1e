"""
W-API gateway client: authenticated media download by message id.

WhatsApp CDN URLs require the per-message media key; when the webhook does
not carry one the gateway can return the decrypted media itself. Response
shapes vary between gateway versions, so several request forms are tried and
the JSON body is searched for base64 data or a fresh URL.
"""
import base64
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from wapi_ingest.core.errors import ProviderError
from wapi_ingest.core.logging import get_logger
from wapi_ingest.services.locator import MediaReference, ReferenceKind, is_remote_url
from wapi_ingest.services.sniffer import clean_mime

logger = get_logger(__name__)

DOWNLOAD_PATH = "/message/download-media"
MAX_SEARCH_DEPTH = 4

MIME_KEYS = ("mimetype", "mimeType", "type", "contentType")
BASE64_KEYS = ("base64", "b64", "fileBase64", "mediaBase64", "data", "file", "buffer", "content")
URL_KEYS = ("url", "mediaUrl", "fileUrl", "downloadUrl", "link")


@dataclass(frozen=True)
class ProviderMedia:
    """Media returned by the gateway: either a data URL or a fresh download URL."""
    data_url: Optional[str] = None
    url: Optional[str] = None
    mime: Optional[str] = None

    def to_reference(self) -> MediaReference:
        if self.data_url:
            return MediaReference(ReferenceKind.INLINE_DATA, self.data_url, self.mime)
        return MediaReference(ReferenceKind.REMOTE_URL, self.url, self.mime)


def _walk(node: Any, depth: int, visit: Callable[[Dict[str, Any]], bool]) -> bool:
    if not isinstance(node, dict) or depth > MAX_SEARCH_DEPTH:
        return False
    if visit(node):
        return True
    return any(_walk(value, depth + 1, visit) for value in node.values() if isinstance(value, dict))


def _find_string(roots: List[Dict[str, Any]], keys: Tuple[str, ...],
                 accept: Callable[[str], bool] = lambda value: True) -> Optional[str]:
    found: List[str] = []

    def visit(node: Dict[str, Any]) -> bool:
        for key in keys:
            value = node.get(key)
            if isinstance(value, str) and value.strip() and accept(value.strip()):
                found.append(value.strip())
                return True
        return False

    for root in roots:
        if _walk(root, 0, visit):
            return found[0]
    return None


def parse_media_response(data: Any) -> Optional[ProviderMedia]:
    """Extract base64 data or a URL from a download-media JSON body."""
    if not isinstance(data, dict):
        return None
    roots = [data] + [data[key] for key in ("data", "result") if isinstance(data.get(key), dict)]

    mime = _find_string(roots, MIME_KEYS, accept=lambda value: "/" in value)
    raw = _find_string(roots, BASE64_KEYS, accept=lambda value: not is_remote_url(value))
    if raw:
        data_url = raw if raw.startswith("data:") else f"data:{mime or 'application/octet-stream'};base64,{raw}"
        return ProviderMedia(data_url=data_url, mime=mime)

    url = _find_string(roots, URL_KEYS, accept=is_remote_url)
    if url:
        return ProviderMedia(url=url, mime=mime)
    return None


class ProviderClient:
    """Thin client for the gateway's REST API."""

    def __init__(self, base_url: str, http: httpx.Client):
        self.base_url = base_url.rstrip("/")
        self.http = http

    def _attempts(self, instance_id: str, message_id: str):
        url = f"{self.base_url}{DOWNLOAD_PATH}"
        return [
            ("GET messageId", "GET", url, {"instanceId": instance_id, "messageId": message_id}, None),
            ("GET id", "GET", url, {"instanceId": instance_id, "id": message_id}, None),
            ("POST messageId", "POST", url, {"instanceId": instance_id}, {"messageId": message_id}),
        ]

    def download_media_by_message_id(self, instance_id: str, token: Optional[str], message_id: str) -> ProviderMedia:
        """Ask the gateway for a message's media.

        Raises:
            ProviderError: every request form failed or returned no media
        """
        headers = {"Authorization": f"Bearer {token}"} if token else {}

        for label, method, url, params, body in self._attempts(instance_id, message_id):
            try:
                response = self.http.request(method, url, params=params, json=body, headers=headers)
            except httpx.HTTPError as e:
                logger.warning(
                    "Provider media download attempt failed",
                    extra={"extra_data": {"attempt": label, "message_id": message_id, "error": str(e)}}
                )
                continue

            if response.status_code >= 400:
                logger.warning(
                    "Provider media download rejected",
                    extra={"extra_data": {
                        "attempt": label,
                        "message_id": message_id,
                        "status_code": response.status_code,
                        "body": response.text[:300],
                    }}
                )
                continue

            content_type = clean_mime(response.headers.get("content-type"))
            if content_type == "application/json":
                try:
                    media = parse_media_response(response.json())
                except ValueError:
                    media = None
                if media is None:
                    raise ProviderError(f"no media data in provider response for {message_id}")
                return media

            mime = content_type or "application/octet-stream"
            logger.info(
                "Provider returned binary media",
                extra={"extra_data": {"message_id": message_id, "size": len(response.content), "mime": mime}}
            )
            encoded = base64.b64encode(response.content).decode("ascii")
            return ProviderMedia(data_url=f"data:{mime};base64,{encoded}", mime=mime)

        raise ProviderError(f"all download-media attempts failed for {message_id}")
