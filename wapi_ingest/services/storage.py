"""
Local object storage for cached media.

Objects are written in two phases: bytes are staged under a temporary name
in a directory beside the storage root, then renamed into place with
``os.replace`` once the final extension is known. A reader never sees a
partial file or one without its extension.
"""
import os
import secrets
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from wapi_ingest.core.errors import MediaStorageError
from wapi_ingest.core.logging import get_logger
from wapi_ingest.services.sniffer import SNIFF_BYTES

logger = get_logger(__name__)

PUBLIC_PREFIX = "uploads"


@dataclass
class StagedObject:
    path: Path
    size: int
    head: bytes


class LocalObjectStorage:
    """Filesystem-backed media objects exposed under ``<public_base_url>/uploads/``."""

    def __init__(self, root: Path, public_base_url: str):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        # Sibling of the root so staged files are never reachable through the static mount
        self.staging = self.root.parent / f".{self.root.name}.partial"

    def ensure_dirs(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            self.staging.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise MediaStorageError(f"cannot create media directory {self.root}: {e}") from e

    def is_writable(self) -> bool:
        try:
            self.ensure_dirs()
        except MediaStorageError:
            return False
        return os.access(self.root, os.W_OK) and os.access(self.staging, os.W_OK)

    def stage(self, data: bytes) -> StagedObject:
        return self.stage_stream([data])

    def stage_stream(self, chunks: Iterable[bytes], max_bytes: int = 0) -> StagedObject:
        """Write chunks to a temporary file; ``max_bytes`` > 0 caps the total size."""
        self.ensure_dirs()
        fd, name = tempfile.mkstemp(dir=self.staging, suffix=".part")
        path = Path(name)
        size = 0
        head = b""
        try:
            with os.fdopen(fd, "wb") as handle:
                for chunk in chunks:
                    if not chunk:
                        continue
                    size += len(chunk)
                    if max_bytes and size > max_bytes:
                        raise MediaStorageError(f"media exceeds {max_bytes} bytes")
                    if len(head) < SNIFF_BYTES:
                        head += chunk[:SNIFF_BYTES - len(head)]
                    handle.write(chunk)
        except OSError as e:
            self._unlink(path)
            raise MediaStorageError(f"failed to stage media: {e}") from e
        except Exception:
            self._unlink(path)
            raise
        return StagedObject(path=path, size=size, head=head)

    def commit(self, staged: StagedObject, extension: str) -> str:
        """Atomically move a staged object to its final name; returns the public reference."""
        name = f"{int(time.time() * 1000)}-{secrets.token_hex(8)}.{extension.lstrip('.') or 'bin'}"
        try:
            os.replace(staged.path, self.root / name)
        except OSError as e:
            self._unlink(staged.path)
            raise MediaStorageError(f"failed to store media object: {e}") from e

        logger.debug(
            "Media object stored",
            extra={"extra_data": {"object": name, "size": staged.size}}
        )
        return self.public_reference(name)

    def discard(self, staged: StagedObject) -> None:
        self._unlink(staged.path)

    def write_object(self, data: bytes, extension_hint: str) -> str:
        return self.commit(self.stage(data), extension_hint)

    def public_reference(self, name: str) -> str:
        return f"{self.public_base_url}/{PUBLIC_PREFIX}/{name}"

    def path_for(self, reference: str) -> Path:
        """Local path behind a public reference produced by this storage."""
        return self.root / reference.rsplit("/", 1)[-1]

    def _unlink(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove staged media {path}: {e}")
