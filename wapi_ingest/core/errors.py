"""
Exception hierarchy for the ingestion pipeline.

Media failures never abort an ingestion: the orchestrator catches
``MediaCacheError`` and stores the message without a media reference.
"""


class IngestError(Exception):
    """Base class for ingestion errors."""


class MediaCacheError(IngestError):
    """A media object could not be obtained or persisted."""


class MediaVerificationError(MediaCacheError):
    """The MAC trailing an encrypted media blob did not verify."""


class MediaDecryptionError(MediaCacheError):
    """The blob verified but could not be decrypted (bad length or padding)."""


class MediaDownloadError(MediaCacheError):
    """A remote media URL could not be fetched."""


class MediaStorageError(MediaCacheError):
    """Writing the media object to storage failed."""


class ProviderError(MediaCacheError):
    """The provider's download-by-message-id call produced no media."""
