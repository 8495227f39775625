"""Save message media to disk while the provider reference is still valid."""

from __future__ import annotations

import logging
import mimetypes
import re
from pathlib import Path
from typing import Protocol

from config import settings
from services.errors import CollaboratorError
from services.messaging import MessagingClient
from services.storage import Storage

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "audio/ogg": ".ogg",
    "video/mp4": ".mp4",
    "application/pdf": ".pdf",
}
_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


class MediaDownloader(Protocol):
    def download_media(self, reference: str) -> bytes: ...


class MediaArchiver:
    """Download media for newly stored messages into ``<root>/<instance>/``."""

    def __init__(self, downloader: MediaDownloader, root: str | Path, storage: Storage | None = None) -> None:
        self._downloader = downloader
        self._root = Path(root)
        self._storage = storage

    @classmethod
    def from_settings(cls, storage: Storage | None = None) -> "MediaArchiver | None":
        """Build an archiver from ``messaging.media_dir``; None when downloads are disabled."""
        if not settings.messaging.media_dir:
            return None
        return cls(MessagingClient(), settings.messaging.media_dir, storage)

    def archive(self, instance_id: str, message_id: str, mimetype: str | None = None) -> str | None:
        """Fetch and save one message's media, returning the file path.

        Failures are logged and return None; an expired reference cannot be
        recovered later, so there is nothing to retry.
        """
        folder = self._root / _UNSAFE.sub("_", instance_id)
        file_path = folder / f"{_UNSAFE.sub('_', message_id)}{_extension(mimetype)}"
        try:
            if not file_path.exists():
                content = self._downloader.download_media(message_id)
                folder.mkdir(parents=True, exist_ok=True)
                file_path.write_bytes(content)
                logger.info("Saved media for %s (%d bytes)", message_id, len(content))
            if self._storage is not None:
                self._storage.set_media_path(message_id, instance_id, str(file_path))
        except CollaboratorError as exc:
            if exc.retryable:
                logger.error("Media download for %s failed: %s", message_id, exc)
            else:
                logger.warning("Media for %s is unavailable: %s", message_id, exc)
            return None
        except OSError:
            logger.exception("Could not save media for %s", message_id)
            return None
        return str(file_path)


def _extension(mimetype: str | None) -> str:
    if not mimetype:
        return ".bin"
    base = mimetype.split(";", 1)[0].strip().lower()
    return _EXTENSIONS.get(base) or mimetypes.guess_extension(base) or ".bin"
