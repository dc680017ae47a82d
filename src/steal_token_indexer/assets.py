"""Staged asset handling for token images.

Images are uploaded to a staging area before the CREATE transaction lands.
A confirmed CREATE promotes the staged file to permanent storage; an upload
that is never confirmed gets discarded by the reconciler.
"""

from __future__ import annotations

import logging
from typing import Protocol
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


def extract_cid(image_url: str | None) -> str | None:
    """Return the content id of an image URL (its last path segment)."""
    if not image_url:
        return None
    path = urlparse(image_url).path if "://" in image_url else image_url
    cid = path.rstrip("/").rsplit("/", 1)[-1]
    return cid or None


class AssetStore(Protocol):
    """Pinning-service operations the indexer needs.

    Both operations must be idempotent; the consumer may call them more
    than once for the same cid on redelivery.
    """

    async def promote(self, cid: str) -> None: ...

    async def discard(self, cid: str) -> None: ...


class LoggingAssetStore:
    """Asset store that only records what it would do."""

    async def promote(self, cid: str) -> None:
        logger.info("Promoting staged asset %s", cid)

    async def discard(self, cid: str) -> None:
        logger.info("Discarding unconfirmed asset %s", cid)
