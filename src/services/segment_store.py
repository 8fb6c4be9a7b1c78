"""Durable mirror storage for video segments.

The mirror is a best-effort write-through cache: the validator uploads bytes
it has just confirmed, the proxy reads them back before going upstream. It is
never authoritative.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "video/mp2t"
READ_CHUNK_SIZE = 64 * 1024


def mirror_key(video_id: str, quality: str, index: Union[int, str]) -> str:
    """Deterministic key for a mirrored segment (``index`` may be ``"last"``)."""
    return f"videos/{video_id}/{quality}/segment-{index}.ts"


@dataclass
class StoredSegment:
    """Handle to a mirrored segment."""

    key: str
    storage_id: str
    size: int = 0
    content_type: str = DEFAULT_CONTENT_TYPE


class SegmentStore(ABC):
    """Abstract mirror backend."""

    name: str = "base"

    @abstractmethod
    async def upload_segment(
        self,
        key: str,
        chunks: AsyncIterator[bytes],
        content_type: Optional[str] = None,
    ) -> StoredSegment:
        """Store the streamed bytes under ``key``, replacing any previous copy."""

    @abstractmethod
    async def find_by_key(self, key: str) -> Optional[StoredSegment]:
        """Return a handle for ``key`` or None if it was never mirrored."""

    @abstractmethod
    def open_read_stream(self, handle: StoredSegment) -> AsyncIterator[bytes]:
        """Yield the stored bytes in chunks."""

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete every mirrored object under ``prefix`` and return the count."""

    async def close(self) -> None:
        """Release backend resources."""


class LocalSegmentStore(SegmentStore):
    """Filesystem-backed mirror used when no object storage is configured."""

    name = "local"

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        parts = [p for p in key.split("/") if p]
        if not parts or any(p in (".", "..") for p in parts):
            raise ValueError(f"Invalid segment key: {key}")
        return self.root.joinpath(*parts)

    @staticmethod
    def _meta_path(path: Path) -> Path:
        return path.with_name(path.name + ".meta.json")

    async def upload_segment(
        self,
        key: str,
        chunks: AsyncIterator[bytes],
        content_type: Optional[str] = None,
    ) -> StoredSegment:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".part")

        size = 0
        try:
            with open(tmp_path, "wb") as f:
                async for chunk in chunks:
                    f.write(chunk)
                    size += len(chunk)
        except BaseException:
            # Includes cancellation by the per-video deadline
            tmp_path.unlink(missing_ok=True)
            raise

        content_type = content_type or DEFAULT_CONTENT_TYPE
        tmp_path.replace(path)
        self._meta_path(path).write_text(json.dumps({"content_type": content_type}))

        logger.debug(f"Mirrored {key} locally ({size} bytes)")
        return StoredSegment(key=key, storage_id=str(path), size=size, content_type=content_type)

    async def find_by_key(self, key: str) -> Optional[StoredSegment]:
        try:
            path = self._path_for(key)
        except ValueError:
            return None
        if not path.is_file():
            return None

        content_type = DEFAULT_CONTENT_TYPE
        meta_path = self._meta_path(path)
        if meta_path.exists():
            try:
                content_type = json.loads(meta_path.read_text()).get("content_type") or content_type
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Unreadable metadata for {key}: {e}")

        return StoredSegment(
            key=key,
            storage_id=str(path),
            size=path.stat().st_size,
            content_type=content_type,
        )

    async def open_read_stream(self, handle: StoredSegment) -> AsyncIterator[bytes]:
        with open(handle.storage_id, "rb") as f:
            while True:
                chunk = await asyncio.to_thread(f.read, READ_CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk

    async def delete_prefix(self, prefix: str) -> int:
        try:
            base = self._path_for(prefix)
        except ValueError:
            return 0
        if not base.is_dir():
            return 0

        deleted = 0
        for path in sorted(base.rglob("*"), reverse=True):
            if path.is_file():
                if not path.name.endswith(".meta.json"):
                    deleted += 1
                path.unlink()
            elif path.is_dir():
                path.rmdir()
        base.rmdir()
        return deleted


# Factory function
_store_instance: Optional[SegmentStore] = None


def get_segment_store(config: Optional[dict] = None) -> SegmentStore:
    """Get or create the mirror store.

    Uses R2 when its credentials are configured, the local directory otherwise.
    """
    global _store_instance

    if _store_instance is not None:
        return _store_instance

    if config is None:
        from utils.config import load_config
        config = load_config()

    if all(config.get(k) for k in ("r2_account_id", "r2_access_key_id", "r2_secret_access_key")):
        from services.r2_storage import R2SegmentStore

        _store_instance = R2SegmentStore(
            account_id=config["r2_account_id"],
            access_key_id=config["r2_access_key_id"],
            secret_access_key=config["r2_secret_access_key"],
            bucket_name=config.get("r2_bucket_name") or "segmentry-segments",
            public_url=config.get("r2_public_url"),
        )
    else:
        _store_instance = LocalSegmentStore(config["segment_store_dir"])

    logger.info(f"Segment mirror store: {_store_instance.name}")
    return _store_instance


def reset_segment_store() -> None:
    """Forget the cached store instance (used by tests)."""
    global _store_instance
    _store_instance = None
