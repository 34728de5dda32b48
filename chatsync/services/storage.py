"""
Object storage for chat images, served from a public URL prefix.
"""
from pathlib import Path
from uuid import uuid4

from starlette.concurrency import run_in_threadpool

from chatsync.core.errors import UploadError
from chatsync.core.logging import get_logger

logger = get_logger(__name__)

IMAGES_PREFIX = "chat_images"


class ObjectStorage:
    def __init__(self, root: str, public_base_url: str):
        self._root = Path(root).resolve()
        self._public_base_url = public_base_url.rstrip("/")

    @property
    def root(self) -> Path:
        return self._root

    async def upload(self, conversation_id: str, data: bytes, extension: str = "jpg") -> str:
        """Store ``data`` under a fresh name and return its public URL."""
        if not data:
            raise UploadError("Image upload is empty")

        relative = f"{IMAGES_PREFIX}/{conversation_id}/{uuid4()}.{extension.lstrip('.') or 'jpg'}"
        try:
            await run_in_threadpool(self._write_sync, self._root / relative, data)
        except OSError as e:
            logger.error(
                "Image upload failed",
                extra={"extra_data": {"conversation_id": conversation_id, "error": str(e)}},
            )
            raise UploadError(f"Image upload failed: {e}") from e

        url = f"{self._public_base_url}/{relative}"
        logger.info("Image uploaded", extra={"extra_data": {"conversation_id": conversation_id, "url": url}})
        return url

    @staticmethod
    def _write_sync(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
