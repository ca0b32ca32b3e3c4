import asyncio
import base64
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import cv2  # type: ignore
import numpy as np  # type: ignore

from docstore.db import SERVER_TIMESTAMP, DocumentStore
from presencebook import config
from presencebook.errors import PayloadTooLargeError, ValidationFailedError
from presencebook.services.presence import CHILDREN
from presencebook.services.resilience import call_remote

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = {"image/jpeg": ".jpg", "image/png": ".png"}


@dataclass(frozen=True)
class MediaReference:
    kind: Literal["blob", "inline"]
    ref: str
    size: int


class LocalBlobStore:
    """Blob store on the local filesystem (upload + download URL)."""

    def __init__(self, root: Path | str | None = None, base_url: str | None = None):
        self.root = Path(root or config.MEDIA_DIR)
        self.base_url = (base_url if base_url is not None else config.MEDIA_BASE_URL).rstrip("/")

    def _write(self, name: str, data: bytes) -> None:
        path = self.root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        # Readers only ever see a complete file at `path`.
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".upload-", suffix=path.suffix)
        try:
            with os.fdopen(fd, "wb") as out_file:
                out_file.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _discard_late_write(self, name: str, write: asyncio.Future) -> None:
        if not write.cancelled() and write.exception() is None:
            logger.info("Removing blob %s written after its upload was abandoned", name)
        (self.root / name).unlink(missing_ok=True)

    async def upload(self, name: str, data: bytes, content_type: str) -> str:
        write = asyncio.ensure_future(asyncio.to_thread(self._write, name, data))
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            # The worker thread cannot be stopped; drop its file once it finishes.
            write.add_done_callback(lambda done: self._discard_late_write(name, done))
            raise
        return name

    async def download_url(self, name: str) -> str:
        return f"{self.base_url}/{name}"


def downscale_image(data: bytes) -> bytes:
    """
    Shrink to `IMAGE_MAX_EDGE` on the longest side and re-encode as JPEG.

    Images already within bounds are still re-encoded so the payload size
    is predictable.
    """
    img_array = np.frombuffer(data, np.uint8)
    frame = cv2.imdecode(img_array, cv2.IMREAD_COLOR)
    if frame is None:
        raise ValidationFailedError("Invalid image data.")

    height, width = frame.shape[:2]
    longest = max(height, width)
    if longest > config.IMAGE_MAX_EDGE:
        scale = config.IMAGE_MAX_EDGE / float(longest)
        size = (max(1, int(width * scale)), max(1, int(height * scale)))
        frame = cv2.resize(frame, size, interpolation=cv2.INTER_AREA)

    ok, encoded = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), config.IMAGE_JPEG_QUALITY])
    if not ok:
        raise ValueError("Could not encode image.")
    return encoded.tobytes()


def encode_inline(data: bytes, content_type: str) -> str:
    payload = base64.b64encode(data).decode("ascii")
    return f"data:{content_type};base64,{payload}"


async def persist_image(
    data: bytes,
    content_type: str,
    blob_store: LocalBlobStore,
    *,
    name: str | None = None,
) -> MediaReference:
    """
    Upload to the blob store, falling back to an inline data URL.

    Any upload failure (timeout, unauthorized, quota) takes the inline
    path. An inline payload over `INLINE_IMAGE_MAX_BYTES` raises
    `PayloadTooLargeError`; nothing is truncated.
    """
    ext = ALLOWED_IMAGE_TYPES.get(content_type, ".bin")
    blob_name = name or f"{uuid.uuid4().hex}{ext}"

    async def _upload() -> str:
        stored = await blob_store.upload(blob_name, data, content_type)
        return await blob_store.download_url(stored)

    url = await call_remote("media.upload", _upload)
    if url is not None:
        return MediaReference(kind="blob", ref=url, size=len(data))

    inline = encode_inline(data, content_type)
    size = len(inline)
    if size > config.INLINE_IMAGE_MAX_BYTES:
        logger.warning("Inline image fallback rejected: %d bytes > %d", size, config.INLINE_IMAGE_MAX_BYTES)
        raise PayloadTooLargeError(size, config.INLINE_IMAGE_MAX_BYTES)
    logger.info("Blob upload unavailable; stored image inline (%d bytes)", size)
    return MediaReference(kind="inline", ref=inline, size=size)


async def attach_child_image(
    store: DocumentStore,
    blob_store: LocalBlobStore,
    child_id: str,
    data: bytes,
    content_type: str,
) -> MediaReference:
    """Persist a child's picture and point `imageRef` at it once accepted."""
    resized = await asyncio.to_thread(downscale_image, data)
    reference = await persist_image(
        resized,
        "image/jpeg",
        blob_store,
        name=f"children/{child_id}_{uuid.uuid4().hex[:8]}.jpg",
    )
    await call_remote(
        "media.attach",
        lambda: store.update(CHILDREN, child_id, {"imageRef": reference.ref, "updatedAt": SERVER_TIMESTAMP}),
    )
    return reference
