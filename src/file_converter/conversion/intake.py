"""Upload intake: validate and stage incoming files before a job exists."""

import hashlib
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from ..config import Settings
from ..errors import FileTooLarge, NotFound, TooManyFiles, UnsupportedType, UploadAlreadyClaimed
from ..logging import get_logger
from .clock import Clock, isoformat_z, utcnow
from .formats import DOCX_MIME, PDF_MIME, FormatRegistry
from .interfaces import ClientIdentity, StorageGateway

logger = get_logger(__name__)

CHUNK = 1024 * 1024

Reader = Callable[[int], Awaitable[bytes]]


@dataclass
class IncomingFile:
    filename: str
    content_type: str
    reader: Reader
    size: int | None = None


@dataclass
class UploadedFile:
    id: str
    filename: str
    content_type: str
    size_bytes: int
    checksum: str
    path: Path
    client_id: str
    tier: str
    created_at: datetime
    claimed_by: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "uploadedFileId": self.id,
            "filename": self.filename,
            "contentType": self.content_type,
            "sizeBytes": self.size_bytes,
            "checksum": self.checksum,
            "createdAt": isoformat_z(self.created_at),
        }


_SIGNATURES: tuple[tuple[bytes, str], ...] = (
    (b"%PDF-", PDF_MIME),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"II*\x00", "image/tiff"),
    (b"MM\x00*", "image/tiff"),
    (b"PK\x03\x04", "application/zip"),
)


def sniff_type(head: bytes) -> str | None:
    """Best-effort media type from the leading bytes, or None when unknown."""
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image/webp"
    for magic, media_type in _SIGNATURES:
        if head.startswith(magic):
            return media_type
    return None


def _consistent(declared: str, sniffed: str) -> bool:
    if sniffed.startswith("image/"):
        return declared.startswith("image/")
    if sniffed == PDF_MIME:
        return declared == PDF_MIME
    if sniffed == "application/zip":
        # OOXML containers are zip archives
        return declared == DOCX_MIME or declared.startswith("application/")
    return True


class UploadIntake:
    """Stages uploads on storage and tracks them until a job claims them."""

    def __init__(
        self,
        storage: StorageGateway,
        registry: FormatRegistry,
        settings: Settings,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._storage = storage
        self._registry = registry
        self._settings = settings
        self._clock = clock
        self._uploads: dict[str, UploadedFile] = {}
        self._lock = threading.Lock()

    async def stage(self, files: Sequence[IncomingFile], client: ClientIdentity) -> UploadedFile:
        """Validate a single incoming file and persist it under a new upload id."""
        if len(files) != 1:
            raise TooManyFiles(f"expected exactly one file, got {len(files)}")
        incoming = files[0]
        max_bytes = self._settings.tier(client.tier).max_upload_bytes
        if incoming.size is not None and incoming.size > max_bytes:
            logger.info("upload_rejected", kind="FileTooLarge", tier=client.tier, size_bytes=incoming.size)
            raise FileTooLarge(f"file exceeds the {max_bytes} byte limit for the {client.tier} tier")

        content_type = (incoming.content_type or "").split(";", 1)[0].strip().lower()
        if not self._registry.is_supported_source(content_type):
            if incoming.size is None:
                # Size is reported ahead of type even when the client declared none
                await self._measure(incoming, max_bytes, client)
            raise UnsupportedType(f"content-type {incoming.content_type or '(none)'} not supported")

        upload_id = str(uuid.uuid4())
        upload_dir = self._storage.upload_dir(upload_id)
        upload_dir.mkdir(parents=True, exist_ok=True)

        # Choose safe filename
        original_name = Path(incoming.filename or "upload").name or "upload"
        ext = ""
        if "." in original_name:
            ext = "." + original_name.rsplit(".", 1)[-1].lower()
        input_path = upload_dir / f"original{ext}"

        # Stream upload and compute checksum
        sha256 = hashlib.sha256()
        size_bytes = 0
        first = True
        try:
            with input_path.open("wb") as f_out:
                while True:
                    chunk = await incoming.reader(CHUNK)
                    if not chunk:
                        break
                    b = bytes(chunk)
                    if first:
                        first = False
                        sniffed = sniff_type(b[:16])
                        if sniffed is not None and not _consistent(content_type, sniffed):
                            raise UnsupportedType(f"content looks like {sniffed}, not {content_type}")
                    size_bytes += len(b)
                    if size_bytes > max_bytes:
                        raise FileTooLarge(f"file exceeds the {max_bytes} byte limit for the {client.tier} tier")
                    f_out.write(b)
                    sha256.update(b)
        except BaseException as e:
            self._storage.remove_upload(upload_id)
            if isinstance(e, (FileTooLarge, UnsupportedType)):
                logger.info("upload_rejected", kind=e.kind, tier=client.tier, size_bytes=size_bytes)
            raise

        uploaded = UploadedFile(
            id=upload_id,
            filename=original_name,
            content_type=content_type,
            size_bytes=size_bytes,
            checksum=sha256.hexdigest(),
            path=input_path,
            client_id=client.client_id,
            tier=client.tier,
            created_at=self._clock(),
        )
        with self._lock:
            self._uploads[upload_id] = uploaded
        logger.info(
            "upload_staged",
            upload_id=upload_id,
            content_type=content_type,
            size_bytes=size_bytes,
            tier=client.tier,
        )
        return uploaded

    @staticmethod
    async def _measure(incoming: IncomingFile, max_bytes: int, client: ClientIdentity) -> None:
        """Read an unsized upload without storing it; raises ``FileTooLarge`` past ``max_bytes``."""
        size_bytes = 0
        while True:
            chunk = await incoming.reader(CHUNK)
            if not chunk:
                return
            size_bytes += len(chunk)
            if size_bytes > max_bytes:
                logger.info("upload_rejected", kind="FileTooLarge", tier=client.tier, size_bytes=size_bytes)
                raise FileTooLarge(f"file exceeds the {max_bytes} byte limit for the {client.tier} tier")

    def get(self, upload_id: str, client: ClientIdentity | None = None) -> UploadedFile:
        with self._lock:
            uploaded = self._uploads.get(upload_id)
        if uploaded is None or (client is not None and uploaded.client_id != client.client_id):
            raise NotFound("upload not found")
        return uploaded

    def claim(self, upload_id: str, job_id: str) -> UploadedFile:
        """Hand the staged content to a job; an upload backs at most one job."""
        with self._lock:
            uploaded = self._uploads.get(upload_id)
            if uploaded is None:
                raise NotFound("upload not found")
            if uploaded.claimed_by is not None:
                raise UploadAlreadyClaimed()
            uploaded.claimed_by = job_id
            return uploaded

    def discard(self, upload_id: str) -> None:
        with self._lock:
            self._uploads.pop(upload_id, None)
        self._storage.remove_upload(upload_id)

    def sweep(self, now: datetime | None = None) -> list[str]:
        """Discard unclaimed uploads older than the staging TTL."""
        now = now or self._clock()
        cutoff = now - timedelta(seconds=self._settings.STAGING_TTL_SEC)
        with self._lock:
            stale = [u.id for u in self._uploads.values() if u.claimed_by is None and u.created_at <= cutoff]
        for upload_id in stale:
            self.discard(upload_id)
        if stale:
            logger.info("uploads_swept", count=len(stale))
        return stale
