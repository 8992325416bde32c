"""Result store: completed artifacts on disk, deleted when their retention ends."""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from ..errors import Expired, NotFound
from ..logging import get_logger
from .clock import Clock, isoformat_z, utcnow
from .interfaces import StorageGateway

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConversionResult:
    job_id: str
    path: Path
    size_bytes: int
    media_type: str
    filename: str
    created_at: datetime
    expires_at: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "sizeBytes": self.size_bytes,
            "mediaType": self.media_type,
            "filename": self.filename,
            "expiresAt": isoformat_z(self.expires_at),
        }


class ResultStore:
    """Holds one result per job id.

    Reads check the expiry timestamp themselves, so an expired result is
    never served even when the background sweep has not caught up yet.
    Expired ids leave a tombstone so later reads report ``Expired`` instead
    of ``NotFound`` until the tombstone itself is pruned.
    """

    def __init__(self, storage: StorageGateway, *, tombstone_ttl_seconds: int = 86400, clock: Clock = utcnow) -> None:
        self._storage = storage
        self._tombstone_ttl = timedelta(seconds=tombstone_ttl_seconds)
        self._clock = clock
        self._results: dict[str, ConversionResult] = {}
        self._tombstones: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def put(
        self,
        job_id: str,
        data: bytes,
        *,
        extension: str,
        media_type: str,
        filename: str,
        retention_seconds: int,
    ) -> ConversionResult:
        out_dir = self._storage.result_dir(job_id)
        out_dir.mkdir(parents=True, exist_ok=True)
        path = out_dir / f"result.{extension}"
        path.write_bytes(data)
        now = self._clock()
        result = ConversionResult(
            job_id=job_id,
            path=path,
            size_bytes=len(data),
            media_type=media_type,
            filename=filename,
            created_at=now,
            expires_at=now + timedelta(seconds=retention_seconds),
        )
        with self._lock:
            self._results[job_id] = result
            self._tombstones.pop(job_id, None)
        return result

    def locate(self, job_id: str) -> ConversionResult:
        now = self._clock()
        with self._lock:
            result = self._results.get(job_id)
            expired_at = self._tombstones.get(job_id)
        if result is None:
            if expired_at is not None:
                raise Expired()
            raise NotFound("result not found")
        if now >= result.expires_at:
            self._expire(job_id, now)
            raise Expired()
        return result

    def get(self, job_id: str) -> bytes:
        result = self.locate(job_id)
        try:
            return result.path.read_bytes()
        except FileNotFoundError:
            # Swept between locate() and the read
            raise Expired() from None

    def delete(self, job_id: str) -> bool:
        with self._lock:
            result = self._results.pop(job_id, None)
        if result is None:
            return False
        self._storage.remove_result(job_id)
        logger.info("result_deleted", job_id=job_id)
        return True

    def sweep(self, now: datetime | None = None) -> list[str]:
        """Delete every result past its expiry; returns the expired job ids."""
        now = now or self._clock()
        with self._lock:
            expired = [job_id for job_id, r in self._results.items() if now >= r.expires_at]
        for job_id in expired:
            self._expire(job_id, now)
        cutoff = now - self._tombstone_ttl
        with self._lock:
            for job_id in [j for j, t in self._tombstones.items() if t <= cutoff]:
                del self._tombstones[job_id]
        if expired:
            logger.info("results_expired", count=len(expired))
        return expired

    def _expire(self, job_id: str, when: datetime) -> None:
        with self._lock:
            self._results.pop(job_id, None)
            self._tombstones[job_id] = when
        self._storage.remove_result(job_id)
