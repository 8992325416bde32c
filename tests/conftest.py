"""Test configuration."""

import asyncio
import io
import threading
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from file_converter.config import GIB, Settings, TierLimits
from file_converter.conversion import (
    ClientIdentity,
    ConversionService,
    FormatRegistry,
    IncomingFile,
    ResultStore,
    UploadIntake,
)
from file_converter.conversion.adapters import Argon2Security, LocalStorage
from file_converter.conversion.backends import default_backends
from file_converter.errors import ConversionCancelled
from file_converter.logging import configure_logging

configure_logging(level="warning", json_logs=False)

fixture = pytest.fixture

FREE = ClientIdentity(client_id="client-free", tier="free")
PRO = ClientIdentity(client_id="client-pro", tier="pro")


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_settings(data_dir: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "DATA_DIR": data_dir,
        "WORKERS": 4,
        "JOB_TIMEOUT_SEC": 10,
        "SWEEP_INTERVAL_SEC": 3600,
        "STAGING_TTL_SEC": 600,
        "TOMBSTONE_TTL_SEC": 3600,
        "TOKEN_HASH_TIME_COST": 1,
        "TOKEN_HASH_MEMORY_KIB": 8,
        "JSON_LOGS": False,
        "LOG_LEVEL": "warning",
        "TIERS": {
            "free": TierLimits(max_upload_bytes=1 * GIB, max_running=2, max_pending=10, retention_seconds=600, priority=0),
            "pro": TierLimits(max_upload_bytes=5 * GIB, max_running=4, max_pending=50, retention_seconds=600, priority=3),
        },
        "API_KEYS": {"pro-key": "pro"},
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def bytes_reader(data: bytes) -> Callable[[int], Awaitable[bytes]]:
    buf = io.BytesIO(data)

    async def read(n: int) -> bytes:
        return buf.read(n)

    return read


def incoming(data: bytes, content_type: str = "text/plain", filename: str = "notes.txt", size: int | None = None) -> IncomingFile:
    return IncomingFile(filename=filename, content_type=content_type, reader=bytes_reader(data), size=size)


class BlockingBackend:
    """Backend that holds every conversion until ``release`` is set."""

    def __init__(self, *, supports_cancellation: bool = False, output: bytes = b"converted") -> None:
        self.supports_cancellation = supports_cancellation
        self.release = threading.Event()
        self.output = output
        self.calls: list[str] = []
        self._lock = threading.Lock()

    @property
    def started(self) -> int:
        with self._lock:
            return len(self.calls)

    def convert(self, input_path, source_type, target, options, should_stop) -> bytes:
        with self._lock:
            self.calls.append(input_path.read_text())
        while not self.release.wait(0.01):
            if self.supports_cancellation and should_stop():
                raise ConversionCancelled()
        return self.output


class ScriptedBackend:
    """Raises the queued errors in order, then returns ``output``."""

    supports_cancellation = False

    def __init__(self, *errors: Exception, output: bytes = b"converted") -> None:
        self.errors = list(errors)
        self.output = output
        self.calls = 0

    def convert(self, input_path, source_type, target, options, should_stop) -> bytes:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.output


class _CallTracker:
    """Counts calls and how many of them overlap."""

    def __init__(self) -> None:
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def _enter(self) -> None:
        with self._lock:
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)

    def _leave(self) -> None:
        with self._lock:
            self.active -= 1


class StallingBackend(_CallTracker):
    """Never finishes on its own; exits once asked to stop."""

    supports_cancellation = True

    def convert(self, input_path, source_type, target, options, should_stop) -> bytes:
        self._enter()
        try:
            while not should_stop():
                time.sleep(0.01)
            raise ConversionCancelled()
        finally:
            self._leave()


class SleepingBackend(_CallTracker):
    """Ignores the stop flag and returns after ``delay`` seconds."""

    supports_cancellation = False

    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay

    def convert(self, input_path, source_type, target, options, should_stop) -> bytes:
        self._enter()
        try:
            time.sleep(self.delay)
            return b"late"
        finally:
            self._leave()


class ServiceHarness:
    def __init__(self, service: ConversionService, intake: UploadIntake, results: ResultStore, settings: Settings, clock: FakeClock) -> None:
        self.service = service
        self.intake = intake
        self.results = results
        self.settings = settings
        self.clock = clock
        self.backends: Any = None

    async def upload(self, data: bytes = b"hello", content_type: str = "text/plain", filename: str = "notes.txt", client: ClientIdentity = FREE):
        return await self.intake.stage([incoming(data, content_type, filename)], client)

    async def submit(self, target: str = "TXT", data: bytes = b"hello", client: ClientIdentity = FREE, **kwargs: Any):
        uploaded = await self.upload(data, client=client, **kwargs)
        job, _token = await self.service.submit(uploaded, target)
        return job

    async def wait_for(self, job_id: str, *statuses: str, timeout: float = 10.0):
        deadline = time.monotonic() + timeout
        while True:
            job = await self.service.status(job_id)
            if job.status in statuses:
                return job
            if time.monotonic() > deadline:
                raise AssertionError(f"job {job_id} stuck in {job.status}, wanted {statuses}")
            await asyncio.sleep(0.01)

    async def wait_until(self, predicate: Callable[[], bool], timeout: float = 10.0) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not reached")
            await asyncio.sleep(0.01)


@fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def make_service(tmp_path: Path, clock: FakeClock) -> AsyncIterator[Callable[..., Awaitable[ServiceHarness]]]:
    harnesses: list[ServiceHarness] = []

    async def _make(backends=None, **overrides: Any) -> ServiceHarness:
        settings = make_settings(tmp_path / "data", **overrides)
        storage = LocalStorage(settings.DATA_DIR)
        storage.ensure_dirs()
        registry = FormatRegistry()
        intake = UploadIntake(storage, registry, settings, clock=clock)
        results = ResultStore(storage, tombstone_ttl_seconds=settings.TOMBSTONE_TTL_SEC, clock=clock)
        service = ConversionService(
            intake=intake,
            results=results,
            registry=registry,
            backends=backends if backends is not None else default_backends(),
            security=Argon2Security(time_cost=1, memory_cost=8),
            settings=settings,
            clock=clock,
        )
        await service.start()
        harness = ServiceHarness(service, intake, results, settings, clock)
        harness.backends = backends
        harnesses.append(harness)
        return harness

    yield _make
    for h in harnesses:
        # Blocked worker threads would keep the event loop from closing
        for backend in (h.backends or {}).values():
            release = getattr(backend, "release", None)
            if release is not None:
                release.set()
        await h.service.stop()
