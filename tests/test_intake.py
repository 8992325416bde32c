"""Tests for upload intake."""

from pathlib import Path

import pytest

from conftest import FREE, PRO, FakeClock, incoming, make_settings
from file_converter.config import GIB, TierLimits
from file_converter.conversion import ClientIdentity, FormatRegistry, UploadIntake
from file_converter.conversion.adapters import LocalStorage
from file_converter.conversion.intake import IncomingFile, sniff_type
from file_converter.errors import FileTooLarge, NotFound, TooManyFiles, UnsupportedType, UploadAlreadyClaimed


@pytest.fixture
def storage(tmp_path: Path) -> LocalStorage:
    s = LocalStorage(tmp_path / "data")
    s.ensure_dirs()
    return s


@pytest.fixture
def intake(tmp_path: Path, storage: LocalStorage, clock: FakeClock) -> UploadIntake:
    settings = make_settings(
        tmp_path / "data",
        TIERS={
            "free": TierLimits(max_upload_bytes=1 * GIB, priority=0),
            "tiny": TierLimits(max_upload_bytes=1000, priority=0),
            "pro": TierLimits(max_upload_bytes=5 * GIB, priority=3),
        },
    )
    return UploadIntake(storage, FormatRegistry(), settings, clock=clock)


def _upload_dirs(storage: LocalStorage) -> list[Path]:
    return list((storage.upload_dir("x").parent).iterdir())


@pytest.mark.asyncio
async def test_stage_persists_file_and_checksum(intake: UploadIntake, storage: LocalStorage) -> None:
    data = b"hello world\n" * 100
    uploaded = await intake.stage([incoming(data, "text/plain; charset=utf-8", "../../notes.txt")], FREE)

    assert uploaded.size_bytes == len(data)
    assert uploaded.content_type == "text/plain"
    assert uploaded.filename == "notes.txt"
    assert uploaded.path.read_bytes() == data
    assert uploaded.path.parent == storage.upload_dir(uploaded.id)
    assert len(uploaded.checksum) == 64
    assert intake.get(uploaded.id, FREE) is uploaded


@pytest.mark.asyncio
async def test_free_tier_rejects_two_gib_upload_before_reading(intake: UploadIntake, storage: LocalStorage) -> None:
    async def never_read(n: int) -> bytes:
        raise AssertionError("reader must not be called")

    big = IncomingFile(filename="movie.png", content_type="image/png", reader=never_read, size=2 * GIB)
    with pytest.raises(FileTooLarge):
        await intake.stage([big], FREE)
    assert _upload_dirs(storage) == []


@pytest.mark.asyncio
async def test_streamed_size_limit_removes_partial_file(intake: UploadIntake, storage: LocalStorage) -> None:
    tiny = ClientIdentity(client_id="c", tier="tiny")
    with pytest.raises(FileTooLarge):
        await intake.stage([incoming(b"x" * 2000)], tiny)
    assert _upload_dirs(storage) == []


@pytest.mark.asyncio
async def test_exactly_at_limit_is_accepted(intake: UploadIntake) -> None:
    tiny = ClientIdentity(client_id="c", tier="tiny")
    uploaded = await intake.stage([incoming(b"x" * 1000)], tiny)
    assert uploaded.size_bytes == 1000


@pytest.mark.asyncio
async def test_paid_tier_allows_larger_declared_size(intake: UploadIntake) -> None:
    uploaded = await intake.stage([incoming(b"abc", size=3 * GIB)], PRO)
    assert uploaded.tier == "pro"


@pytest.mark.asyncio
@pytest.mark.parametrize("count", [0, 2])
async def test_exactly_one_file_per_request(intake: UploadIntake, count: int) -> None:
    with pytest.raises(TooManyFiles):
        await intake.stage([incoming(b"a") for _ in range(count)], FREE)


@pytest.mark.asyncio
async def test_size_is_checked_before_type(intake: UploadIntake) -> None:
    bad = incoming(b"", "application/x-msdownload", "setup.exe", size=2 * GIB)
    with pytest.raises(FileTooLarge):
        await intake.stage([bad], FREE)


@pytest.mark.asyncio
async def test_size_is_checked_before_type_without_declared_size(intake: UploadIntake, storage: LocalStorage) -> None:
    tiny = ClientIdentity(client_id="c", tier="tiny")
    with pytest.raises(FileTooLarge):
        await intake.stage([incoming(b"x" * 2000, "application/x-msdownload", "setup.exe")], tiny)
    with pytest.raises(UnsupportedType):
        await intake.stage([incoming(b"x" * 500, "application/x-msdownload", "setup.exe")], tiny)
    assert _upload_dirs(storage) == []


@pytest.mark.asyncio
async def test_legacy_word_documents_are_rejected(intake: UploadIntake) -> None:
    with pytest.raises(UnsupportedType):
        await intake.stage([incoming(b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1", "application/msword", "old.doc")], FREE)


@pytest.mark.asyncio
async def test_unsupported_type(intake: UploadIntake) -> None:
    with pytest.raises(UnsupportedType):
        await intake.stage([incoming(b"MZ\x90\x00", "application/x-msdownload", "setup.exe")], FREE)


@pytest.mark.asyncio
async def test_content_contradicting_declared_type(intake: UploadIntake, storage: LocalStorage) -> None:
    with pytest.raises(UnsupportedType):
        await intake.stage([incoming(b"%PDF-1.7\n...", "image/png", "fake.png")], FREE)
    assert _upload_dirs(storage) == []


def test_sniff_type() -> None:
    assert sniff_type(b"\x89PNG\r\n\x1a\n\x00\x00") == "image/png"
    assert sniff_type(b"RIFF\x00\x00\x00\x00WEBPVP8 ") == "image/webp"
    assert sniff_type(b"%PDF-1.4") == "application/pdf"
    assert sniff_type(b"plain words") is None


@pytest.mark.asyncio
async def test_uploads_are_private_to_their_client(intake: UploadIntake) -> None:
    uploaded = await intake.stage([incoming(b"abc")], FREE)
    with pytest.raises(NotFound):
        intake.get(uploaded.id, PRO)
    with pytest.raises(NotFound):
        intake.get("missing")


@pytest.mark.asyncio
async def test_claim_is_single_use(intake: UploadIntake) -> None:
    uploaded = await intake.stage([incoming(b"abc")], FREE)
    intake.claim(uploaded.id, "job-1")
    with pytest.raises(UploadAlreadyClaimed):
        intake.claim(uploaded.id, "job-2")


@pytest.mark.asyncio
async def test_sweep_discards_only_stale_unclaimed_uploads(intake: UploadIntake, clock: FakeClock) -> None:
    stale = await intake.stage([incoming(b"old")], FREE)
    claimed = await intake.stage([incoming(b"busy")], FREE)
    intake.claim(claimed.id, "job-1")
    clock.advance(601)
    fresh = await intake.stage([incoming(b"new")], FREE)

    assert intake.sweep() == [stale.id]
    assert not stale.path.exists()
    assert claimed.path.exists() and fresh.path.exists()
    with pytest.raises(NotFound):
        intake.get(stale.id)
