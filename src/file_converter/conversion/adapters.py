import base64
import secrets
import shutil
from pathlib import Path

from argon2.exceptions import VerificationError
from argon2.low_level import Type, hash_secret, verify_secret

from .interfaces import SecurityGateway, StorageGateway

TOKEN_BYTES = 32
SALT_BYTES = 16


class LocalStorage(StorageGateway):
    """Filesystem layout: ``<data>/uploads/<upload_id>`` and ``<data>/results/<job_id>``."""

    def __init__(self, data_dir: str | Path) -> None:
        self._base = Path(data_dir).resolve()

    def ensure_dirs(self) -> None:
        for d in (self._base / "uploads", self._base / "results"):
            d.mkdir(parents=True, exist_ok=True)

    def upload_dir(self, upload_id: str) -> Path:
        return self._base / "uploads" / upload_id

    def result_dir(self, job_id: str) -> Path:
        return self._base / "results" / job_id

    def remove_upload(self, upload_id: str) -> None:
        shutil.rmtree(self.upload_dir(upload_id), ignore_errors=True)

    def remove_result(self, job_id: str) -> None:
        shutil.rmtree(self.result_dir(job_id), ignore_errors=True)


class Argon2Security(SecurityGateway):
    """One-time job access tokens stored only as argon2id PHC hashes."""

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536) -> None:
        self._time_cost = time_cost
        self._memory_cost = memory_cost

    def new_token(self) -> str:
        raw = secrets.token_bytes(TOKEN_BYTES)
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")

    def hash_token(self, token: str) -> str:
        """Return the argon2id PHC string for ``token``; the token itself is never stored."""
        return hash_secret(
            secret=self._b64url_to_bytes(token),
            salt=secrets.token_bytes(SALT_BYTES),
            time_cost=self._time_cost,
            memory_cost=self._memory_cost,
            parallelism=1,
            hash_len=32,
            type=Type.ID,
        ).decode("ascii")

    def verify(self, phc_hash: str, token: str) -> bool:
        if not phc_hash.startswith("$argon2"):
            return False
        try:
            raw = self._b64url_to_bytes(token)
            return verify_secret(phc_hash.encode("utf-8"), raw, Type.ID)
        except (VerificationError, ValueError):
            return False

    @staticmethod
    def _b64url_to_bytes(token: str) -> bytes:
        pad = "=" * (-len(token) % 4)
        return base64.urlsafe_b64decode(token + pad)


class DoclingExtractor:
    """Extract Markdown from PDF sources with docling.

    docling is imported lazily; it pulls in large layout models and is only
    needed when a PDF has to be re-rendered into another document format.
    """

    def __init__(self) -> None:
        self._converter = None

    def _document_converter(self):
        if self._converter is None:
            from docling.document_converter import DocumentConverter

            self._converter = DocumentConverter()
        return self._converter

    def extract_markdown(self, input_path: Path) -> str:
        result = self._document_converter().convert(str(input_path))
        # Result and document shapes differ between docling releases
        doc = getattr(result, "document", None)
        if doc is None:
            to_doc = getattr(result, "to_doc", None)
            doc = to_doc() if callable(to_doc) else result
        for m in ("export_to_markdown", "to_markdown", "as_markdown"):
            fn = getattr(doc, m, None)
            if callable(fn):
                return fn()
        raise RuntimeError("Doc object does not provide a markdown export method")
