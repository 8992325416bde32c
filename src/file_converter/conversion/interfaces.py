from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Protocol

if TYPE_CHECKING:
    from .formats import Format
    from .options import ImageOptions


StopCheck = Callable[[], bool]


class ConverterBackend(Protocol):
    supports_cancellation: bool

    def convert(
        self,
        input_path: Path,
        source_type: str,
        target: "Format",
        options: "ImageOptions | None",
        should_stop: StopCheck,
    ) -> bytes:
        """Convert the staged input into the target format synchronously.
        This is a blocking call; callers should offload to threads if needed.
        Cooperative backends poll ``should_stop`` between steps.
        """


class StorageGateway(Protocol):
    def upload_dir(self, upload_id: str) -> Path:
        ...

    def result_dir(self, job_id: str) -> Path:
        ...

    def remove_upload(self, upload_id: str) -> None:
        ...

    def remove_result(self, job_id: str) -> None:
        ...


class SecurityGateway(Protocol):
    def new_token(self) -> str:
        ...

    def hash_token(self, token: str) -> str:
        ...

    def verify(self, phc_hash: str, token: str) -> bool:
        ...


@dataclass(frozen=True)
class ClientIdentity:
    client_id: str
    tier: str
