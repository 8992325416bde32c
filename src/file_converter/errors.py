"""Error taxonomy shared by the conversion core and the HTTP layer.

Every error that can reach a client is a ``ConverterError`` carrying a stable
machine-readable ``kind``, a coarse ``category`` and the HTTP status used when
it is surfaced. Backends raise the same types; the job manager decides which
ones are retried.
"""

from enum import Enum


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    CONFLICT = "conflict"
    CAPACITY = "capacity"
    TRANSIENT = "transient"
    FAILED = "failed"
    NOT_FOUND = "not_found"
    AUTH = "auth"


class ConverterError(Exception):
    kind = "Error"
    category = ErrorCategory.FAILED
    status_code = 500
    default_message = "conversion service error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def transient(self) -> bool:
        return self.category is ErrorCategory.TRANSIENT

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message, "category": self.category.value}


class ValidationError(ConverterError):
    kind = "ValidationError"
    category = ErrorCategory.VALIDATION
    status_code = 400
    default_message = "invalid request"


class TooManyFiles(ValidationError):
    kind = "TooManyFiles"
    default_message = "exactly one file must be uploaded per request"


class FileTooLarge(ValidationError):
    kind = "FileTooLarge"
    status_code = 413
    default_message = "file exceeds the size limit for this tier"


class UnsupportedType(ValidationError):
    kind = "UnsupportedType"
    status_code = 415
    default_message = "file type is not supported"


class InvalidSettings(ValidationError):
    kind = "InvalidSettings"
    status_code = 422
    default_message = "conversion settings are invalid"


class UploadAlreadyClaimed(ValidationError):
    kind = "UploadAlreadyClaimed"
    status_code = 409
    default_message = "upload is already used by another conversion"


class UnsupportedConversion(ValidationError):
    kind = "UnsupportedConversion"
    status_code = 422
    default_message = "conversion between these formats is not supported"


class CorruptInput(ValidationError):
    kind = "CorruptInput"
    status_code = 422
    default_message = "input file could not be decoded"


class CancellationNotSupported(ConverterError):
    kind = "CancellationNotSupported"
    category = ErrorCategory.CONFLICT
    status_code = 409
    default_message = "running job cannot be cancelled; it will run to completion"


class CapacityError(ConverterError):
    kind = "CapacityError"
    category = ErrorCategory.CAPACITY
    status_code = 429


class QueueFull(CapacityError):
    kind = "QueueFull"
    default_message = "conversion queue is full; retry later or upgrade your plan"


class TransientBackendError(ConverterError):
    kind = "TransientBackendError"
    category = ErrorCategory.TRANSIENT
    status_code = 503


class ResourceExhausted(TransientBackendError):
    kind = "ResourceExhausted"
    default_message = "conversion ran out of resources"


class ConversionTimeout(TransientBackendError):
    kind = "ConversionTimeout"
    default_message = "conversion timed out"


class ConversionFailed(ConverterError):
    kind = "ConversionFailed"
    default_message = "conversion failed"


class ConversionCancelled(ConverterError):
    """Raised by a backend that observed its stop flag between steps."""

    kind = "ConversionCancelled"
    category = ErrorCategory.CONFLICT
    status_code = 409
    default_message = "conversion was cancelled"


class NotFoundError(ConverterError):
    kind = "NotFoundError"
    category = ErrorCategory.NOT_FOUND
    status_code = 404


class NotFound(NotFoundError):
    kind = "NotFound"
    default_message = "not found"


class Expired(NotFoundError):
    kind = "Expired"
    default_message = "result has expired and was deleted"


class InvalidRequest(ValidationError):
    """Request body or parameters failed schema validation."""

    kind = "InvalidRequest"
    status_code = 422
    default_message = "request is malformed"


class AuthError(ConverterError):
    kind = "AuthError"
    category = ErrorCategory.AUTH
    status_code = 401


class Unauthorized(AuthError):
    kind = "Unauthorized"
    default_message = "missing or malformed credentials"


class Forbidden(AuthError):
    kind = "Forbidden"
    status_code = 403
    default_message = "credentials do not grant access to this job"


class InternalError(ConverterError):
    kind = "InternalError"
    default_message = "internal server error"
