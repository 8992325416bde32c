"""
Domain layer for file conversion.
Provides the format registry, upload intake, converter backends, result store
and the job service that ties them together, so front-ends (HTTP or others)
can use the same core logic.
"""

from .formats import Format, FormatCategory, FormatRegistry
from .interfaces import ClientIdentity, ConverterBackend, SecurityGateway, StorageGateway
from .intake import IncomingFile, UploadedFile, UploadIntake
from .options import ImageOptions, parse_options
from .results import ConversionResult, ResultStore
from .service import ConversionJob, ConversionService, JobStatus
