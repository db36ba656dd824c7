from .aggregator import ResultAggregator
from .client import FsClient
from .config import UploadConfig
from .coordinator import CoordinatorState, UploadCoordinator
from .errors import (
    CommitError,
    CompleteError,
    ConfigError,
    CredentialError,
    ErrorClass,
    FileAccessError,
    InvalidInputError,
    PartialUploadFailure,
    ServiceError,
    StartError,
    TransferError,
    UploadError,
)
from .file_reader import LocalFileReader, RangeReader
from .log import configure_logging
from .part_uploader import PartUploader
from .planner import PartPlanner, plan_parts
from .retry import RetryDecision, RetryPolicy
from .service import HttpUploadService, UploadService
from .types import (
    CompletedFile,
    FileMetadata,
    PartDescriptor,
    PartState,
    Security,
    StorageOptions,
    UploadCredentials,
    UploadMode,
    UploadProgress,
    UploadSession,
)

__all__ = [
    "FsClient",
    "UploadConfig",
    "UploadCoordinator",
    "CoordinatorState",
    "PartUploader",
    "PartPlanner",
    "plan_parts",
    "RetryPolicy",
    "RetryDecision",
    "ResultAggregator",
    "UploadService",
    "HttpUploadService",
    "RangeReader",
    "LocalFileReader",
    "configure_logging",
    "CompletedFile",
    "FileMetadata",
    "PartDescriptor",
    "PartState",
    "Security",
    "StorageOptions",
    "UploadCredentials",
    "UploadMode",
    "UploadProgress",
    "UploadSession",
    "ErrorClass",
    "UploadError",
    "FileAccessError",
    "InvalidInputError",
    "ConfigError",
    "ServiceError",
    "StartError",
    "CredentialError",
    "TransferError",
    "CommitError",
    "CompleteError",
    "PartialUploadFailure",
]
