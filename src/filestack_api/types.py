import mimetypes
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from filestack_api.errors import InvalidInputError


class UploadMode(Enum):
    SIMPLE = "simple"
    INTELLIGENT = "intelligent"

    @staticmethod
    def from_upload_type(value: str | None) -> "UploadMode":
        """Map the start response's upload_type onto a mode."""
        if value == "intelligent_ingestion":
            return UploadMode.INTELLIGENT
        return UploadMode.SIMPLE


class PartState(Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    COMMITTED = "committed"
    FAILED = "failed"


_ALLOWED_PART_TRANSITIONS: dict[PartState, set[PartState]] = {
    PartState.PENDING: {PartState.UPLOADING},
    PartState.UPLOADING: {PartState.UPLOADED, PartState.FAILED},
    PartState.UPLOADED: {PartState.COMMITTED, PartState.FAILED},
    PartState.COMMITTED: set(),
    PartState.FAILED: set(),
}


@dataclass(frozen=True)
class UploadSession:
    upload_id: str
    region: str
    location_url: str
    uri: str
    mode: UploadMode

    @staticmethod
    def from_json(json: dict) -> "UploadSession":
        return UploadSession(
            upload_id=json["upload_id"],
            region=json["region"],
            location_url=json.get("location_url") or "",
            uri=json["uri"],
            mode=UploadMode.from_upload_type(json.get("upload_type")),
        )


@dataclass
class PartDescriptor:
    index: int
    offset: int
    length: int
    state: PartState = PartState.PENDING
    attempt_count: int = 0
    etag: str | None = None

    def __post_init__(self):
        if self.index < 0 or self.offset < 0 or self.length <= 0:
            raise InvalidInputError(
                f"Invalid part range: index={self.index}, offset={self.offset}, length={self.length}"
            )

    @property
    def part_number(self) -> int:
        # the service numbers parts from 1
        return self.index + 1

    @property
    def end(self) -> int:
        return self.offset + self.length

    def can_transition(self, new_state: PartState) -> bool:
        return new_state in _ALLOWED_PART_TRANSITIONS[self.state]

    def __repr__(self) -> str:
        return (
            f"PartDescriptor(index={self.index}, range={self.offset}-{self.end}, "
            f"state={self.state.value}, attempts={self.attempt_count})"
        )


@dataclass
class UploadCredentials:
    url: str
    headers: dict[str, str]
    location_url: str
    single_use: bool = True
    consumed: bool = False

    @staticmethod
    def from_json(json: dict) -> "UploadCredentials":
        headers = json.get("headers") or {}
        return UploadCredentials(
            url=json["url"],
            headers={str(k): str(v) for k, v in headers.items()},
            location_url=json.get("location_url") or "",
        )

    def is_expired(self) -> bool:
        return self.single_use and self.consumed


@dataclass(frozen=True)
class CompletedFile:
    handle: str
    url: str
    filename: str
    size: int
    mimetype: str

    @staticmethod
    def from_json(json: dict) -> "CompletedFile":
        return CompletedFile(
            handle=json["handle"],
            url=json.get("url", ""),
            filename=json.get("filename", ""),
            size=int(json.get("size") or 0),
            mimetype=json.get("mimetype", ""),
        )


@dataclass(frozen=True)
class FileMetadata:
    filename: str
    size: int
    mimetype: str

    @staticmethod
    def for_path(path: Path, size: int, mimetype: str | None = None) -> "FileMetadata":
        if mimetype is None:
            guessed, _ = mimetypes.guess_type(path.name)
            mimetype = guessed or "application/octet-stream"
        return FileMetadata(filename=path.name, size=size, mimetype=mimetype)


@dataclass(frozen=True)
class Security:
    """Signed policy produced elsewhere. Passed through untouched."""

    policy: str
    signature: str


@dataclass
class StorageOptions:
    location: str = "s3"
    path: str | None = None
    container: str | None = None
    region: str | None = None
    access: str | None = None

    def to_form(self) -> dict[str, str]:
        out = {"store_location": self.location}
        if self.path:
            out["store_path"] = self.path
        if self.container:
            out["store_container"] = self.container
        if self.region:
            out["store_region"] = self.region
        if self.access:
            out["store_access"] = self.access
        return out


@dataclass
class UploadProgress:
    parts_committed: int
    total_parts: int
    bytes_committed: int
    total_bytes: int

    @property
    def percent(self) -> float:
        if self.total_bytes == 0:
            return 0.0
        return (self.bytes_committed / self.total_bytes) * 100

    def __str__(self) -> str:
        return (
            f"{self.parts_committed}/{self.total_parts} parts, "
            f"{format_size(self.bytes_committed)}/{format_size(self.total_bytes)} "
            f"({self.percent:.2f}%)"
        )


@dataclass
class PartOutcome:
    """One message on the coordinator's outcome channel."""

    index: int
    etag: str | None = None
    error: Exception | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


_PATTERN_SIZE_SUFFIX = re.compile(r"^(\d+(?:\.\d+)?)([A-Za-z]*)$")

_UNITS = ["B", "K", "M", "G", "T", "P"]


def parse_size(value: "int | str") -> int:
    """Parse 1024, "1024", "16MB" or "16.5M" into a byte count."""
    if isinstance(value, int):
        return value
    text = value.strip()
    match = _PATTERN_SIZE_SUFFIX.match(text)
    if match is None:
        raise ValueError(f"Invalid size suffix: {value}")
    num_str, suffix = match.group(1), match.group(2)
    n = float(num_str)
    if not suffix:
        return int(n)
    unit = suffix[0].upper()
    if unit not in _UNITS:
        raise ValueError(f"Invalid size suffix: {suffix}")
    return int(n * 1024 ** _UNITS.index(unit))


def format_size(size: int) -> str:
    val: float = size
    for unit in _UNITS:
        if val < 1024 or unit == _UNITS[-1]:
            if float(val).is_integer():
                return f"{int(val)}{unit}"
            return f"{val:.1f}{unit}"
        val = val / 1024
    raise ValueError(f"Invalid size: {size}")
