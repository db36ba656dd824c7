import logging
import warnings

from filestack_api.errors import InvalidInputError
from filestack_api.types import PartDescriptor, UploadMode, format_size

logger = logging.getLogger(__name__)

MIN_PART_SIZE = 5 * 1024 * 1024  # 5MB, smallest non-final part S3 accepts
MAX_PART_SIZE = 5 * 1024 * 1024 * 1024  # 5GB
DEFAULT_PART_SIZE = 8 * 1024 * 1024  # 8MB
MAX_PART_COUNT = 10000


class PartPlanner:
    """Splits a file into contiguous byte ranges."""

    def __init__(
        self,
        min_part_size: int = MIN_PART_SIZE,
        max_part_size: int = MAX_PART_SIZE,
        max_part_count: int = MAX_PART_COUNT,
    ) -> None:
        if min_part_size <= 0 or max_part_size < min_part_size:
            raise InvalidInputError(
                f"Invalid part size bounds: min={min_part_size}, max={max_part_size}"
            )
        self.min_part_size = min_part_size
        self.max_part_size = max_part_size
        self.max_part_count = max_part_count

    def resolve_part_size(self, file_size: int, configured_part_size: int) -> int:
        part_size = max(self.min_part_size, min(configured_part_size, self.max_part_size))
        # more than max_part_count parts is rejected by the service, so grow the part
        min_for_count = -(-file_size // self.max_part_count)
        if min_for_count > part_size:
            warnings.warn(
                f"part size {format_size(part_size)} needs more than {self.max_part_count} parts "
                f"for {format_size(file_size)}, adjusting part size to {format_size(min_for_count)}"
            )
            part_size = min_for_count
        return part_size

    def select_mode(
        self, file_size: int, part_size: int, session_mode: UploadMode
    ) -> UploadMode:
        if session_mode == UploadMode.SIMPLE:
            return UploadMode.SIMPLE
        if file_size <= part_size:
            return UploadMode.SIMPLE
        return UploadMode.INTELLIGENT

    def plan(
        self, file_size: int, configured_part_size: int, session_mode: UploadMode
    ) -> list[PartDescriptor]:
        """
        Partition ``[0, file_size)`` into parts.

        :param file_size: size of the source in bytes
        :param configured_part_size: requested part size before clamping
        :param session_mode: mode reported by the start call
        :return: descriptors with indices ``0..n-1``
        :raises InvalidInputError: on a non-positive file size or part size
        """
        if file_size <= 0:
            raise InvalidInputError(f"File size must be positive, got {file_size}")
        if configured_part_size <= 0:
            raise InvalidInputError(
                f"Part size must be positive, got {configured_part_size}"
            )

        part_size = self.resolve_part_size(file_size, configured_part_size)
        mode = self.select_mode(file_size, part_size, session_mode)
        # a SIMPLE session still splits a file larger than one part
        if file_size <= part_size:
            logger.debug(f"Planning single part of {format_size(file_size)}")
            return [PartDescriptor(index=0, offset=0, length=file_size)]

        parts: list[PartDescriptor] = []
        offset = 0
        index = 0
        while offset < file_size:
            length = min(part_size, file_size - offset)
            parts.append(PartDescriptor(index=index, offset=offset, length=length))
            offset += length
            index += 1
        logger.debug(
            f"Planned {len(parts)} {mode.value} parts of {format_size(part_size)} "
            f"for {format_size(file_size)}"
        )
        return parts


def plan_parts(
    file_size: int,
    configured_part_size: int,
    session_mode: UploadMode,
    min_part_size: int = MIN_PART_SIZE,
    max_part_size: int = MAX_PART_SIZE,
) -> list[PartDescriptor]:
    planner = PartPlanner(min_part_size=min_part_size, max_part_size=max_part_size)
    return planner.plan(file_size, configured_part_size, session_mode)
