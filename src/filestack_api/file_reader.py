import os
from pathlib import Path
from typing import Protocol

from filestack_api.errors import FileAccessError


class RangeReader(Protocol):
    """A source that can hand out any byte range, any number of times."""

    @property
    def name(self) -> str: ...

    @property
    def size(self) -> int: ...

    def read_range(self, offset: int, length: int) -> bytes: ...


class LocalFileReader:
    """
    Reads ranges of a local file.

    Every read opens its own handle, so concurrent workers never share a file
    position and a retry can re-read the same range.
    """

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)
        try:
            with open(self.path, "rb") as f:
                self._size = os.fstat(f.fileno()).st_size
        except FileNotFoundError as e:
            raise FileAccessError(f"File does not exist: {self.path}") from e
        except IsADirectoryError as e:
            raise FileAccessError(f"Not a file: {self.path}") from e
        except OSError as e:
            raise FileAccessError(f"Cannot open {self.path}: {e}") from e

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def size(self) -> int:
        return self._size

    def read_range(self, offset: int, length: int) -> bytes:
        try:
            with open(self.path, "rb") as src:
                src.seek(offset)
                data = src.read(length)
        except OSError as e:
            raise FileAccessError(
                f"Cannot read {length} bytes at {offset} from {self.path}: {e}"
            ) from e
        if len(data) != length:
            raise FileAccessError(
                f"Short read from {self.path}: wanted {length} bytes at {offset}, got {len(data)}"
            )
        return data

    def __repr__(self) -> str:
        return f"LocalFileReader({self.path}, size={self._size})"
