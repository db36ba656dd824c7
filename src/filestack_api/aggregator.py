import logging
from threading import Event, Lock

from filestack_api.errors import UploadError
from filestack_api.types import PartDescriptor, PartState, UploadProgress

logger = logging.getLogger(__name__)


class ResultAggregator:
    """
    Shared view of how far an upload has got.

    Workers only ever touch their own descriptor, and they do so through
    ``transition`` so the per-state counters stay in step with it.
    """

    def __init__(self, parts: list[PartDescriptor]) -> None:
        self._lock = Lock()
        self._total_parts = len(parts)
        self._total_bytes = sum(p.length for p in parts)
        self._counts: dict[PartState, int] = {state: 0 for state in PartState}
        for p in parts:
            self._counts[p.state] += 1
        self._committed_bytes = 0
        self._first_failure: UploadError | None = None
        self.cancel_event = Event()

    def transition(self, descriptor: PartDescriptor, new_state: PartState) -> None:
        with self._lock:
            old_state = descriptor.state
            if not descriptor.can_transition(new_state):
                raise RuntimeError(
                    f"Part {descriptor.index} cannot move from {old_state.value} to {new_state.value}"
                )
            descriptor.state = new_state
            self._counts[old_state] -= 1
            self._counts[new_state] += 1
            if new_state == PartState.COMMITTED:
                self._committed_bytes += descriptor.length

    def record_failure(self, error: UploadError) -> bool:
        """Remember the error if it is the first. Returns True when it was."""
        with self._lock:
            if self._first_failure is not None:
                logger.debug(f"Discarding later failure: {error}")
                return False
            self._first_failure = error
        self.cancel_event.set()
        return True

    def first_failure(self) -> UploadError | None:
        with self._lock:
            return self._first_failure

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def all_committed(self) -> bool:
        with self._lock:
            return self._counts[PartState.COMMITTED] == self._total_parts

    def count(self, state: PartState) -> int:
        with self._lock:
            return self._counts[state]

    def counts(self) -> dict[PartState, int]:
        with self._lock:
            return dict(self._counts)

    def committed_bytes(self) -> int:
        with self._lock:
            return self._committed_bytes

    def progress(self) -> UploadProgress:
        with self._lock:
            return UploadProgress(
                parts_committed=self._counts[PartState.COMMITTED],
                total_parts=self._total_parts,
                bytes_committed=self._committed_bytes,
                total_bytes=self._total_bytes,
            )
