"""
Drives one upload from start to a stored file.

    INIT -> STARTED -> UPLOADING -> COMPLETING -> DONE
                 \\           \\            \\
                  +-----------+------------+--> FAILED

Parts run as independent tasks on a bounded executor. Each task posts exactly
one PartOutcome on a queue; the coordinator reads the queue to track the
upload, and stops dispatching as soon as any part fails for good.
"""

import logging
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from enum import Enum
from queue import Queue
from threading import Lock
from typing import Callable

from filestack_api.aggregator import ResultAggregator
from filestack_api.errors import (
    CompleteError,
    ErrorClass,
    InvalidInputError,
    PartialUploadFailure,
    ServiceError,
    StartError,
    UploadCancelled,
    UploadError,
)
from filestack_api.file_reader import RangeReader
from filestack_api.part_uploader import PartUploader
from filestack_api.planner import DEFAULT_PART_SIZE, PartPlanner
from filestack_api.retry import RetryPolicy
from filestack_api.service import UploadService
from filestack_api.types import (
    CompletedFile,
    FileMetadata,
    PartDescriptor,
    PartOutcome,
    PartState,
    UploadMode,
    UploadProgress,
    UploadSession,
)

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 4


class CoordinatorState(Enum):
    INIT = "init"
    STARTED = "started"
    UPLOADING = "uploading"
    COMPLETING = "completing"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: dict[CoordinatorState, set[CoordinatorState]] = {
    CoordinatorState.INIT: {CoordinatorState.STARTED, CoordinatorState.FAILED},
    CoordinatorState.STARTED: {CoordinatorState.UPLOADING, CoordinatorState.FAILED},
    CoordinatorState.UPLOADING: {CoordinatorState.COMPLETING, CoordinatorState.FAILED},
    CoordinatorState.COMPLETING: {CoordinatorState.DONE, CoordinatorState.FAILED},
    CoordinatorState.DONE: set(),
    CoordinatorState.FAILED: set(),
}


class UploadCoordinator:
    def __init__(
        self,
        service: UploadService,
        planner: PartPlanner | None = None,
        retry_policy: RetryPolicy | None = None,
        part_size: int = DEFAULT_PART_SIZE,
        concurrency: int = DEFAULT_CONCURRENCY,
        executor: Executor | None = None,
        on_progress: Callable[[UploadProgress], None] | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.service = service
        self.planner = planner or PartPlanner()
        self.retry_policy = retry_policy or RetryPolicy()
        self.part_size = part_size
        self.concurrency = concurrency
        self.executor = executor
        self.on_progress = on_progress

        self._state = CoordinatorState.INIT
        self._state_lock = Lock()
        self.session: UploadSession | None = None
        self.parts: list[PartDescriptor] = []
        self.aggregator: ResultAggregator | None = None

    @property
    def state(self) -> CoordinatorState:
        with self._state_lock:
            return self._state

    def _transition(self, new_state: CoordinatorState) -> None:
        with self._state_lock:
            if new_state not in _TRANSITIONS[self._state]:
                raise RuntimeError(
                    f"Illegal upload state change: {self._state.value} -> {new_state.value}"
                )
            logger.debug(f"Upload state {self._state.value} -> {new_state.value}")
            self._state = new_state

    def _fail(self) -> None:
        with self._state_lock:
            if self._state not in (CoordinatorState.DONE, CoordinatorState.FAILED):
                self._state = CoordinatorState.FAILED

    def _call_with_retry(
        self,
        step: str,
        retry_on: type[ServiceError],
        fn: Callable[[], CompletedFile | UploadSession | None],
    ):
        attempts = 0
        while True:
            attempts += 1
            try:
                return fn()
            except retry_on as e:
                assert e.error_class is not None
                decision = self.retry_policy.decide(e.error_class, attempts)
                if not decision.retry:
                    raise
                logger.warning(f"Error in {step}: {e}, retrying in {decision.delay:.2f}s")
                _sleep(decision.delay)

    def _start(self, metadata: FileMetadata, preferred_mode: UploadMode) -> UploadSession:
        return self._call_with_retry(
            "start",
            StartError,
            lambda: self.service.start(metadata, preferred_mode),
        )

    def _complete(self, session: UploadSession, metadata: FileMetadata) -> CompletedFile:
        attempts = 0
        while True:
            attempts += 1
            result = self._call_with_retry(
                "complete",
                CompleteError,
                lambda: self.service.complete(session, metadata, self.parts),
            )
            if result is not None:
                assert isinstance(result, CompletedFile)
                return result
            # 202: the service is still assembling; poll like a throttled call
            decision = self.retry_policy.decide(ErrorClass.THROTTLED, attempts)
            if not decision.retry:
                raise CompleteError(
                    f"Upload {session.upload_id} still not assembled after {attempts} polls",
                    ErrorClass.THROTTLED,
                )
            _sleep(decision.delay)

    def _publish_progress(self) -> None:
        if self.on_progress is None or self.aggregator is None:
            return
        try:
            self.on_progress(self.aggregator.progress())
        except Exception as e:
            logger.warning(f"Progress callback raised: {e}", exc_info=True)

    def _run_part(
        self,
        uploader: PartUploader,
        session: UploadSession,
        descriptor: PartDescriptor,
        reader: RangeReader,
        outcomes: "Queue[PartOutcome]",
    ) -> None:
        assert self.aggregator is not None
        try:
            etag = uploader.upload_part(session, descriptor, reader)
            outcomes.put(PartOutcome(index=descriptor.index, etag=etag))
        except UploadCancelled:
            outcomes.put(PartOutcome(index=descriptor.index, cancelled=True))
        except UploadError as e:
            self.aggregator.record_failure(e)
            outcomes.put(PartOutcome(index=descriptor.index, error=e))
        except Exception as e:
            err = UploadError(
                f"Unexpected error in part {descriptor.index}: {e}",
                part_index=descriptor.index,
            )
            err.__cause__ = e
            self.aggregator.record_failure(err)
            outcomes.put(PartOutcome(index=descriptor.index, error=err))

    def _dispatch(
        self,
        executor: Executor,
        uploader: PartUploader,
        session: UploadSession,
        reader: RangeReader,
        outcomes: "Queue[PartOutcome]",
    ) -> None:
        """Submit parts and read their outcomes as they arrive, one per submitted part."""
        assert self.aggregator is not None
        futures: dict[Future[None], PartDescriptor] = {}
        received = 0
        cancelled_pending = False

        def consume() -> None:
            nonlocal received, cancelled_pending
            assert self.aggregator is not None
            outcome = outcomes.get()
            received += 1
            if outcome.ok:
                self._publish_progress()
            elif outcome.cancelled:
                logger.debug(f"Part {outcome.index} cancelled")
            if self.aggregator.cancelled and not cancelled_pending:
                cancelled_pending = True
                self._cancel_pending(futures, outcomes)

        for descriptor in self.parts:
            # If we are back filled on the workers, then we stall on the outcomes.
            while len(futures) - received >= self.concurrency:
                consume()
            if self.aggregator.cancelled:
                logger.info(
                    f"Stopping dispatch at part {descriptor.index} after a failure"
                )
                break
            fut = executor.submit(
                self._run_part, uploader, session, descriptor, reader, outcomes
            )
            futures[fut] = descriptor

        # the wave is closed, no part is dispatched after this point
        while received < len(futures):
            consume()

    def _cancel_pending(
        self,
        futures: dict["Future[None]", PartDescriptor],
        outcomes: "Queue[PartOutcome]",
    ) -> None:
        for fut, descriptor in futures.items():
            if fut.cancel():
                outcomes.put(PartOutcome(index=descriptor.index, cancelled=True))

    def run(
        self,
        reader: RangeReader,
        metadata: FileMetadata,
        preferred_mode: UploadMode = UploadMode.INTELLIGENT,
    ) -> CompletedFile:
        """
        Upload ``reader`` and return the stored file.

        :raises StartError: the session could not be opened
        :raises InvalidInputError: a non-positive file or part size, before any network call
        :raises PartialUploadFailure: a part failed for good; nothing was completed
        :raises CompleteError: every part committed but assembly failed
        """
        if self.state != CoordinatorState.INIT:
            raise RuntimeError(f"Coordinator already used (state={self.state.value})")
        try:
            if metadata.size <= 0:
                raise InvalidInputError(
                    f"Cannot upload {metadata.filename}: size is {metadata.size} bytes"
                )
            if self.part_size <= 0:
                raise InvalidInputError(f"Part size must be positive, got {self.part_size}")
            session = self._start(metadata, preferred_mode)
            self.session = session
            self._transition(CoordinatorState.STARTED)

            self.parts = self.planner.plan(metadata.size, self.part_size, session.mode)
            self.aggregator = ResultAggregator(self.parts)
            self._transition(CoordinatorState.UPLOADING)
            logger.info(
                f"Uploading {metadata.filename} in {len(self.parts)} part(s) "
                f"with {self.concurrency} worker(s)"
            )

            self._upload_parts(session, reader)

            failure = self.aggregator.first_failure()
            if failure is not None:
                committed = self.aggregator.count(PartState.COMMITTED)
                raise PartialUploadFailure(
                    failure, committed_parts=committed, total_parts=len(self.parts)
                ) from failure
            if not self.aggregator.all_committed():
                raise UploadError(
                    f"Upload {session.upload_id} finished dispatch without all parts committed: "
                    f"{self.aggregator.counts()}"
                )

            self._transition(CoordinatorState.COMPLETING)
            completed = self._complete(session, metadata)
            self._transition(CoordinatorState.DONE)
            logger.info(
                f"Upload {session.upload_id} complete: handle={completed.handle}"
            )
            return completed
        except BaseException:
            self._fail()
            raise

    def _upload_parts(self, session: UploadSession, reader: RangeReader) -> None:
        assert self.aggregator is not None
        uploader = PartUploader(self.service, self.retry_policy, self.aggregator)
        outcomes: Queue[PartOutcome] = Queue()
        owns_executor = self.executor is None
        executor = self.executor or ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="filestack-part"
        )
        try:
            self._dispatch(executor, uploader, session, reader, outcomes)
        except BaseException:
            self.aggregator.cancel_event.set()
            if owns_executor:
                executor.shutdown(wait=False, cancel_futures=True)
            raise
        if owns_executor:
            executor.shutdown(wait=True)


def _sleep(seconds: float) -> None:
    if seconds > 0:
        time.sleep(seconds)
