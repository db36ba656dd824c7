import base64
import hashlib
import logging
from threading import Event
from typing import Callable, TypeVar

from filestack_api.aggregator import ResultAggregator
from filestack_api.errors import (
    CommitError,
    CredentialError,
    ServiceError,
    TransferError,
    UploadCancelled,
    UploadError,
)
from filestack_api.file_reader import RangeReader
from filestack_api.retry import RetryPolicy
from filestack_api.service import UploadService
from filestack_api.types import (
    PartDescriptor,
    PartState,
    UploadCredentials,
    UploadSession,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def md5_b64(data: bytes) -> str:
    return base64.b64encode(hashlib.md5(data).digest()).decode("ascii")


class PartUploader:
    """
    Moves one part to the store: credentials, transfer, commit.

    Each step retries on its own; a failed commit does not resend the bytes.
    The cancel event is checked before every network call and wakes up any
    backoff sleep.
    """

    def __init__(
        self,
        service: UploadService,
        retry_policy: RetryPolicy | None = None,
        aggregator: ResultAggregator | None = None,
    ) -> None:
        self.service = service
        self.retry_policy = retry_policy or RetryPolicy()
        self.aggregator = aggregator
        self.cancel_event: Event = (
            aggregator.cancel_event if aggregator is not None else Event()
        )

    def _set_state(self, descriptor: PartDescriptor, state: PartState) -> None:
        if self.aggregator is not None:
            self.aggregator.transition(descriptor, state)
            return
        if not descriptor.can_transition(state):
            raise RuntimeError(
                f"Part {descriptor.index} cannot move from {descriptor.state.value} to {state.value}"
            )
        descriptor.state = state

    def _check_cancelled(self, descriptor: PartDescriptor) -> None:
        if self.cancel_event.is_set():
            raise UploadCancelled(
                f"Part {descriptor.index} cancelled", part_index=descriptor.index
            )

    def _with_retry(
        self,
        descriptor: PartDescriptor,
        step: str,
        retry_on: type[ServiceError],
        fn: Callable[[], T],
    ) -> T:
        attempts = 0
        while True:
            self._check_cancelled(descriptor)
            attempts += 1
            descriptor.attempt_count += 1
            try:
                return fn()
            except retry_on as e:
                assert e.error_class is not None
                decision = self.retry_policy.decide(e.error_class, attempts)
                if not decision.retry:
                    logger.error(
                        f"Giving up on {step} for part {descriptor.index} after {attempts} attempt(s): {e}"
                    )
                    raise
                logger.warning(
                    f"Error in {step} for part {descriptor.index}: {e}, retrying in {decision.delay:.2f}s"
                )
                if self.cancel_event.wait(decision.delay):
                    raise UploadCancelled(
                        f"Part {descriptor.index} cancelled while backing off",
                        part_index=descriptor.index,
                    ) from e

    def _fetch_credentials(
        self, session: UploadSession, descriptor: PartDescriptor, md5: str
    ) -> UploadCredentials:
        return self._with_retry(
            descriptor,
            "credential fetch",
            CredentialError,
            lambda: self.service.get_part_credentials(session, descriptor, md5),
        )

    def _transfer(
        self,
        session: UploadSession,
        descriptor: PartDescriptor,
        reader: RangeReader,
        data: bytes,
        md5: str,
    ) -> str:
        creds: UploadCredentials | None = None
        payload: bytes | None = data

        def attempt() -> str:
            nonlocal creds, payload
            if payload is None:
                # re-read instead of holding bytes across attempts
                payload = reader.read_range(descriptor.offset, descriptor.length)
            if creds is None or creds.is_expired():
                creds = self._fetch_credentials(session, descriptor, md5)
            self._check_cancelled(descriptor)
            body = payload
            payload = None
            return self.service.transfer(creds, descriptor, body)

        return self._with_retry(descriptor, "transfer", TransferError, attempt)

    def _commit(self, session: UploadSession, descriptor: PartDescriptor) -> None:
        self._with_retry(
            descriptor,
            "commit",
            CommitError,
            lambda: self.service.commit(session, descriptor),
        )

    def upload_part(
        self, session: UploadSession, descriptor: PartDescriptor, reader: RangeReader
    ) -> str:
        """
        Upload and commit a single part.

        :return: the ETag the store returned for the part
        :raises UploadCancelled: when the cancel event fired first
        :raises UploadError: when a step failed for good; the part is marked failed
        """
        self._check_cancelled(descriptor)
        self._set_state(descriptor, PartState.UPLOADING)
        logger.info(
            f"Uploading part {descriptor.index} ({descriptor.offset}-{descriptor.end})"
        )
        try:
            data = reader.read_range(descriptor.offset, descriptor.length)
            md5 = md5_b64(data)
            etag = self._transfer(session, descriptor, reader, data, md5)
            descriptor.etag = etag
            self._set_state(descriptor, PartState.UPLOADED)

            self._commit(session, descriptor)
            self._set_state(descriptor, PartState.COMMITTED)
            logger.info(f"Committed part {descriptor.index} with etag {etag}")
            return etag
        except UploadCancelled:
            raise
        except UploadError as e:
            if e.part_index is None:
                e.part_index = descriptor.index
            if descriptor.can_transition(PartState.FAILED):
                self._set_state(descriptor, PartState.FAILED)
            raise
