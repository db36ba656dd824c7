import logging
import os
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from pathlib import Path
from threading import Lock, Thread
from typing import Callable

from filestack_api.config import UploadConfig
from filestack_api.coordinator import UploadCoordinator
from filestack_api.file_reader import LocalFileReader, RangeReader
from filestack_api.planner import PartPlanner
from filestack_api.service import HttpUploadService, UploadService
from filestack_api.types import (
    CompletedFile,
    FileMetadata,
    UploadMode,
    UploadProgress,
)

logger = logging.getLogger(__name__)


class FsClient:
    """Uploads local files to Filestack."""

    def __init__(self, config: UploadConfig, service: UploadService | None = None) -> None:
        self.config = config.validate()
        assert self.config.api_key is not None
        self._owned_service: HttpUploadService | None = None
        if service is None:
            self._owned_service = HttpUploadService(
                api_key=self.config.api_key,
                security=self.config.security,
                storage=self.config.storage,
                base_url=self.config.base_url,
                timeout=self.config.timeout(),
            )
            service = self._owned_service
        self.service: UploadService = service
        self._callback_executor: Executor | None = self.config.callback_executor
        self._owns_callback_executor = self._callback_executor is None
        self._lock = Lock()

    @property
    def io_executor(self) -> Executor | None:
        return self.config.io_executor

    @property
    def callback_executor(self) -> Executor:
        with self._lock:
            if self._callback_executor is None:
                self._callback_executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="filestack-callback"
                )
            return self._callback_executor

    def _new_coordinator(
        self, on_progress: Callable[[UploadProgress], None] | None
    ) -> UploadCoordinator:
        assert isinstance(self.config.part_size, int)
        assert isinstance(self.config.min_part_size, int)
        assert isinstance(self.config.max_part_size, int)
        assert self.config.concurrency is not None
        return UploadCoordinator(
            service=self.service,
            planner=PartPlanner(
                min_part_size=self.config.min_part_size,
                max_part_size=self.config.max_part_size,
            ),
            retry_policy=self.config.retry_policy(),
            part_size=self.config.part_size,
            concurrency=self.config.concurrency,
            executor=self.config.io_executor,
            on_progress=on_progress,
        )

    def _open(
        self, path: str | os.PathLike, mimetype: str | None
    ) -> tuple[RangeReader, FileMetadata]:
        reader = LocalFileReader(path)
        metadata = FileMetadata.for_path(Path(path), reader.size, mimetype)
        return reader, metadata

    def upload(
        self,
        path: str | os.PathLike,
        intelligent: bool = True,
        mimetype: str | None = None,
        on_progress: Callable[[UploadProgress], None] | None = None,
    ) -> CompletedFile:
        """
        Upload a local file and wait for the stored result.

        :param path: the file to upload
        :param intelligent: ask the service for intelligent (multi-part) ingestion
        :param mimetype: overrides the type guessed from the file name
        :param on_progress: called on the upload thread after each committed part
        :raises FileAccessError: before any network call when the file cannot be opened
        """
        reader, metadata = self._open(path, mimetype)
        mode = UploadMode.INTELLIGENT if intelligent else UploadMode.SIMPLE
        logger.info(f"Uploading {path} ({metadata.size} bytes, {metadata.mimetype})")
        return self._new_coordinator(on_progress).run(reader, metadata, mode)

    def upload_async(
        self,
        path: str | os.PathLike,
        intelligent: bool = True,
        mimetype: str | None = None,
        on_complete: Callable[[CompletedFile], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
        on_progress: Callable[[UploadProgress], None] | None = None,
    ) -> "Future[CompletedFile]":
        """
        Start an upload in the background.

        The file is opened before this returns, so a missing file raises
        FileAccessError here. Callbacks run on the callback executor, never on
        the upload or I/O threads.
        """
        reader, metadata = self._open(path, mimetype)
        mode = UploadMode.INTELLIGENT if intelligent else UploadMode.SIMPLE
        callbacks = self.callback_executor
        out: Future[CompletedFile] = Future()
        out.set_running_or_notify_cancel()

        def deliver_progress(progress: UploadProgress) -> None:
            if on_progress is not None:
                callbacks.submit(on_progress, progress)

        coordinator = self._new_coordinator(deliver_progress if on_progress else None)

        def task() -> None:
            try:
                result = coordinator.run(reader, metadata, mode)
            except Exception as e:
                logger.error(f"Upload of {path} failed: {e}")
                out.set_exception(e)
                if on_error is not None:
                    callbacks.submit(on_error, e)
                return
            out.set_result(result)
            if on_complete is not None:
                callbacks.submit(on_complete, result)

        thread = Thread(target=task, name=f"filestack-upload-{metadata.filename}", daemon=True)
        thread.start()
        return out

    def close(self) -> None:
        if self._owned_service is not None:
            self._owned_service.close()
        with self._lock:
            if self._owns_callback_executor and self._callback_executor is not None:
                self._callback_executor.shutdown(wait=True)
                self._callback_executor = None

    def __enter__(self) -> "FsClient":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()
