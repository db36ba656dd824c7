"""
The five remote calls the engine needs, behind a narrow interface.

``UploadService`` is what the coordinator and part uploader depend on.
``HttpUploadService`` talks to the Filestack multipart REST API and the
storage backend with httpx; tests substitute an in-memory implementation.
"""

import logging
from typing import Protocol

import httpx

from filestack_api.errors import (
    CommitError,
    CompleteError,
    CredentialError,
    ErrorClass,
    ServiceError,
    StartError,
    TransferError,
)
from filestack_api.retry import classify_exception, classify_status
from filestack_api.types import (
    CompletedFile,
    FileMetadata,
    PartDescriptor,
    Security,
    StorageOptions,
    UploadCredentials,
    UploadMode,
    UploadSession,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://upload.filestackapi.com"

_HTTP_ACCEPTED = 202


class UploadService(Protocol):
    def start(
        self, metadata: FileMetadata, preferred_mode: UploadMode
    ) -> UploadSession: ...

    def get_part_credentials(
        self, session: UploadSession, part: PartDescriptor, md5: str
    ) -> UploadCredentials: ...

    def transfer(
        self, credentials: UploadCredentials, part: PartDescriptor, data: bytes
    ) -> str: ...

    def commit(self, session: UploadSession, part: PartDescriptor) -> None: ...

    def complete(
        self,
        session: UploadSession,
        metadata: FileMetadata,
        parts: list[PartDescriptor],
    ) -> CompletedFile | None:
        """Returns None while the service is still assembling the file."""
        ...


def _error_message(response: httpx.Response) -> str:
    text = response.text
    if len(text) > 500:
        text = text[:500] + "..."
    return f"HTTP {response.status_code} from {response.request.url}: {text}"


class HttpUploadService:
    """UploadService over the Filestack multipart REST API."""

    def __init__(
        self,
        api_key: str,
        security: Security | None = None,
        storage: StorageOptions | None = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: httpx.Timeout | float = 120.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.api_key = api_key
        self.security = security
        self.storage = storage or StorageOptions()
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout)

    def _session_url(self, session: UploadSession | None, path: str) -> str:
        # once started, requests should go to the host the session lives on
        if session is not None and session.location_url:
            host = session.location_url
            if not host.startswith("http"):
                host = f"https://{host}"
            return f"{host.rstrip('/')}{path}"
        return f"{self.base_url}{path}"

    def _security_form(self) -> dict[str, str]:
        if self.security is None:
            return {}
        return {"policy": self.security.policy, "signature": self.security.signature}

    def _session_form(self, session: UploadSession) -> dict[str, str]:
        form = {
            "apikey": self.api_key,
            "upload_id": session.upload_id,
            "uri": session.uri,
            "region": session.region,
            "store_location": self.storage.location,
        }
        if session.mode == UploadMode.INTELLIGENT:
            form["multipart"] = "true"
        return form

    def _post(
        self,
        session: UploadSession | None,
        path: str,
        form: dict[str, str],
        error_type: type[ServiceError],
        part_index: int | None = None,
    ) -> httpx.Response:
        url = self._session_url(session, path)
        try:
            response = self.client.post(url, data=form)
        except httpx.HTTPError as e:
            raise error_type(
                f"{path} failed: {e}", classify_exception(e), part_index=part_index
            ) from e
        if response.is_error:
            raise error_type(
                _error_message(response),
                classify_status(response.status_code, response.text),
                part_index=part_index,
                status_code=response.status_code,
            )
        return response

    def _json(
        self,
        response: httpx.Response,
        error_type: type[ServiceError],
        part_index: int | None = None,
    ) -> dict:
        try:
            out = response.json()
        except ValueError as e:
            raise error_type(
                f"Malformed response from {response.request.url}: {e}",
                ErrorClass.SERVER_ERROR,
                part_index=part_index,
            ) from e
        if not isinstance(out, dict):
            raise error_type(
                f"Unexpected response from {response.request.url}: {out!r}",
                ErrorClass.SERVER_ERROR,
                part_index=part_index,
            )
        return out

    def start(self, metadata: FileMetadata, preferred_mode: UploadMode) -> UploadSession:
        form = {
            "apikey": self.api_key,
            "filename": metadata.filename,
            "mimetype": metadata.mimetype,
            "size": str(metadata.size),
        }
        form.update(self.storage.to_form())
        if preferred_mode == UploadMode.INTELLIGENT:
            form["multipart"] = "true"
        form.update(self._security_form())
        response = self._post(None, "/multipart/start", form, StartError)
        json = self._json(response, StartError)
        try:
            session = UploadSession.from_json(json)
        except KeyError as e:
            raise StartError(
                f"Start response is missing {e}", ErrorClass.SERVER_ERROR
            ) from e
        logger.info(
            f"Started upload {session.upload_id} for {metadata.filename} ({session.mode.value})"
        )
        return session

    def get_part_credentials(
        self, session: UploadSession, part: PartDescriptor, md5: str
    ) -> UploadCredentials:
        form = self._session_form(session)
        form.update(
            {
                "part": str(part.part_number),
                "size": str(part.length),
                "md5": md5,
            }
        )
        if session.mode == UploadMode.INTELLIGENT:
            form["offset"] = "0"
        response = self._post(
            session, "/multipart/upload", form, CredentialError, part.index
        )
        json = self._json(response, CredentialError, part.index)
        try:
            return UploadCredentials.from_json(json)
        except KeyError as e:
            raise CredentialError(
                f"Credential response for part {part.index} is missing {e}",
                ErrorClass.SERVER_ERROR,
                part_index=part.index,
            ) from e

    def transfer(
        self, credentials: UploadCredentials, part: PartDescriptor, data: bytes
    ) -> str:
        credentials.consumed = True
        try:
            response = self.client.put(
                credentials.url, headers=credentials.headers, content=data
            )
        except httpx.HTTPError as e:
            raise TransferError(
                f"Transfer of part {part.index} failed: {e}",
                classify_exception(e),
                part_index=part.index,
            ) from e
        if response.is_error:
            raise TransferError(
                _error_message(response),
                classify_status(response.status_code, response.text),
                part_index=part.index,
                status_code=response.status_code,
            )
        etag = response.headers.get("ETag")
        if not etag:
            raise TransferError(
                f"No ETag returned for part {part.index}",
                ErrorClass.SERVER_ERROR,
                part_index=part.index,
                status_code=response.status_code,
            )
        return etag.strip('"')

    def commit(self, session: UploadSession, part: PartDescriptor) -> None:
        form = self._session_form(session)
        form.update({"part": str(part.part_number), "size": str(part.length)})
        self._post(session, "/multipart/commit", form, CommitError, part.index)

    def complete(
        self,
        session: UploadSession,
        metadata: FileMetadata,
        parts: list[PartDescriptor],
    ) -> CompletedFile | None:
        form = self._session_form(session)
        form.update(self.storage.to_form())
        form.update(
            {
                "filename": metadata.filename,
                "mimetype": metadata.mimetype,
                "size": str(metadata.size),
                # Some backends need the parts in order.
                "parts": ";".join(
                    f"{p.part_number}:{p.etag}"
                    for p in sorted(parts, key=lambda x: x.index)
                ),
            }
        )
        form.update(self._security_form())
        response = self._post(session, "/multipart/complete", form, CompleteError)
        if response.status_code == _HTTP_ACCEPTED:
            logger.info(f"Upload {session.upload_id} accepted, still assembling")
            return None
        json = self._json(response, CompleteError)
        try:
            return CompletedFile.from_json(json)
        except KeyError as e:
            raise CompleteError(
                f"Complete response is missing {e}", ErrorClass.SERVER_ERROR
            ) from e

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> "HttpUploadService":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()
