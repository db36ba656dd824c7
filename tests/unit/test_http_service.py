"""
Unit test file.
"""

import base64
import hashlib
import os
import tempfile
import unittest
from pathlib import Path
from threading import Lock
from urllib.parse import parse_qs

import httpx

from filestack_api import (
    CommitError,
    CompleteError,
    CredentialError,
    ErrorClass,
    FileMetadata,
    FsClient,
    HttpUploadService,
    PartDescriptor,
    Security,
    StartError,
    StorageOptions,
    TransferError,
    UploadConfig,
    UploadCredentials,
    UploadMode,
    UploadSession,
)

_START_RESPONSE = {
    "uri": "/bucket/apikey/filename",
    "region": "region",
    "upload_id": "id",
    "location_url": "upload-eu.filestackapi.com",
    "upload_type": "intelligent_ingestion",
}


def _form(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


class MockFilestack:
    """Answers the multipart endpoints and the storage PUTs in memory."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.requests: list[tuple[str, str, dict[str, str]]] = []
        self.parts: dict[int, bytes] = {}
        self.overrides: dict[str, httpx.Response] = {}
        self.pending_completes = 0

    def paths(self) -> list[str]:
        with self.lock:
            return [path for _, path, _ in self.requests]

    def form_for(self, path: str) -> dict[str, str]:
        with self.lock:
            return next(form for _, p, form in self.requests if p == path)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "PUT":
            return self._put(request)
        form = _form(request)
        with self.lock:
            self.requests.append((request.url.host, path, form))
        if path in self.overrides:
            return self.overrides[path]
        if path == "/multipart/start":
            return httpx.Response(200, json=_START_RESPONSE)
        if path == "/multipart/upload":
            return httpx.Response(
                200,
                json={
                    "url": f"https://s3.amazonaws.com/bucket?partNumber={form['part']}",
                    "headers": {
                        "Authorization": "auth_value",
                        "Content-MD5": form["md5"],
                        "x-amz-content-sha256": "sha256_value",
                        "x-amz-date": "date_value",
                    },
                    "location_url": "upload-eu.filestackapi.com",
                },
            )
        if path == "/multipart/commit":
            return httpx.Response(200)
        if path == "/multipart/complete":
            with self.lock:
                if self.pending_completes > 0:
                    self.pending_completes -= 1
                    return httpx.Response(202)
            return httpx.Response(
                200,
                json={
                    "handle": "handle",
                    "url": "https://cdn.filestackcontent.com/handle",
                    "filename": form["filename"],
                    "size": form["size"],
                    "mimetype": form["mimetype"],
                },
            )
        return httpx.Response(404, text="not found")

    def _put(self, request: httpx.Request) -> httpx.Response:
        if "PUT" in self.overrides:
            return self.overrides["PUT"]
        body = request.content
        expected = base64.b64encode(hashlib.md5(body).digest()).decode("ascii")
        if request.headers.get("Content-MD5") != expected:
            return httpx.Response(400, text="<Error><Code>BadDigest</Code></Error>")
        number = int(request.url.params["partNumber"])
        with self.lock:
            self.parts[number] = body
        return httpx.Response(200, headers={"ETag": f'"etag-{number}"'})


class HttpUploadServiceTester(unittest.TestCase):
    """Test the REST calls against a mock transport."""

    def setUp(self) -> None:
        self.mock = MockFilestack()
        self.client = httpx.Client(transport=httpx.MockTransport(self.mock.handler))
        self.service = HttpUploadService(
            api_key="apikey",
            security=Security(policy="policy", signature="signature"),
            storage=StorageOptions(path="uploads/"),
            client=self.client,
        )
        self.metadata = FileMetadata(
            filename="filename.txt", size=2048, mimetype="text/plain"
        )
        self.session = UploadSession(
            upload_id="id",
            region="region",
            location_url="upload-eu.filestackapi.com",
            uri="/bucket/apikey/filename",
            mode=UploadMode.INTELLIGENT,
        )

    def tearDown(self) -> None:
        self.service.close()
        self.client.close()

    def test_start(self) -> None:
        session = self.service.start(self.metadata, UploadMode.INTELLIGENT)
        self.assertEqual(session.upload_id, "id")
        self.assertEqual(session.mode, UploadMode.INTELLIGENT)
        host, _, form = self.mock.requests[0]
        self.assertEqual(host, "upload.filestackapi.com")
        self.assertEqual(form["apikey"], "apikey")
        self.assertEqual(form["filename"], "filename.txt")
        self.assertEqual(form["size"], "2048")
        self.assertEqual(form["mimetype"], "text/plain")
        self.assertEqual(form["store_location"], "s3")
        self.assertEqual(form["store_path"], "uploads/")
        self.assertEqual(form["multipart"], "true")
        self.assertEqual(form["policy"], "policy")
        self.assertEqual(form["signature"], "signature")

    def test_start_simple_session(self) -> None:
        self.mock.overrides["/multipart/start"] = httpx.Response(
            200, json={**_START_RESPONSE, "upload_type": "regular"}
        )
        session = self.service.start(self.metadata, UploadMode.SIMPLE)
        self.assertEqual(session.mode, UploadMode.SIMPLE)
        self.assertNotIn("multipart", self.mock.requests[0][2])

    def test_start_malformed_response(self) -> None:
        self.mock.overrides["/multipart/start"] = httpx.Response(200, text="<html>")
        with self.assertRaises(StartError) as ctx:
            self.service.start(self.metadata, UploadMode.INTELLIGENT)
        self.assertEqual(ctx.exception.error_class, ErrorClass.SERVER_ERROR)

    def test_start_missing_field(self) -> None:
        self.mock.overrides["/multipart/start"] = httpx.Response(200, json={"uri": "x"})
        with self.assertRaises(StartError):
            self.service.start(self.metadata, UploadMode.INTELLIGENT)

    def test_credentials_go_to_session_host(self) -> None:
        part = PartDescriptor(index=0, offset=0, length=1024)
        creds = self.service.get_part_credentials(self.session, part, "bWQ1")
        self.assertEqual(creds.headers["Content-MD5"], "bWQ1")
        self.assertTrue(creds.single_use)
        self.assertFalse(creds.is_expired())
        host, path, form = self.mock.requests[0]
        self.assertEqual(host, "upload-eu.filestackapi.com")
        self.assertEqual(path, "/multipart/upload")
        self.assertEqual(form["part"], "1")
        self.assertEqual(form["size"], "1024")
        self.assertEqual(form["md5"], "bWQ1")
        self.assertEqual(form["upload_id"], "id")
        self.assertEqual(form["multipart"], "true")

    def test_credentials_forbidden(self) -> None:
        self.mock.overrides["/multipart/upload"] = httpx.Response(403, text="Forbidden")
        part = PartDescriptor(index=2, offset=2048, length=1024)
        with self.assertRaises(CredentialError) as ctx:
            self.service.get_part_credentials(self.session, part, "bWQ1")
        err = ctx.exception
        self.assertEqual(err.error_class, ErrorClass.AUTHORIZATION)
        self.assertEqual(err.status_code, 403)
        self.assertEqual(err.part_index, 2)
        self.assertFalse(err.retryable)

    def test_transfer(self) -> None:
        data = b"x" * 1024
        md5 = base64.b64encode(hashlib.md5(data).digest()).decode("ascii")
        part = PartDescriptor(index=0, offset=0, length=1024)
        creds = self.service.get_part_credentials(self.session, part, md5)
        etag = self.service.transfer(creds, part, data)
        self.assertEqual(etag, "etag-1")
        self.assertTrue(creds.is_expired())
        self.assertEqual(self.mock.parts[1], data)

    def test_transfer_checksum_mismatch(self) -> None:
        part = PartDescriptor(index=0, offset=0, length=4)
        creds = UploadCredentials(
            url="https://s3.amazonaws.com/bucket?partNumber=1",
            headers={"Content-MD5": "wrong"},
            location_url="",
        )
        with self.assertRaises(TransferError) as ctx:
            self.service.transfer(creds, part, b"data")
        self.assertEqual(ctx.exception.error_class, ErrorClass.CHECKSUM_MISMATCH)

    def test_transfer_without_etag(self) -> None:
        self.mock.overrides["PUT"] = httpx.Response(200)
        part = PartDescriptor(index=0, offset=0, length=4)
        creds = UploadCredentials(url="https://s3.amazonaws.com/b", headers={}, location_url="")
        with self.assertRaises(TransferError) as ctx:
            self.service.transfer(creds, part, b"data")
        self.assertEqual(ctx.exception.error_class, ErrorClass.SERVER_ERROR)
        self.assertTrue(ctx.exception.retryable)

    def test_transfer_connection_error(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        service = HttpUploadService(
            api_key="apikey", client=httpx.Client(transport=httpx.MockTransport(refuse))
        )
        part = PartDescriptor(index=4, offset=0, length=4)
        creds = UploadCredentials(url="https://s3.amazonaws.com/b", headers={}, location_url="")
        with self.assertRaises(TransferError) as ctx:
            service.transfer(creds, part, b"data")
        self.assertEqual(ctx.exception.error_class, ErrorClass.CONNECTION_RESET)
        self.assertEqual(ctx.exception.part_index, 4)
        service.client.close()

    def test_commit_server_error_is_retryable(self) -> None:
        self.mock.overrides["/multipart/commit"] = httpx.Response(500, text="oops")
        part = PartDescriptor(index=1, offset=1024, length=1024, etag="etag-2")
        with self.assertRaises(CommitError) as ctx:
            self.service.commit(self.session, part)
        self.assertEqual(ctx.exception.error_class, ErrorClass.SERVER_ERROR)
        self.assertTrue(ctx.exception.retryable)

    def test_complete(self) -> None:
        parts = [
            PartDescriptor(index=1, offset=1024, length=1024, etag="etag-2"),
            PartDescriptor(index=0, offset=0, length=1024, etag="etag-1"),
        ]
        result = self.service.complete(self.session, self.metadata, parts)
        assert result is not None
        self.assertEqual(result.handle, "handle")
        self.assertEqual(result.size, 2048)
        form = self.mock.form_for("/multipart/complete")
        self.assertEqual(form["parts"], "1:etag-1;2:etag-2")
        self.assertEqual(form["filename"], "filename.txt")
        self.assertEqual(form["policy"], "policy")

    def test_complete_accepted(self) -> None:
        self.mock.pending_completes = 1
        part = PartDescriptor(index=0, offset=0, length=2048, etag="etag-1")
        self.assertIsNone(self.service.complete(self.session, self.metadata, [part]))

    def test_complete_throttled(self) -> None:
        self.mock.overrides["/multipart/complete"] = httpx.Response(429)
        part = PartDescriptor(index=0, offset=0, length=2048, etag="etag-1")
        with self.assertRaises(CompleteError) as ctx:
            self.service.complete(self.session, self.metadata, [part])
        self.assertEqual(ctx.exception.error_class, ErrorClass.THROTTLED)


class FsClientHttpTester(unittest.TestCase):
    """Upload a real file through FsClient over the mock transport."""

    def test_upload(self) -> None:
        mock = MockFilestack()
        mock.pending_completes = 1
        http = httpx.Client(transport=httpx.MockTransport(mock.handler))
        service = HttpUploadService(
            api_key="apikey",
            security=Security(policy="policy", signature="signature"),
            client=http,
        )
        config = UploadConfig(
            api_key="apikey",
            security=Security(policy="policy", signature="signature"),
            part_size=1024,
            min_part_size=1,
            base_delay=0.0,
        )
        with tempfile.TemporaryDirectory() as tempdir:
            path = Path(tempdir) / "filename.bin"
            data = os.urandom(3000)
            path.write_bytes(data)
            with FsClient(config, service=service) as client:
                result = client.upload(path)
        http.close()

        self.assertEqual(result.handle, "handle")
        self.assertEqual(result.size, 3000)
        self.assertEqual(b"".join(mock.parts[n] for n in sorted(mock.parts)), data)
        paths = mock.paths()
        self.assertEqual(paths[0], "/multipart/start")
        self.assertEqual(paths.count("/multipart/upload"), 3)
        self.assertEqual(paths.count("/multipart/commit"), 3)
        self.assertEqual(paths.count("/multipart/complete"), 2)
        form = mock.form_for("/multipart/complete")
        self.assertEqual(form["parts"], "1:etag-1;2:etag-2;3:etag-3")
        self.assertEqual(form["mimetype"], "application/octet-stream")


if __name__ == "__main__":
    unittest.main()
