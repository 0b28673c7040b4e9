"""
S3 protocol adapter for object storage.

Uses boto3 to implement the StorageDriver contract on top of an S3 bucket,
optionally under a key prefix. Directories are key prefixes; ``make_dir``
writes a zero-byte ``<dir>/`` marker object. Writes are spooled, then sent as
one ``put_object`` or, above ``S3_MULTIPART_THRESHOLD``, as a multipart
upload that is aborted if the write fails or is cancelled.
"""
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)
from pydantic import Field

from mountvfs.config import settings
from mountvfs.file_access.base_fs import (
    ByteStream,
    DriverConfig,
    FileEntry,
    FileOperationResult,
    Listing,
    StorageDriver,
    StreamHandle,
    guess_mime_type,
)
from mountvfs.file_access.errors import (
    AlreadyExistsError,
    BackendConnectionError,
    InvalidPathError,
    PathNotFoundError,
    PermissionDeniedError,
    StorageError,
)
from mountvfs.file_access.paths import normalize_path
from mountvfs.file_access.streams import iter_fileobj, spool, spool_size

logger = structlog.get_logger()

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_DENIED_CODES = {"403", "AccessDenied", "InvalidAccessKeyId", "SignatureDoesNotMatch", "AllAccessDisabled"}
_DELETE_BATCH = 1000


class S3Config(DriverConfig):
    access_key: str = Field(alias="accessKey", min_length=1)
    secret_key: str = Field(alias="secretKey", min_length=1)
    bucket: str = Field(min_length=1)
    region: str = "us-east-1"
    endpoint: Optional[str] = None
    prefix: str = ""
    presign_downloads: bool = Field(default=False, alias="presignDownloads")
    presign_ttl: int = Field(default=900, alias="presignTtl", ge=1)


class S3ProtocolAdapter(StorageDriver):
    """
    S3 protocol adapter.

    Configuration:
    {
        "accessKey": "AKIA...",          # Required
        "secretKey": "...",              # Required
        "bucket": "media",               # Required
        "region": "us-east-1",           # Optional, default: us-east-1
        "endpoint": "http://minio:9000", # Optional, S3-compatible endpoint (path-style)
        "prefix": "tenant_a/",           # Optional key prefix
        "presignDownloads": false,       # Optional, open_read returns a pre-signed URL
        "presignTtl": 900                # Optional, URL lifetime in seconds
    }

    Parent policy: parents are implicit, ``write`` never fails for a missing
    parent and ``make_dir`` on an existing directory rewrites the marker.
    ``move`` is copy-then-delete; the copy completes before any delete.
    """

    kind = "s3"
    config_model = S3Config

    async def _setup(self) -> None:
        self.bucket = self.options.bucket
        prefix = normalize_path(self.options.prefix or "/").strip("/")
        self.prefix = f"{prefix}/" if prefix else ""
        self.presign_downloads = getattr(self.options, "presign_downloads", False)
        self.presign_ttl = getattr(self.options, "presign_ttl", 900)
        self._client = boto3.client("s3", **self._client_kwargs())
        logger.info("s3_adapter_initialized", bucket=self.bucket, prefix=self.prefix, kind=self.kind)

    def _client_kwargs(self) -> Dict[str, Any]:
        opts = self.options
        return {
            "aws_access_key_id": opts.access_key,
            "aws_secret_access_key": opts.secret_key,
            "endpoint_url": opts.endpoint or None,
            "config": Config(
                region_name=opts.region,
                signature_version="s3v4",
                s3={"addressing_style": "path" if opts.endpoint else "auto"},
            ),
        }

    # ------------------------------------------------------------------
    # Keys and error mapping
    # ------------------------------------------------------------------

    def _key(self, path: str) -> str:
        return self.prefix + normalize_path(path).lstrip("/")

    def _dir_prefix(self, path: str) -> str:
        key = self._key(path)
        if key and not key.endswith("/"):
            key += "/"
        return key

    def _translate(self, exc: Exception, path: str) -> StorageError:
        if isinstance(exc, ClientError):
            error = exc.response.get("Error", {})
            code = str(error.get("Code", ""))
            status = str(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", ""))
            if code in _NOT_FOUND_CODES or status == "404":
                return PathNotFoundError(f"Path not found: {path}")
            if code in _DENIED_CODES or status == "403":
                return PermissionDeniedError(f"Access denied: {path} ({code})")
            return StorageError(f"{self.kind} error on {path}: {code} {error.get('Message', '')}".rstrip())
        if isinstance(exc, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
            return BackendConnectionError(f"{self.kind}: cannot reach endpoint: {exc}")
        if isinstance(exc, NoCredentialsError):
            return PermissionDeniedError(f"{self.kind}: no credentials")
        return StorageError(f"{self.kind} error on {path}: {exc}")

    async def _call(self, path: str, method: str, to_end: bool = False, **kwargs: Any) -> Any:
        """
        Run one client request in the executor with error translation.

        ``to_end`` waits for an in-flight request before a cancellation
        propagates (see ``_run_to_end``).
        """
        self._require_init()
        run = self._run_to_end if to_end else self._run
        try:
            return await run(getattr(self._client, method), **kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, path) from exc

    async def _head(self, path: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._call(path, "head_object", Bucket=self.bucket, Key=self._key(path))
        except PathNotFoundError:
            return None

    async def _is_dir(self, path: str) -> bool:
        if normalize_path(path) == "/":
            return True
        resp = await self._call(
            path, "list_objects_v2", Bucket=self.bucket, Prefix=self._dir_prefix(path), MaxKeys=1
        )
        return resp.get("KeyCount", len(resp.get("Contents", []))) > 0

    async def _iter_keys(self, path: str) -> AsyncIterator[str]:
        """Every key below a directory prefix, marker included."""
        token = None
        prefix = self._dir_prefix(path)
        while True:
            kwargs = {"Bucket": self.bucket, "Prefix": prefix}
            if token:
                kwargs["ContinuationToken"] = token
            resp = await self._call(path, "list_objects_v2", **kwargs)
            for obj in resp.get("Contents", []):
                yield obj["Key"]
            if not resp.get("IsTruncated"):
                break
            token = resp.get("NextContinuationToken")

    def _file_entry(self, path: str, size: int, modified, etag: Optional[str]) -> FileEntry:
        content_hash = None
        if etag:
            etag = etag.strip('"')
            # multipart ETags ("<hash>-<parts>") are not an MD5 of the content
            if "-" not in etag:
                content_hash = {"md5": etag}
        return FileEntry.build(
            path=path, size=size, is_directory=False, modified_at=modified, content_hash=content_hash
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def list(self, path: str) -> Listing:
        path = normalize_path(path)
        prefix = self._dir_prefix(path)
        dirs: List[FileEntry] = []
        files: List[FileEntry] = []
        seen_any = False
        token = None

        while True:
            kwargs = {"Bucket": self.bucket, "Prefix": prefix, "Delimiter": "/"}
            if token:
                kwargs["ContinuationToken"] = token
            resp = await self._call(path, "list_objects_v2", **kwargs)

            for common in resp.get("CommonPrefixes", []):
                seen_any = True
                name = common["Prefix"][len(prefix):].rstrip("/")
                if name:
                    dirs.append(FileEntry.build(path=f"{path.rstrip('/')}/{name}", size=0, is_directory=True))
            for obj in resp.get("Contents", []):
                seen_any = True
                name = obj["Key"][len(prefix):]
                # skip the directory marker itself
                if not name or name.endswith("/"):
                    continue
                files.append(
                    self._file_entry(
                        f"{path.rstrip('/')}/{name}", obj.get("Size", 0), obj.get("LastModified"), obj.get("ETag")
                    )
                )

            if not resp.get("IsTruncated"):
                break
            token = resp.get("NextContinuationToken")

        if not seen_any and path != "/":
            raise PathNotFoundError(f"Directory not found: {path}")

        logger.debug("s3_list", bucket=self.bucket, path=path, count=len(dirs) + len(files))
        return Listing(path=path, entries=dirs + files, writable=True)

    async def stat(self, path: str) -> FileEntry:
        path = normalize_path(path)
        if path == "/":
            return FileEntry.build(path="/", size=0, is_directory=True)
        head = await self._head(path)
        if head is not None:
            return self._file_entry(path, head.get("ContentLength", 0), head.get("LastModified"), head.get("ETag"))
        if await self._is_dir(path):
            return FileEntry.build(path=path, size=0, is_directory=True)
        raise PathNotFoundError(f"Path not found: {path}")

    async def _iter_body(self, body, path: str) -> AsyncIterator[bytes]:
        try:
            async for chunk in iter_fileobj(body):
                yield chunk
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, path) from exc

    async def open_read(self, path: str) -> StreamHandle:
        path = normalize_path(path)
        name = path.rsplit("/", 1)[-1]
        key = self._key(path)

        if self.presign_downloads:
            head = await self._head(path)
            if head is None:
                raise PathNotFoundError(f"File not found: {path}")
            url = await self._call(
                path,
                "generate_presigned_url",
                ClientMethod="get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=self.presign_ttl,
            )
            return StreamHandle(url=url, mime_type=head.get("ContentType"), file_name=name,
                                size=head.get("ContentLength"))

        resp = await self._call(path, "get_object", Bucket=self.bucket, Key=key)
        body = resp["Body"]
        handle = StreamHandle(
            stream=self._iter_body(body, path),
            mime_type=resp.get("ContentType") or guess_mime_type(name),
            file_name=name,
            size=resp.get("ContentLength"),
        )
        handle.add_closer(body.close)
        return handle

    async def write(self, path: str, stream: ByteStream) -> FileOperationResult:
        path = normalize_path(path)
        if path == "/":
            raise InvalidPathError("Cannot write to the storage root")
        key = self._key(path)
        content_type = guess_mime_type(path) or "application/octet-stream"
        buffer = await spool(stream)
        try:
            size = spool_size(buffer)
            if size <= settings.S3_MULTIPART_THRESHOLD:
                body = await self._run_to_end(buffer.read)
                await self._call(
                    path, "put_object", to_end=True,
                    Bucket=self.bucket, Key=key, Body=body, ContentType=content_type,
                )
            else:
                await self._multipart_upload(path, key, buffer, content_type)
        finally:
            buffer.close()
        logger.debug("s3_write", bucket=self.bucket, key=key, size=size)
        return self._ok("File written", path, size=size)

    async def _multipart_upload(self, path: str, key: str, buffer, content_type: str) -> None:
        """Upload a spool one part per request; abort the upload on any failure or cancellation."""
        upload = await self._call(
            path, "create_multipart_upload", Bucket=self.bucket, Key=key, ContentType=content_type
        )
        upload_id = upload["UploadId"]
        parts: List[Dict[str, Any]] = []
        try:
            while True:
                data = await self._run_to_end(buffer.read, settings.S3_PART_SIZE)
                if not data:
                    break
                number = len(parts) + 1
                resp = await self._call(
                    path, "upload_part", to_end=True,
                    Bucket=self.bucket, Key=key, UploadId=upload_id, PartNumber=number, Body=data,
                )
                parts.append({"ETag": resp["ETag"], "PartNumber": number})
            await self._call(
                path, "complete_multipart_upload", to_end=True,
                Bucket=self.bucket, Key=key, UploadId=upload_id, MultipartUpload={"Parts": parts},
            )
        except BaseException:
            logger.warning("s3_multipart_aborted", bucket=self.bucket, key=key, parts=len(parts))
            try:
                await self._run(
                    self._client.abort_multipart_upload, Bucket=self.bucket, Key=key, UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as exc:
                logger.error("s3_multipart_abort_failed", bucket=self.bucket, key=key, error=str(exc))
            raise

    async def make_dir(self, path: str) -> FileOperationResult:
        path = normalize_path(path)
        if path == "/":
            return self._ok("Directory exists", path)
        if await self._head(path) is not None:
            raise AlreadyExistsError(f"A file occupies {path}")
        await self._call(path, "put_object", Bucket=self.bucket, Key=self._dir_prefix(path), Body=b"")
        return self._ok("Directory created", path)

    async def _delete_keys(self, path: str, keys: List[str]) -> None:
        for start in range(0, len(keys), _DELETE_BATCH):
            batch = keys[start:start + _DELETE_BATCH]
            resp = await self._call(
                path,
                "delete_objects",
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
            )
            errors = resp.get("Errors") or []
            if errors:
                raise StorageError(f"{self.kind}: failed to delete {len(errors)} objects under {path}")

    async def remove(self, path: str) -> FileOperationResult:
        path = normalize_path(path)
        if path == "/":
            raise PermissionDeniedError("Refusing to remove the storage root")

        removed = 0
        if await self._head(path) is not None:
            await self._call(path, "delete_object", Bucket=self.bucket, Key=self._key(path))
            removed += 1
        keys = [key async for key in self._iter_keys(path)]
        if keys:
            await self._delete_keys(path, keys)
            removed += len(keys)
        if not removed:
            raise PathNotFoundError(f"Path not found: {path}")

        logger.debug("s3_remove", bucket=self.bucket, path=path, objects=removed)
        return self._ok("Removed", path, objects=removed)

    async def _copy_key(self, path: str, src_key: str, dst_key: str) -> None:
        await self._call(
            path,
            "copy",
            CopySource={"Bucket": self.bucket, "Key": src_key},
            Bucket=self.bucket,
            Key=dst_key,
        )

    async def _copy_tree(self, path: str, new_path: str) -> Tuple[List[str], int]:
        """Copy a file or directory; returns the source keys and the copy count."""
        sources: List[str] = []
        if await self._head(path) is not None:
            await self._copy_key(path, self._key(path), self._key(new_path))
            sources.append(self._key(path))
        else:
            src_prefix = self._dir_prefix(path)
            dst_prefix = self._dir_prefix(new_path)
            async for key in self._iter_keys(path):
                await self._copy_key(path, key, dst_prefix + key[len(src_prefix):])
                sources.append(key)
        if not sources:
            raise PathNotFoundError(f"Source not found: {path}")
        return sources, len(sources)

    async def copy(self, path: str, new_path: str) -> FileOperationResult:
        path, new_path = normalize_path(path), normalize_path(new_path)
        _, count = await self._copy_tree(path, new_path)
        logger.debug("s3_copy", bucket=self.bucket, src=path, dst=new_path, objects=count)
        return self._ok("Copied", new_path, source=path, objects=count)

    async def move(self, path: str, new_path: str) -> FileOperationResult:
        path, new_path = normalize_path(path), normalize_path(new_path)
        if path == "/":
            raise PermissionDeniedError("Refusing to move the storage root")
        sources, count = await self._copy_tree(path, new_path)
        await self._delete_keys(path, sources)
        logger.debug("s3_move", bucket=self.bucket, src=path, dst=new_path, objects=count)
        return self._ok("Moved", new_path, source=path, objects=count)
