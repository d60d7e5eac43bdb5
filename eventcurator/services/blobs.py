from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from eventcurator.core.config import Settings, get_settings
from eventcurator.core.errors import BlobExistsError, BlobNotFoundError, BlobStorageError


logger = logging.getLogger(__name__)

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9._-]+$")
_CONTENT_TYPE = "application/json"


def blob_path(entity_plural: str, entity_id: str, subtype: str, identifier: str) -> str:
    """Build ``{entity-plural}/{entityId}/{subtype}/{identifier}.json``."""
    segments = (entity_plural, entity_id, subtype, identifier)
    for segment in segments:
        if not _SEGMENT_RE.match(segment) or segment in {".", ".."}:
            raise ValueError(f"invalid blob path segment: {segment!r}")
    return f"{entity_plural}/{entity_id}/{subtype}/{identifier}.json"


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_document(document: Any) -> bytes:
    # Canonical encoding so identical documents always produce identical bytes.
    return json.dumps(
        document,
        ensure_ascii=True,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_default,
    ).encode("utf-8")


def decode_document(payload: bytes) -> Any:
    return json.loads(payload.decode("utf-8"))


class BlobStore:
    """Opaque JSON documents addressed by path. No business logic lives here."""

    backend_name = "base"

    async def put_bytes(self, path: str, payload: bytes, *, overwrite: bool = False) -> None:
        raise NotImplementedError

    async def read_bytes(self, path: str) -> bytes:
        raise NotImplementedError

    async def exists(self, path: str) -> bool:
        raise NotImplementedError

    async def upload(self, path: str, document: Any, *, overwrite: bool = False) -> str:
        # Paths are immutable unless the caller explicitly re-preserves the same object.
        await self.put_bytes(path, encode_document(document), overwrite=overwrite)
        logger.debug("blob_uploaded backend=%s path=%s overwrite=%s", self.backend_name, path, overwrite)
        return path

    async def download(self, path: str) -> Any:
        return decode_document(await self.read_bytes(path))


class LocalBlobStore(BlobStore):
    backend_name = "local"

    def __init__(self, *, root: str | Path, bucket: str, prefix: str = "") -> None:
        self._root = Path(root) / bucket
        self._prefix = prefix.strip("/")
        self._root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, path: str) -> Path:
        key = f"{self._prefix}/{path}" if self._prefix else path
        if key.startswith("/") or ".." in key.split("/"):
            raise ValueError(f"invalid blob path: {path!r}")
        return self._root / key

    async def put_bytes(self, path: str, payload: bytes, *, overwrite: bool = False) -> None:
        target = self._path_for(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            # "xb" makes the no-overwrite check and the write a single filesystem operation.
            with target.open("wb" if overwrite else "xb") as handle:
                handle.write(payload)
        except FileExistsError as exc:
            raise BlobExistsError(f"blob already exists at {path}") from exc
        except OSError as exc:
            raise BlobStorageError(f"blob upload failed at {path}: {exc}") from exc

    async def read_bytes(self, path: str) -> bytes:
        target = self._path_for(path)
        try:
            return target.read_bytes()
        except FileNotFoundError as exc:
            raise BlobNotFoundError(f"no blob at {path}") from exc
        except OSError as exc:
            raise BlobStorageError(f"blob download failed at {path}: {exc}") from exc

    async def exists(self, path: str) -> bool:
        return self._path_for(path).is_file()


class S3BlobStore(BlobStore):
    backend_name = "s3"

    def __init__(self, *, bucket: str, prefix: str = "", client: Any) -> None:
        self._bucket = bucket
        self._prefix = prefix.strip("/")
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3BlobStore":
        import boto3
        from botocore.config import Config

        session = boto3.session.Session(
            aws_access_key_id=settings.s3_access_key_id or None,
            aws_secret_access_key=settings.s3_secret_access_key or None,
            region_name=settings.s3_region or None,
        )
        client = session.client(
            "s3",
            endpoint_url=settings.s3_endpoint_url or None,
            config=Config(s3={"addressing_style": "path" if settings.s3_force_path_style else "auto"}),
        )
        return cls(bucket=settings.blob_bucket, prefix=settings.blob_prefix, client=client)

    def _key_for(self, path: str) -> str:
        return f"{self._prefix}/{path}" if self._prefix else path

    async def put_bytes(self, path: str, payload: bytes, *, overwrite: bool = False) -> None:
        request: dict[str, Any] = {
            "Bucket": self._bucket,
            "Key": self._key_for(path),
            "Body": payload,
            "ContentType": _CONTENT_TYPE,
        }
        if not overwrite:
            # Conditional write: S3 rejects the put if the key already exists.
            request["IfNoneMatch"] = "*"
        try:
            await asyncio.to_thread(self._client.put_object, **request)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in {"PreconditionFailed", "ConditionalRequestConflict"}:
                raise BlobExistsError(f"blob already exists at {path}") from exc
            raise BlobStorageError(f"blob upload failed at {path}: {code}") from exc
        except BotoCoreError as exc:
            raise BlobStorageError(f"blob upload failed at {path}: {exc}") from exc

    async def read_bytes(self, path: str) -> bytes:
        try:
            response = await asyncio.to_thread(
                self._client.get_object, Bucket=self._bucket, Key=self._key_for(path)
            )
            return await asyncio.to_thread(response["Body"].read)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in {"NoSuchKey", "404"}:
                raise BlobNotFoundError(f"no blob at {path}") from exc
            raise BlobStorageError(f"blob download failed at {path}: {code}") from exc
        except BotoCoreError as exc:
            raise BlobStorageError(f"blob download failed at {path}: {exc}") from exc

    async def exists(self, path: str) -> bool:
        try:
            await asyncio.to_thread(
                self._client.head_object, Bucket=self._bucket, Key=self._key_for(path)
            )
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in {"NoSuchKey", "404", "NotFound"}:
                return False
            raise BlobStorageError(f"blob lookup failed at {path}: {code}") from exc
        return True


def create_blob_store(settings: Settings | None = None) -> BlobStore:
    settings = settings or get_settings()
    backend = settings.blob_backend.strip().lower() or "local"
    if backend == "s3":
        return S3BlobStore.from_settings(settings)
    if backend != "local":
        raise BlobStorageError(f"unsupported blob backend '{settings.blob_backend}'")
    return LocalBlobStore(
        root=settings.blob_local_root,
        bucket=settings.blob_bucket,
        prefix=settings.blob_prefix,
    )
