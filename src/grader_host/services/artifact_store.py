from __future__ import annotations
import threading
import time
from typing import BinaryIO, Callable

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from ..core.errors import ArtifactStoreError, ConfigurationError
from ..core.models import JobSpec
from ..core.settings import Settings
from .storage import LOG_FILE, ArtifactStore, DiskArtifactStore

log = structlog.get_logger()


class S3LogSink:
    """
    Append-only byte sink backed by one S3 object. The whole buffer is
    re-uploaded at most every `upload_every_s` seconds and once on close.
    """

    def __init__(self, s3, bucket: str, key: str, *, upload_every_s: float = 1.0,
                 clock: Callable[[], float] = time.monotonic):
        self.s3 = s3
        self.bucket = bucket
        self.key = key
        self.upload_every_s = upload_every_s
        self._clock = clock
        self._buf = bytearray()
        self._dirty = False
        self._last_upload = clock()
        self._lock = threading.Lock()
        self.closed = False

    def write(self, data: bytes) -> int:
        with self._lock:
            if self.closed:
                raise ValueError("write to closed log sink")
            self._buf += data
            self._dirty = True
        return len(data)

    def flush(self) -> None:
        with self._lock:
            if self._dirty and self._clock() - self._last_upload >= self.upload_every_s:
                self._upload()

    def close(self) -> None:
        with self._lock:
            if self.closed:
                return
            if self._dirty:
                self._upload()
            self.closed = True

    def _upload(self) -> None:
        try:
            self.s3.put_object(Bucket=self.bucket, Key=self.key, Body=bytes(self._buf))
            self._dirty = False
        except (BotoCoreError, ClientError) as e:
            log.error("job_log_upload_failed", bucket=self.bucket, key=self.key, error=str(e))
        self._last_upload = self._clock()


class S3ArtifactStore(ArtifactStore):
    def __init__(self, s3, bucket: str, root_key: str):
        self.s3 = s3
        self.bucket = bucket
        self.root_key = root_key.rstrip("/")

    @property
    def name(self) -> str:
        return f"([S3] {self.bucket}/{self.root_key})"

    def key(self, name: str) -> str:
        return f"{self.root_key}/{name}"

    def get(self, name: str) -> BinaryIO:
        try:
            return self.s3.get_object(Bucket=self.bucket, Key=self.key(name))["Body"]
        except (BotoCoreError, ClientError) as e:
            raise ArtifactStoreError(f"cannot read {name} from {self.name}: {e}") from e

    def put_buffer(self, name: str, data: bytes) -> None:
        try:
            self.s3.put_object(Bucket=self.bucket, Key=self.key(name), Body=data)
        except (BotoCoreError, ClientError) as e:
            raise ArtifactStoreError(f"cannot write {name} to {self.name}: {e}") from e

    def put_stream(self, name: str, stream: BinaryIO) -> None:
        try:
            self.s3.upload_fileobj(stream, self.bucket, self.key(name))
        except (BotoCoreError, ClientError) as e:
            raise ArtifactStoreError(f"cannot write {name} to {self.name}: {e}") from e

    def create_log_sink(self) -> S3LogSink:
        return S3LogSink(self.s3, self.bucket, self.key(LOG_FILE))


class ArtifactStoreProvider:
    """Chooses the store backend from settings; builds one store per job."""

    def __init__(self, settings: Settings, *, s3_client=None):
        self.settings = settings
        if settings.file_store_type not in ("s3", "disk"):
            raise ConfigurationError(f"unknown file store type: {settings.file_store_type}")
        # built once here; worker loops share it
        if s3_client is None and settings.file_store_type == "s3":
            s3_client = boto3.client("s3", region_name=settings.aws_region)
        self._s3 = s3_client

    def provide(self, job: JobSpec) -> ArtifactStore:
        if self.settings.file_store_type == "disk":
            return DiskArtifactStore(self.settings.file_store_path, job.job_id)
        if not job.s3_bucket or not job.s3_root_key:
            raise ArtifactStoreError(f"job {job.job_id} has no s3Bucket/s3RootKey")
        return S3ArtifactStore(self._s3, job.s3_bucket, job.s3_root_key)
