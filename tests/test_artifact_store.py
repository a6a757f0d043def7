import io

import pytest
from botocore.exceptions import ClientError

from grader_host.core.errors import ArtifactStoreError
from grader_host.core.models import JobSpec
from grader_host.core.settings import Settings
from grader_host.services.artifact_store import ArtifactStoreProvider, S3ArtifactStore, S3LogSink
from grader_host.services.storage import DiskArtifactStore


class FakeS3:
    def __init__(self):
        self.objects = {}
        self.puts = []
        self.fail = False

    def _maybe_fail(self, op):
        if self.fail:
            raise ClientError({"Error": {"Code": "SlowDown", "Message": "x"}}, op)

    def put_object(self, Bucket, Key, Body):
        self._maybe_fail("PutObject")
        self.objects[(Bucket, Key)] = bytes(Body)
        self.puts.append(Key)

    def get_object(self, Bucket, Key):
        self._maybe_fail("GetObject")
        if (Bucket, Key) not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "x"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)])}

    def upload_fileobj(self, stream, bucket, key):
        self._maybe_fail("PutObject")
        self.objects[(bucket, key)] = stream.read()


def test_disk_store_layout_and_overwrite(tmp_path):
    store = DiskArtifactStore(tmp_path, "12")
    store.put_buffer("results.json", b"one")
    store.put_buffer("results.json", b"two")
    store.put_stream("archive.tar.gz", io.BytesIO(b"tar"))

    assert (tmp_path / "job_12" / "results.json").read_bytes() == b"two"
    assert (tmp_path / "job_12" / "archive.tar.gz").read_bytes() == b"tar"
    with store.get("results.json") as f:
        assert f.read() == b"two"


def test_disk_store_missing_file(tmp_path):
    with pytest.raises(ArtifactStoreError):
        DiskArtifactStore(tmp_path, "12").get("job.tar.gz")


def test_disk_log_sink_appends(tmp_path):
    store = DiskArtifactStore(tmp_path, "12")
    for line in (b"a\n", b"b\n"):
        sink = store.create_log_sink()
        sink.write(line)
        sink.close()
    assert (tmp_path / "job_12" / "output.log").read_bytes() == b"a\nb\n"


def test_s3_store_keys_under_root_key():
    s3 = FakeS3()
    store = S3ArtifactStore(s3, "bucket", "jobs/12/")
    store.put_buffer("results.json", b"{}")
    store.put_stream("archive.tar.gz", io.BytesIO(b"tar"))
    assert s3.objects[("bucket", "jobs/12/results.json")] == b"{}"
    assert s3.objects[("bucket", "jobs/12/archive.tar.gz")] == b"tar"
    assert store.get("results.json").read() == b"{}"


def test_s3_store_wraps_client_errors():
    s3 = FakeS3()
    store = S3ArtifactStore(s3, "bucket", "jobs/12")
    with pytest.raises(ArtifactStoreError):
        store.get("job.tar.gz")
    s3.fail = True
    with pytest.raises(ArtifactStoreError):
        store.put_buffer("results.json", b"{}")


def test_s3_log_sink_throttles_uploads():
    s3 = FakeS3()
    now = [0.0]
    sink = S3LogSink(s3, "bucket", "jobs/12/output.log", upload_every_s=1.0, clock=lambda: now[0])

    sink.write(b"first\n")
    sink.flush()
    assert s3.puts == []

    now[0] = 1.5
    sink.flush()
    assert s3.objects[("bucket", "jobs/12/output.log")] == b"first\n"

    sink.write(b"second\n")
    sink.close()
    sink.close()
    assert s3.objects[("bucket", "jobs/12/output.log")] == b"first\nsecond\n"
    assert len(s3.puts) == 2
    with pytest.raises(ValueError):
        sink.write(b"late\n")


def test_s3_log_sink_upload_failure_is_not_raised():
    s3 = FakeS3()
    s3.fail = True
    sink = S3LogSink(s3, "bucket", "k", clock=lambda: 0.0)
    sink.write(b"x")
    sink.close()
    assert sink.closed


def test_provider_selects_backend(tmp_path):
    job = JobSpec(job_id="12", image="i", entrypoint="e", s3_bucket="b", s3_root_key="r")
    disk = ArtifactStoreProvider(Settings(file_store_type="disk", file_store_path=tmp_path))
    assert isinstance(disk.provide(job), DiskArtifactStore)

    s3 = ArtifactStoreProvider(Settings(file_store_type="s3"), s3_client=FakeS3())
    store = s3.provide(job)
    assert isinstance(store, S3ArtifactStore)
    assert store.key("job.tar.gz") == "r/job.tar.gz"

    with pytest.raises(ArtifactStoreError):
        s3.provide(JobSpec(job_id="13", image="i", entrypoint="e"))


def test_provider_builds_one_s3_client_up_front(monkeypatch):
    made = []
    monkeypatch.setattr("grader_host.services.artifact_store.boto3.client",
                        lambda *a, **kw: made.append((a, kw)) or FakeS3())
    p = ArtifactStoreProvider(Settings(file_store_type="s3", aws_region="eu-west-1"))
    assert made == [(("s3",), {"region_name": "eu-west-1"})]

    jobs = [JobSpec(job_id=str(i), image="i", entrypoint="e", s3_bucket="b", s3_root_key=f"r/{i}") for i in range(3)]
    stores = [p.provide(j) for j in jobs]
    assert len({id(s.s3) for s in stores}) == 1
    assert len(made) == 1


def test_disk_provider_builds_no_s3_client(monkeypatch, tmp_path):
    monkeypatch.setattr("grader_host.services.artifact_store.boto3.client",
                        lambda *a, **kw: pytest.fail("no S3 client expected"))
    ArtifactStoreProvider(Settings(file_store_type="disk", file_store_path=tmp_path))
