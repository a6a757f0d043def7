import io
import json
import tarfile
import threading
from pathlib import Path
from types import SimpleNamespace

import pytest
from docker.errors import NotFound

from grader_host.core.models import JobSpec
from grader_host.core.settings import Settings


class RecordingLogger:
    """Stands in for a structlog bound logger; keeps (level, event, fields)."""

    def __init__(self, records=None, context=None):
        self.records = [] if records is None else records
        self.context = context or {}

    def bind(self, **kw):
        return RecordingLogger(self.records, {**self.context, **kw})

    def _log(self, level, event, **kw):
        self.records.append((level, event, {**self.context, **kw}))

    def debug(self, event, **kw): self._log("debug", event, **kw)
    def info(self, event, **kw): self._log("info", event, **kw)
    def warning(self, event, **kw): self._log("warning", event, **kw)
    def error(self, event, **kw): self._log("error", event, **kw)
    def exception(self, event, **kw): self._log("exception", event, **kw)
    def critical(self, event, **kw): self._log("critical", event, **kw)

    def events(self, level=None):
        return [e for lvl, e, _ in self.records if level is None or lvl == level]


class FakeContainer:
    def __init__(self, name, *, exit_code=0, run_s=0.0, output=b"", stream=None, fail_on=None):
        self.name = name
        self.stream = stream
        self.exit_code = exit_code
        self.run_s = run_s
        self.output = output
        self.fail_on = fail_on
        self.killed = False
        self.removed = 0
        self.started = False
        self._exited = threading.Event()
        self.done = threading.Event()
        self.attrs = {}

    def _maybe_fail(self, step):
        if self.fail_on == step:
            from docker.errors import DockerException
            raise DockerException(f"{step} failed")

    def attach(self, **kw):
        self._maybe_fail("attach")
        if self.stream is not None:
            return self.stream(self)
        return iter([self.output]) if self.output else iter([])

    def start(self):
        self._maybe_fail("start")
        self.started = True

    def wait(self):
        self._maybe_fail("wait")
        self._exited.wait(self.run_s)
        self.done.set()
        return {"StatusCode": self.exit_code}

    def kill(self):
        self.killed = True
        self.exit_code = 137
        self._exited.set()

    def reload(self):
        self.attrs = {"State": {"ExitCode": self.exit_code}}

    def remove(self, force=False):
        self.removed += 1
        if self.removed > 1:
            raise NotFound("already removed")


class FakeDocker:
    """docker.DockerClient look-alike; one instance shared by every client_factory() call."""

    def __init__(self, **container_kw):
        self.container_kw = container_kw
        self.created = []
        self.create_kwargs = []
        self.pulled = []
        self.pings = 0
        self.closed = 0
        self.create_gate = None
        self.ping_error = None
        self.pull_error = None
        self.containers = SimpleNamespace(create=self._create)
        self.images = SimpleNamespace(pull=self._pull)

    def _create(self, **kw):
        if self.create_gate is not None:
            self.create_gate.wait()
        self.create_kwargs.append(kw)
        c = FakeContainer(kw["name"], **self.container_kw)
        self.created.append(c)
        return c

    def _pull(self, repository, tag=None):
        if self.pull_error is not None:
            raise self.pull_error
        self.pulled.append((repository, tag))

    def ping(self):
        self.pings += 1
        if self.ping_error is not None:
            raise self.ping_error
        return True

    def close(self):
        self.closed += 1


class FakeHealth:
    def __init__(self):
        self.reasons = []

    def flag_unhealthy(self, reason):
        self.reasons.append(reason)


def make_job_archive(files):
    """gzip tarball bytes holding {relative path: text}."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


@pytest.fixture
def rec_logger():
    return RecordingLogger()


@pytest.fixture
def fake_docker():
    return FakeDocker()


@pytest.fixture
def fake_health():
    return FakeHealth()


@pytest.fixture
def disk_settings(tmp_path):
    return Settings(
        queue_type="sqs",
        queue_url="https://sqs.example/jobs",
        file_store_type="disk",
        file_store_path=tmp_path / "store",
        use_database=False,
    )


@pytest.fixture
def job():
    return JobSpec.model_validate({
        "jobId": "42",
        "image": "prairielearn/grader-python:latest",
        "entrypoint": "/grade/run.sh",
        "timeout": 5,
        "webhookUrl": "http://callback.example/grading",
        "csrfToken": "tok",
    })


@pytest.fixture
def results_json():
    return lambda workdir, doc: _write_results(workdir, doc)


def _write_results(workdir: Path, doc):
    path = workdir / "results" / "results.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(doc))
    return path


@pytest.fixture
def job_archive():
    return make_job_archive
