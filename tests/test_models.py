import pytest
from pydantic import ValidationError

from grader_host.core.errors import InvalidMessageError
from grader_host.core.models import JobSpec, SandboxLimits, SandboxResult
from grader_host.core.utils import container_name, sanitize_object
from grader_host.queue.base import parse_job_spec


def test_job_spec_from_message_aliases():
    job = parse_job_spec(
        '{"jobId": 17, "image": "img", "entrypoint": "/grade/run.sh arg", '
        '"timeout": 12.5, "enableNetworking": true, "s3Bucket": "b", "s3RootKey": "k/17"}'
    )
    assert job.job_id == "17"
    assert job.timeout == 12.5
    assert job.enable_networking is True
    assert job.s3_bucket == "b" and job.s3_root_key == "k/17"
    assert job.webhook_url is None


def test_effective_timeout_falls_back_to_default():
    job = JobSpec(job_id="1", image="img", entrypoint="run")
    assert job.effective_timeout() == 30
    assert job.effective_timeout(default=7) == 7


@pytest.mark.parametrize("timeout", [0, -5])
def test_non_positive_timeout_uses_default(timeout):
    job = parse_job_spec(f'{{"jobId": "1", "image": "img", "entrypoint": "run", "timeout": {timeout}}}')
    assert job.effective_timeout() == 30


@pytest.mark.parametrize("body", [
    "not json",
    "[1, 2]",
    '{"image": "img", "entrypoint": "run"}',
    '{"jobId": "1", "image": "img"}',
    '{"jobId": "1", "image": "img", "entrypoint": "run", "timeout": "5"}',
    '{"jobId": "1", "image": "img", "entrypoint": "run", "enableNetworking": "yes"}',
    '{"jobId": true, "image": "img", "entrypoint": "run"}',
    '{"jobId": "1", "image": 3, "entrypoint": "run"}',
])
def test_invalid_messages_are_rejected(body):
    with pytest.raises(InvalidMessageError) as ei:
        parse_job_spec(body, raw={"Body": body})
    assert ei.value.raw == {"Body": body}


def test_sandbox_result_document_on_success():
    r = SandboxResult(job_id="1", received_time="a", start_time="b", end_time="c",
                      succeeded=True, results={"score": 1})
    assert r.to_document() == {
        "job_id": "1", "received_time": "a", "start_time": "b", "end_time": "c",
        "succeeded": True, "results": {"score": 1},
    }


def test_sandbox_result_document_on_timeout():
    r = SandboxResult(job_id="1", succeeded=False, timed_out=True,
                      message="Grading timed out after 5 seconds.")
    doc = r.to_document()
    assert doc["timedOut"] is True
    assert doc["message"] == "Grading timed out after 5 seconds."
    assert "results" not in doc


@pytest.mark.parametrize("kw", [
    dict(succeeded=True, timed_out=True),
    dict(succeeded=True, message="nope"),
    dict(succeeded=False),
    dict(succeeded=False, message="x", results={"a": 1}),
])
def test_sandbox_result_rejects_inconsistent_outcomes(kw):
    with pytest.raises(ValidationError):
        SandboxResult(job_id="1", **kw)


def test_limits_take_network_flag_from_job():
    base = SandboxLimits(memory_bytes=123)
    job = JobSpec(job_id="1", image="i", entrypoint="e", enable_networking=True)
    limits = base.for_job(job)
    assert limits.network_enabled is True
    assert limits.memory_bytes == 123


def test_container_names_are_unique_per_run():
    a, b = container_name("job/1"), container_name("job/1")
    assert a != b
    assert a.startswith("grader-job_1-")


def test_sanitize_object_escapes_nul_everywhere():
    doc = {"k\u0000": ["v\u0000", {"n": "x\u0000y"}], "n": 1}
    assert sanitize_object(doc) == {"k\\u0000": ["v\\u0000", {"n": "x\\u0000y"}], "n": 1}
