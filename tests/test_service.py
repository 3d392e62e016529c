from pathlib import Path

import pytest

from conftest import UPLOAD_TARGET, StubProvider, converting, errored, finished, uploading
from uniconvert.conversion import (
    ConversionJob,
    ConversionRelay,
    ConversionRequest,
    JobStage,
    PollBudget,
    StagedUpload,
)
from uniconvert.conversion.errors import (
    ArtifactResolutionError,
    CompletionTimeout,
    ProviderJobFailed,
    ProviderProtocolError,
    UploadTargetTimeout,
)


async def _no_sleep(_):
    return None


def _relay(provider, upload_attempts=120, completion_attempts=90):
    return ConversionRelay(
        provider,
        upload_budget=PollBudget(1.0, upload_attempts),
        completion_budget=PollBudget(5.0, completion_attempts),
        sleep=_no_sleep,
    )


@pytest.fixture
def request_(tmp_path):
    path = tmp_path / "upload-1-1.docx"
    path.write_bytes(b"hello")
    staged = StagedUpload(path=path, original_filename="report.docx", content_type="application/octet-stream")
    return ConversionRequest(staged=staged, output_format="pdf")


def test_request_derives_names():
    staged = StagedUpload(path=Path("/tmp/x"), original_filename="Quarterly.Report.DOCX", content_type="")
    req = ConversionRequest(staged=staged, output_format="pdf")
    assert req.input_format == "docx"
    assert req.download_filename == "Quarterly.Report.pdf"

    bare = ConversionRequest(staged=StagedUpload(Path("/tmp/y"), "Makefile", ""), output_format="txt")
    assert bare.input_format == ""
    assert bare.download_filename == "Makefile.txt"


@pytest.mark.asyncio
async def test_convert_runs_stages_in_order(request_):
    pending = ConversionJob(job_id="job-1", stage=JobStage.AWAITING_UPLOAD_URL)
    provider = StubProvider(polls=[pending, uploading("job-1"), converting("job-1"), finished("job-1")])

    artifact = await _relay(provider).convert(request_)

    assert provider.calls == ["create", "get_job", "get_job", "push", "get_job", "get_job"]
    assert artifact.job.stage is JobStage.FINISHED
    assert artifact.result_file.url == "https://storage.example.com/out"
    assert artifact.media_type == "application/pdf"


@pytest.mark.asyncio
async def test_create_without_id(request_):
    with pytest.raises(ProviderProtocolError):
        await _relay(StubProvider(job_id="")).create_conversion_job(request_)


@pytest.mark.asyncio
async def test_upload_target_comes_from_first_ready_poll():
    pending = ConversionJob(job_id="job-1", stage=JobStage.AWAITING_UPLOAD_URL)
    provider = StubProvider(polls=[pending, pending, uploading("job-1")])

    target = await _relay(provider).await_upload_target(ConversionJob(job_id="job-1"))

    assert target == UPLOAD_TARGET
    assert provider.calls == ["get_job"] * 3


@pytest.mark.asyncio
async def test_upload_target_requires_url_and_parameters(request_):
    pending = ConversionJob(job_id="job-1", stage=JobStage.AWAITING_UPLOAD_URL)
    provider = StubProvider(polls=[pending])

    with pytest.raises(UploadTargetTimeout) as info:
        await _relay(provider, upload_attempts=7).await_upload_target(ConversionJob(job_id="job-1"))

    assert "upload URL" in info.value.message
    assert provider.calls == ["get_job"] * 7


@pytest.mark.asyncio
async def test_errored_job_ends_polling(request_):
    provider = StubProvider(polls=[converting("job-1"), errored("job-1", "bad codec"), finished("job-1")])

    with pytest.raises(ProviderJobFailed) as info:
        await _relay(provider).await_completion(ConversionJob(job_id="job-1"))

    assert info.value.message == "Conversion job job-1 failed: bad codec"
    assert provider.calls == ["get_job", "get_job"]


@pytest.mark.asyncio
async def test_errored_job_without_message():
    provider = StubProvider(polls=[errored("job-1", None)])

    with pytest.raises(ProviderJobFailed, match="unknown error"):
        await _relay(provider).await_completion(ConversionJob(job_id="job-1"))


@pytest.mark.asyncio
async def test_completion_timeout_is_distinct_from_failure():
    provider = StubProvider(polls=[converting("job-1")])

    with pytest.raises(CompletionTimeout):
        await _relay(provider, completion_attempts=3).await_completion(ConversionJob(job_id="job-1"))

    assert provider.calls == ["get_job"] * 3


def test_resolve_artifact_requires_file():
    relay = _relay(StubProvider())
    with pytest.raises(ArtifactResolutionError):
        relay.resolve_artifact(finished("job-1", url=None))
    assert relay.resolve_artifact(finished("job-1")).mime_type == "application/pdf"
