from contextlib import asynccontextmanager
from functools import partial

import pytest
from fastapi.testclient import TestClient

from uniconvert.conversion import (
    ConversionJob,
    ConversionRelay,
    JobStage,
    PollBudget,
    ResultFile,
    UploadTarget,
)
from uniconvert.conversion.adapters import LocalScratch
from uniconvert.webapi import app, get_provider_factory, get_relay_factory, get_scratch

UPLOAD_TARGET = UploadTarget(
    url="https://storage.example.com/upload",
    parameters={"key": "uploads/abc", "policy": "p0l1cy"},
)
ARTIFACT_BYTES = b"%PDF-1.4\n" + b"converted" * 1000


def uploading(job_id: str) -> ConversionJob:
    return ConversionJob(job_id=job_id, stage=JobStage.UPLOADING, upload_target=UPLOAD_TARGET)


def converting(job_id: str) -> ConversionJob:
    return ConversionJob(job_id=job_id, stage=JobStage.CONVERTING, upload_target=UPLOAD_TARGET)


def finished(job_id: str, mime: str | None = "application/pdf", url: str | None = "https://storage.example.com/out") -> ConversionJob:
    result = ResultFile(url=url, mime_type=mime) if url else None
    return ConversionJob(job_id=job_id, stage=JobStage.FINISHED, upload_target=UPLOAD_TARGET, result_file=result)


def errored(job_id: str, message: str | None) -> ConversionJob:
    return ConversionJob(job_id=job_id, stage=JobStage.ERRORED, message=message)


class StubProvider:
    """Scripted provider: ``get_job`` replays ``polls`` and then repeats the last one."""

    def __init__(
        self,
        job_id: str = "job-1",
        polls: list[ConversionJob] | None = None,
        artifact: bytes = ARTIFACT_BYTES,
        artifact_error: Exception | None = None,
        push_error: Exception | None = None,
        midstream_error: Exception | None = None,
    ) -> None:
        self.job_id = job_id
        self.polls = list(polls) if polls is not None else [uploading(job_id), finished(job_id)]
        self.artifact = artifact
        self.artifact_error = artifact_error
        self.push_error = push_error
        self.midstream_error = midstream_error
        self.calls: list[str] = []
        self.request = None
        self.pushed: bytes | None = None
        self.closed = False

    def calls_after(self, name: str) -> list[str]:
        return self.calls[self.calls.index(name) + 1:]

    async def create_conversion_job(self, request):
        self.calls.append("create")
        self.request = request
        return ConversionJob(job_id=self.job_id)

    async def get_job(self, job_id):
        self.calls.append("get_job")
        assert job_id == self.job_id
        if len(self.polls) > 1:
            return self.polls.pop(0)
        return self.polls[0]

    async def push_file(self, target, request):
        self.calls.append("push")
        assert target == UPLOAD_TARGET
        if self.push_error is not None:
            raise self.push_error
        self.pushed = request.temporary_file_path.read_bytes()

    @asynccontextmanager
    async def open_artifact(self, result_file):
        self.calls.append("open_artifact")

        async def chunks():
            if self.artifact_error is not None:
                raise self.artifact_error
            for i in range(0, len(self.artifact), 4096):
                yield self.artifact[i:i + 4096]
                if self.midstream_error is not None:
                    raise self.midstream_error

        yield chunks()

    async def aclose(self):
        self.closed = True


class StubProviderFactory:
    """Stands in for ``CloudConvertProvider``; builds one stub per request."""

    def __init__(self) -> None:
        self.created: list[StubProvider] = []
        self.api_keys: list[str] = []
        self.configure = lambda n: StubProvider(job_id=f"job-{n}")

    def __call__(self, api_key: str) -> StubProvider:
        self.api_keys.append(api_key)
        provider = self.configure(len(self.created) + 1)
        self.created.append(provider)
        return provider

    @property
    def last(self) -> StubProvider:
        return self.created[-1]


# APP FIXTURES ------------------------------------------------------------------------------------------------
@pytest.fixture
def scratch_dir(tmp_path):
    d = tmp_path / "scratch"
    d.mkdir()
    return d


@pytest.fixture
def providers():
    return StubProviderFactory()


@pytest.fixture
def wired_app(scratch_dir, providers, monkeypatch):
    """The ASGI app wired to a stub provider, a temp scratch dir and zero-interval polling."""
    monkeypatch.setenv("CLOUDCONVERT_API_KEY", "test-key")
    app.dependency_overrides[get_scratch] = lambda: LocalScratch(scratch_dir)
    app.dependency_overrides[get_provider_factory] = lambda: providers
    app.dependency_overrides[get_relay_factory] = lambda: partial(
        ConversionRelay,
        upload_budget=PollBudget(interval=0, max_attempts=120),
        completion_budget=PollBudget(interval=0, max_attempts=90),
    )
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(wired_app):
    with TestClient(wired_app) as c:
        yield c


@pytest.fixture
def docx_upload():
    """A 10 KB `report.docx` as a multipart file tuple."""
    content = bytes(range(256)) * 40
    return (
        "report.docx",
        content,
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    )
