from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Protocol


class JobStage(str, Enum):
    CREATED = "created"
    AWAITING_UPLOAD_URL = "awaiting-upload-url"
    UPLOADING = "uploading"
    CONVERTING = "converting"
    FINISHED = "finished"
    ERRORED = "errored"


@dataclass(frozen=True)
class UploadTarget:
    url: str
    parameters: dict[str, str]


@dataclass(frozen=True)
class ResultFile:
    url: str
    mime_type: str | None = None


@dataclass
class ConversionJob:
    job_id: str
    stage: JobStage = JobStage.CREATED
    upload_target: UploadTarget | None = None
    result_file: ResultFile | None = None
    message: str | None = None


@dataclass(frozen=True)
class StagedUpload:
    path: Path
    original_filename: str
    content_type: str
    size_bytes: int = 0


@dataclass(frozen=True)
class ConversionRequest:
    staged: StagedUpload
    output_format: str

    @property
    def temporary_file_path(self) -> Path:
        return self.staged.path

    @property
    def original_filename(self) -> str:
        return self.staged.original_filename

    @property
    def input_format(self) -> str:
        """Extension of the original filename without the dot, or ''."""
        return Path(self.original_filename).suffix[1:].lower()

    @property
    def stem(self) -> str:
        return Path(self.original_filename).stem or "converted"

    @property
    def download_filename(self) -> str:
        return f"{self.stem}.{self.output_format}"


@dataclass(frozen=True)
class PollBudget:
    interval: float
    max_attempts: int

    @property
    def total_seconds(self) -> float:
        return self.interval * self.max_attempts


@dataclass(frozen=True)
class ConvertedArtifact:
    request: ConversionRequest
    job: ConversionJob
    result_file: ResultFile

    @property
    def media_type(self) -> str:
        return self.result_file.mime_type or f"application/{self.request.output_format}"


class ConversionProvider(Protocol):
    async def create_conversion_job(self, request: ConversionRequest) -> ConversionJob:
        """Submit the upload -> convert -> export task graph and return the new job."""

    async def get_job(self, job_id: str) -> ConversionJob:
        """Fetch the current state of a job. Called repeatedly while polling."""

    async def push_file(self, target: UploadTarget, request: ConversionRequest) -> None:
        """Stream the staged file to the provider-supplied upload target."""

    def open_artifact(self, result_file: ResultFile) -> AbstractAsyncContextManager[AsyncIterator[bytes]]:
        """Open the finished artifact as a byte stream."""

    async def aclose(self) -> None:
        ...


class ScratchGateway(Protocol):
    def unique_path(self, original_filename: str) -> Path:
        ...

    def stage(
        self,
        original_filename: str,
        content_type: str,
        reader: Callable[[int], Awaitable[bytes]],
        *,
        max_bytes: int,
    ) -> AbstractAsyncContextManager[StagedUpload]:
        ...

    def discard(self, path: Path) -> bool:
        ...
