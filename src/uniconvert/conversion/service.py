import asyncio
import logging
from typing import Awaitable, Callable

from .errors import (
    ArtifactResolutionError,
    CompletionTimeout,
    ProviderJobFailed,
    ProviderProtocolError,
    UploadTargetTimeout,
)
from .interfaces import (
    ConversionJob,
    ConversionProvider,
    ConversionRequest,
    ConvertedArtifact,
    JobStage,
    PollBudget,
    ResultFile,
    UploadTarget,
)
from .polling import PollTimeout, poll_until

logger = logging.getLogger(__name__)

UPLOAD_TARGET_BUDGET = PollBudget(interval=1.0, max_attempts=120)
COMPLETION_BUDGET = PollBudget(interval=5.0, max_attempts=90)


class ConversionRelay:
    """Drives one conversion job through the provider, strictly in sequence.

    The relay is stateless across requests: a new instance is built for each
    request around that request's provider client. It knows nothing of the
    provider's wire format; it only sees ``ConversionJob`` snapshots and
    decides when to keep polling, when to stop and which failure to raise.
    """

    def __init__(
        self,
        provider: ConversionProvider,
        *,
        upload_budget: PollBudget = UPLOAD_TARGET_BUDGET,
        completion_budget: PollBudget = COMPLETION_BUDGET,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._upload_budget = upload_budget
        self._completion_budget = completion_budget
        self._sleep = sleep

    async def convert(self, request: ConversionRequest) -> ConvertedArtifact:
        job = await self.create_conversion_job(request)
        target = await self.await_upload_target(job)
        await self.push_file(target, request)
        finished = await self.await_completion(job)
        result_file = self.resolve_artifact(finished)
        return ConvertedArtifact(request=request, job=finished, result_file=result_file)

    async def create_conversion_job(self, request: ConversionRequest) -> ConversionJob:
        job = await self._provider.create_conversion_job(request)
        if job is None or not job.job_id:
            raise ProviderProtocolError()
        logger.info(
            "conversion job %s created (%s -> %s)",
            job.job_id, request.input_format or "auto", request.output_format,
        )
        return job

    async def await_upload_target(self, job: ConversionJob) -> UploadTarget:
        async def fetch_target() -> UploadTarget | None:
            return (await self._provider.get_job(job.job_id)).upload_target

        try:
            target = await poll_until(
                fetch_target,
                lambda t: t is not None,
                budget=self._upload_budget,
                sleep=self._sleep,
                label=f"upload target for job {job.job_id}",
            )
        except PollTimeout as e:
            logger.error("job %s: no upload target after %d attempts", job.job_id, e.attempts)
            raise UploadTargetTimeout() from e
        return target

    async def push_file(self, target: UploadTarget, request: ConversionRequest) -> None:
        logger.info("uploading %s to provider", request.original_filename)
        await self._provider.push_file(target, request)
        logger.info("upload of %s complete", request.original_filename)

    async def await_completion(self, job: ConversionJob) -> ConversionJob:
        def settled(j: ConversionJob) -> bool:
            if j.stage is JobStage.ERRORED:
                reason = j.message or ProviderJobFailed.default_message
                logger.error("job %s failed on provider: %s", job.job_id, reason)
                raise ProviderJobFailed(f"Conversion job {job.job_id} failed: {reason}")
            return j.stage is JobStage.FINISHED

        try:
            finished = await poll_until(
                lambda: self._provider.get_job(job.job_id),
                settled,
                budget=self._completion_budget,
                sleep=self._sleep,
                label=f"completion of job {job.job_id}",
            )
        except PollTimeout as e:
            logger.error("job %s did not finish after %d attempts", job.job_id, e.attempts)
            raise CompletionTimeout() from e
        logger.info("job %s finished", job.job_id)
        return finished

    def resolve_artifact(self, job: ConversionJob) -> ResultFile:
        if job.result_file is None or not job.result_file.url:
            logger.error("job %s finished without an exported file", job.job_id)
            raise ArtifactResolutionError()
        return job.result_file
