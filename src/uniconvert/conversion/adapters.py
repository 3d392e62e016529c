import asyncio
import logging
import secrets
import time
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Iterator

import httpx

from .errors import PayloadTooLarge, ProviderProtocolError, ProviderRequestError, StreamError
from .interfaces import (
    ConversionJob,
    ConversionProvider,
    ConversionRequest,
    JobStage,
    ResultFile,
    ScratchGateway,
    StagedUpload,
    UploadTarget,
)

logger = logging.getLogger(__name__)

CLOUDCONVERT_API_BASE = "https://api.cloudconvert.com/v2"

UPLOAD_TASK = "upload-file"
CONVERT_TASK = "convert-file"
EXPORT_TASK = "export-file"


class LocalScratch(ScratchGateway):
    """Stages uploads as uniquely named files in a shared scratch directory."""

    CHUNK = 1024 * 1024

    def __init__(self, scratch_dir: str | Path) -> None:
        self._base = Path(scratch_dir).resolve()

    @property
    def base(self) -> Path:
        return self._base

    def unique_path(self, original_filename: str) -> Path:
        ext = Path(original_filename).suffix
        unique = f"{int(time.time() * 1000)}-{secrets.randbelow(10**9)}"
        return self._base / f"upload-{unique}{ext}"

    @asynccontextmanager
    async def stage(
        self,
        original_filename: str,
        content_type: str,
        reader: Callable[[int], Awaitable[bytes]],
        *,
        max_bytes: int,
    ) -> AsyncIterator[StagedUpload]:
        """Write the upload to disk and delete it when the scope exits, however it exits."""
        self._base.mkdir(parents=True, exist_ok=True)
        path = self.unique_path(original_filename)
        try:
            size_bytes = 0
            # "x" mode: never clobber another request's staged file
            with path.open("xb") as f_out:
                while True:
                    chunk = await reader(self.CHUNK)
                    if not chunk:
                        break
                    size_bytes += len(chunk)
                    if size_bytes > max_bytes:
                        raise PayloadTooLarge(f"Upload exceeds {max_bytes // (1024 * 1024)} MB.")
                    await asyncio.to_thread(f_out.write, chunk)
            logger.debug("staged %s as %s (%d bytes)", original_filename, path.name, size_bytes)
            yield StagedUpload(
                path=path,
                original_filename=original_filename,
                content_type=content_type or "application/octet-stream",
                size_bytes=size_bytes,
            )
        finally:
            self.discard(path)

    def discard(self, path: Path) -> bool:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("could not delete staged file %s: %s", path, e)
            return False
        return True


def _json(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _provider_message(response: httpx.Response) -> str:
    message = _json(response).get("message")
    if isinstance(message, str) and message:
        return message
    return f"HTTP {response.status_code}"


@contextmanager
def _provider_errors() -> Iterator[None]:
    try:
        yield
    except httpx.HTTPStatusError as e:
        logger.error("provider responded %s: %s", e.response.status_code, e.response.text[:500])
        raise ProviderRequestError(f"Conversion service error: {_provider_message(e.response)}") from e
    except httpx.RequestError as e:
        logger.error("provider request failed: %s", e)
        raise ProviderRequestError(f"Conversion service error: {e}") from e


def build_job_payload(request: ConversionRequest) -> dict[str, object]:
    convert: dict[str, object] = {
        "operation": "convert",
        "input": UPLOAD_TASK,
        "output_format": request.output_format,
    }
    if request.input_format:
        convert["input_format"] = request.input_format
    return {
        "tasks": {
            UPLOAD_TASK: {
                "operation": "import/upload",
                "filename": request.original_filename,
            },
            CONVERT_TASK: convert,
            EXPORT_TASK: {
                "operation": "export/url",
                "input": CONVERT_TASK,
            },
        }
    }


def _upload_target(task: dict | None) -> UploadTarget | None:
    if not task:
        return None
    form = (task.get("result") or {}).get("form") or {}
    url = form.get("url")
    params = form.get("parameters")
    if not isinstance(url, str) or not url:
        return None
    if not isinstance(params, dict) or not params:
        return None
    return UploadTarget(url=url, parameters={str(k): str(v) for k, v in params.items()})


def _result_file(task: dict | None) -> ResultFile | None:
    if not task:
        return None
    for f in (task.get("result") or {}).get("files") or []:
        if isinstance(f, dict) and f.get("url"):
            return ResultFile(url=str(f["url"]), mime_type=f.get("mime") or None)
    return None


def parse_job(payload: dict) -> ConversionJob:
    """Map a CloudConvert job document onto the provider-agnostic job snapshot."""
    data = payload.get("data") or {}
    tasks = {t.get("name"): t for t in data.get("tasks") or [] if isinstance(t, dict)}
    upload = tasks.get(UPLOAD_TASK)
    target = _upload_target(upload)
    status = data.get("status")

    message = data.get("message")
    if status == "error":
        stage = JobStage.ERRORED
        if not message:
            failed = [t.get("message") for t in tasks.values() if t.get("status") == "error" and t.get("message")]
            message = failed[0] if failed else None
    elif status == "finished":
        stage = JobStage.FINISHED
    elif upload and upload.get("status") == "finished":
        stage = JobStage.CONVERTING
    elif target is not None:
        stage = JobStage.UPLOADING
    elif upload:
        stage = JobStage.AWAITING_UPLOAD_URL
    else:
        stage = JobStage.CREATED

    return ConversionJob(
        job_id=str(data.get("id") or ""),
        stage=stage,
        upload_target=target,
        result_file=_result_file(tasks.get(EXPORT_TASK)),
        message=message,
    )


class CloudConvertProvider(ConversionProvider):
    """CloudConvert v2 jobs API over httpx.

    Two clients are kept: an authenticated one for the jobs API and a bare one
    for the presigned upload form and the exported file URL, which must not
    receive the bearer token.
    """

    def __init__(
        self,
        api_key: str,
        *,
        api_base: str = CLOUDCONVERT_API_BASE,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api = httpx.AsyncClient(
            base_url=api_base.rstrip("/"),
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        # no read/write ceiling for file transfers
        self._transfer = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, read=None, write=None),
            follow_redirects=True,
            transport=transport,
        )

    async def create_conversion_job(self, request: ConversionRequest) -> ConversionJob:
        with _provider_errors():
            response = await self._api.post("/jobs", json=build_job_payload(request))
            response.raise_for_status()
        job = parse_job(_json(response))
        if not job.job_id:
            logger.error("job creation response lacks an id: %s", response.text[:500])
            raise ProviderProtocolError()
        return job

    async def get_job(self, job_id: str) -> ConversionJob:
        with _provider_errors():
            response = await self._api.get(f"/jobs/{job_id}")
            response.raise_for_status()
        job = parse_job(_json(response))
        if not job.job_id:
            job.job_id = job_id
        return job

    async def push_file(self, target: UploadTarget, request: ConversionRequest) -> None:
        with _provider_errors(), request.temporary_file_path.open("rb") as fh:
            files = {"file": (request.original_filename, fh, request.staged.content_type)}
            response = await self._transfer.post(target.url, data=target.parameters, files=files)
            response.raise_for_status()

    @asynccontextmanager
    async def open_artifact(self, result_file: ResultFile) -> AsyncIterator[AsyncIterator[bytes]]:
        try:
            async with self._transfer.stream("GET", result_file.url) as response:
                if response.is_error:
                    logger.error("artifact download responded %s", response.status_code)
                    raise StreamError()
                yield response.aiter_bytes()
        except httpx.HTTPError as e:
            logger.error("artifact download failed: %s", e)
            raise StreamError() from e

    async def aclose(self) -> None:
        await self._api.aclose()
        await self._transfer.aclose()
