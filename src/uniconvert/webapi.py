import logging
import os
import re
import tempfile
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime, timezone
from functools import lru_cache, partial
from pathlib import Path
from typing import AsyncGenerator, AsyncIterator, Callable
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.datastructures import Headers
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Receive, Scope, Send

from uniconvert import __version__
from uniconvert.conversion import (
    ConversionProvider,
    ConversionRelay,
    ConversionRequest,
    PollBudget,
    RelayError,
    ScratchGateway,
)
from uniconvert.conversion.adapters import CLOUDCONVERT_API_BASE as DEFAULT_API_BASE
from uniconvert.conversion.adapters import CloudConvertProvider, LocalScratch
from uniconvert.conversion.errors import (
    ClientInputError,
    ConfigurationError,
    PayloadTooLarge,
    StreamError,
    UnexpectedRelayError,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(levelname)s:\t%(asctime)s - %(name)s - %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

# Global configuration defaults
API_KEY_ENV = "CLOUDCONVERT_API_KEY"
CLOUDCONVERT_API_BASE = os.getenv("CLOUDCONVERT_API_BASE", DEFAULT_API_BASE)
PROVIDER_TIMEOUT_SEC = float(os.getenv("PROVIDER_TIMEOUT_SEC", "60"))
SCRATCH_DIR = Path(os.getenv("SCRATCH_DIR", tempfile.gettempdir())).resolve()
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "300"))
# room for multipart boundaries, part headers and the outputFormat field
MULTIPART_OVERHEAD_BYTES = 64 * 1024
UPLOAD_POLL = PollBudget(
    interval=float(os.getenv("UPLOAD_POLL_INTERVAL_SEC", "1")),
    max_attempts=int(os.getenv("UPLOAD_POLL_ATTEMPTS", "120")),
)
COMPLETION_POLL = PollBudget(
    interval=float(os.getenv("COMPLETION_POLL_INTERVAL_SEC", "5")),
    max_attempts=int(os.getenv("COMPLETION_POLL_ATTEMPTS", "90")),
)

OUTPUT_FORMAT_RE = re.compile(r"[A-Za-z0-9]{1,16}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    SCRATCH_DIR.mkdir(parents=True, exist_ok=True)
    logger.info("scratch directory: %s", SCRATCH_DIR)
    if not os.getenv(API_KEY_ENV):
        logger.warning("%s is not set; conversions will fail until it is", API_KEY_ENV)
    yield


app = FastAPI(
    title="UniConvert Relay",
    version=os.getenv("UNICONVERT_VERSION", __version__),
    description=(
        "Relay that converts an uploaded file to the requested format through "
        "CloudConvert and streams the result back."
    ),
    lifespan=lifespan,
)


class UploadSizeLimit:
    """Rejects a conversion upload whose declared Content-Length is over the cap.

    Runs before FastAPI parses the multipart body, so an oversized request is
    answered with 413 without being spooled. Requests without a Content-Length
    are still capped while the upload is staged.
    """

    def __init__(self, app: ASGIApp, path: str = "/convertFile") -> None:
        self.app = app
        self.path = path

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http" and scope["path"] == self.path:
            declared = Headers(scope=scope).get("content-length", "")
            limit = MAX_UPLOAD_MB * 1024 * 1024 + MULTIPART_OVERHEAD_BYTES
            if declared.isdigit() and int(declared) > limit:
                exc = PayloadTooLarge(f"Upload exceeds {MAX_UPLOAD_MB} MB.")
                logger.warning("rejected %s byte request to %s: over the upload limit", declared, self.path)
                response = JSONResponse(status_code=exc.status_code, content={"message": exc.message})
                await response(scope, receive, send)
                return
        await self.app(scope, receive, send)


app.add_middleware(UploadSizeLimit)


@lru_cache
def get_scratch() -> ScratchGateway:
    return LocalScratch(SCRATCH_DIR)


def get_provider_factory() -> Callable[[str], ConversionProvider]:
    return partial(CloudConvertProvider, api_base=CLOUDCONVERT_API_BASE, timeout=PROVIDER_TIMEOUT_SEC)


def get_relay_factory() -> Callable[[ConversionProvider], ConversionRelay]:
    return partial(ConversionRelay, upload_budget=UPLOAD_POLL, completion_budget=COMPLETION_POLL)


@app.exception_handler(RelayError)
async def _relay_error(request: Request, exc: RelayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"message": "Invalid request."})


@app.exception_handler(StarletteHTTPException)
async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc.detail)}, headers=exc.headers)


@app.get("/api/health")
def health() -> dict[str, str]:
    """Liveness probe shown by the upload client."""
    now = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    return {"status": "Backend operational", "timestamp": now}


def _validate_output_format(value: str | None) -> str:
    fmt = (value or "").strip()
    if not fmt:
        raise ClientInputError("Output format is required.")
    if not OUTPUT_FORMAT_RE.fullmatch(fmt):
        raise ClientInputError("Output format is invalid.")
    return fmt.lower()


def content_disposition(filename: str) -> str:
    ascii_name = filename.encode("ascii", "ignore").decode("ascii").replace('"', "").replace("\\", "")
    value = f'attachment; filename="{ascii_name or "converted"}"'
    if ascii_name != filename:
        value += f"; filename*=UTF-8''{quote(filename)}"
    return value


async def _first_chunk(chunks: AsyncIterator[bytes]) -> bytes:
    try:
        return await anext(chunks, b"")
    except RelayError:
        raise
    except Exception as e:
        logger.error("reading converted file failed before headers were sent: %s", e)
        raise StreamError() from e


async def _relay_body(
    first: bytes,
    chunks: AsyncIterator[bytes],
    cleanup: AsyncExitStack,
    request: ConversionRequest,
) -> AsyncGenerator[bytes, None]:
    try:
        if first:
            yield first
        async for chunk in chunks:
            yield chunk
        logger.info("sent %s to client", request.download_filename)
    except Exception:
        # headers are already out; all that is left is to abort the response
        logger.exception("error streaming %s to client", request.download_filename)
        raise
    finally:
        await cleanup.aclose()


class RelayResponse(StreamingResponse):
    """Streams the relay body and releases its resources even if the body never starts.

    Starlette does not iterate the body when the client is gone before the
    response headers go out, so the generator's own ``finally`` cannot be relied on.
    """

    def __init__(self, content: AsyncGenerator[bytes, None], cleanup: AsyncExitStack, **kwargs) -> None:
        super().__init__(content, **kwargs)
        self._content = content
        self._cleanup = cleanup

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            try:
                await self._content.aclose()
            finally:
                await self._cleanup.aclose()


@app.post("/convertFile")
async def convert_file(
    file: UploadFile | None = File(None),
    outputFormat: str | None = Form(None),
    scratch: ScratchGateway = Depends(get_scratch),
    provider_factory: Callable[[str], ConversionProvider] = Depends(get_provider_factory),
    relay_factory: Callable[[ConversionProvider], ConversionRelay] = Depends(get_relay_factory),
) -> RelayResponse:
    """Convert an uploaded file and stream the result back.

    Accepts multipart/form-data with a "file" part and an "outputFormat" field.
    The upload is staged in SCRATCH_DIR for the lifetime of the request and
    deleted on every exit path. Errors are returned as {"message": ...}.
    """
    if file is None or not file.filename:
        raise ClientInputError("No file uploaded.")

    async with AsyncExitStack() as stack:
        try:
            staged = await stack.enter_async_context(
                scratch.stage(
                    file.filename,
                    file.content_type or "",
                    file.read,
                    max_bytes=MAX_UPLOAD_MB * 1024 * 1024,
                )
            )
            output_format = _validate_output_format(outputFormat)

            api_key = os.getenv(API_KEY_ENV)
            if not api_key:
                logger.error("%s is not set in environment variables", API_KEY_ENV)
                raise ConfigurationError()

            provider = provider_factory(api_key)
            stack.push_async_callback(provider.aclose)

            request = ConversionRequest(staged=staged, output_format=output_format)
            artifact = await relay_factory(provider).convert(request)

            logger.info("downloading converted file for job %s", artifact.job.job_id)
            chunks = await stack.enter_async_context(provider.open_artifact(artifact.result_file))
            first = await _first_chunk(chunks)
        except RelayError as e:
            logger.warning("conversion of %s failed: %s", file.filename, e.message)
            raise
        except Exception as e:
            logger.exception("unhandled server error in /convertFile")
            raise UnexpectedRelayError(str(e) or None) from e

        cleanup = stack.pop_all()
        body = _relay_body(first, chunks, cleanup, request)

    return RelayResponse(
        body,
        cleanup,
        media_type=artifact.media_type,
        headers={"Content-Disposition": content_disposition(request.download_filename)},
    )


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:3000). Set PORT env var to override.
    """
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "3000"))
    # Enable reload in dev unless explicitly disabled
    reload = os.getenv("RELOAD", "true").lower() in {"1", "true", "yes", "on"}

    uvicorn.run("uniconvert.webapi:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
