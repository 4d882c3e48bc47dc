import os
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from ..common.artifacts import ArtifactStore
from ..common.errors import BusyError, InvalidInputError, ServiceError
from ..common.logging import configure_logging
from ..common.models import Accepted, ArtifactMeta, Failure, ResultSink
from ..scheduler.main import REJECTED, Scheduler
from ..worker.main import RembgGateway, TransformationGateway

logger = structlog.get_logger()

MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE", str(5 * 1024 * 1024)))
PORT = int(os.getenv("PORT", "3000"))

ALLOWED_MIME_TYPES = [
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
    "image/gif",
    "image/bmp",
    "image/tiff",
    "image/heic",
    "image/heif",
]
SUPPORTED_FORMATS = ["JPG", "PNG", "WEBP", "GIF", "BMP", "TIFF", "HEIC"]


def _busy() -> BusyError:
    return BusyError("Too many requests. Please try again in a moment.")


def create_app(scheduler: Optional[Scheduler] = None,
               gateway: Optional[TransformationGateway] = None,
               store: Optional[ArtifactStore] = None,
               max_file_size: int = MAX_FILE_SIZE) -> FastAPI:
    if scheduler is None:
        scheduler = Scheduler(gateway or RembgGateway(), store or ArtifactStore())
    store = scheduler.store

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        logger.info("api_starting", **scheduler.snapshot().model_dump())
        yield
        logger.info("api_stopping")
        await scheduler.shutdown()

    app = FastAPI(title="cutout", lifespan=lifespan)
    app.state.scheduler = scheduler
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        return JSONResponse(exc.to_body(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse({"error": "Invalid request", "message": str(exc.errors())}, status_code=400)

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.get("/metrics")
    def metrics():
        return PlainTextResponse(generate_latest().decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    @app.post("/remove-bg")
    async def remove_bg(image: Optional[UploadFile] = File(None)):
        if image is None or not image.filename:
            raise InvalidInputError("Please upload an image file in the 'image' field", error="Missing image file")

        mime_type = image.content_type or ""
        if mime_type not in ALLOWED_MIME_TYPES:
            raise InvalidInputError(
                f"Format {mime_type or 'unknown'} not supported. Allowed: {', '.join(SUPPORTED_FORMATS)}",
                error="Unsupported image format",
                extra={"supportedFormats": SUPPORTED_FORMATS},
            )

        data = await image.read(max_file_size + 1)
        await image.close()
        if not data:
            raise InvalidInputError("Please upload an image file in the 'image' field", error="Missing image file")
        limit_mb = f"{max_file_size / 1024 / 1024:g}MB"
        if len(data) > max_file_size:
            raise InvalidInputError(f"File size exceeds {limit_mb} limit", error="File too large",
                                    extra={"maxSize": limit_mb})

        logger.info("upload_received", name=image.filename, mime_type=mime_type, size=len(data),
                    queue_length=scheduler.queue_length)

        # cheap pre-check so a busy server doesn't write the upload to disk at all
        if scheduler.is_full:
            REJECTED.inc()
            logger.warning("upload_rejected_busy", name=image.filename, queue_length=scheduler.queue_length)
            raise _busy()

        try:
            artifact = await store.write(data, image.filename)
        except OSError as e:
            logger.error("upload_failed", error=str(e))
            return JSONResponse({"error": "Upload failed", "message": str(e)}, status_code=500)
        del data

        meta = ArtifactMeta(original_name=image.filename, mime_type=mime_type, size_bytes=artifact.size_bytes)
        sink = ResultSink()
        result = scheduler.submit(meta, artifact, sink)
        if not isinstance(result, Accepted):
            await store.release(artifact)
            raise _busy()

        outcome = await sink.wait()
        if isinstance(outcome, Failure):
            return JSONResponse({"error": outcome.error, "message": outcome.message},
                                status_code=outcome.status_code)
        return Response(content=outcome.body, media_type=outcome.media_type, headers=outcome.headers)

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
