import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional

import uvicorn
from fastapi import FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from config import MAX_UPLOAD_BYTES, Settings, configure_logging, load_settings
from errors import ModelLoadError, PredictionError, ValidationError
from model import ModelProvider
from pipeline import PredictionPipeline, UploadedImage
from records import RecordStoreClient
from storage import BlobStoreClient

logger = logging.getLogger(__name__)

WELCOME_TEXT = "Welcome to the Brain Tumor Detection API"


def build_pipeline(settings: Settings) -> PredictionPipeline:
    provider = ModelProvider(settings.model_url, normalize=settings.normalize_input,
                             fetch_timeout=settings.fetch_timeout)
    blob_store = BlobStoreClient(settings.storage_bucket, project_id=settings.project_id,
                                 credentials_path=settings.credentials_path,
                                 fetch_timeout=settings.fetch_timeout)
    record_store = RecordStoreClient(settings.firestore_collection, project_id=settings.project_id,
                                     credentials_path=settings.credentials_path)
    return PredictionPipeline(provider, blob_store, record_store,
                              cleanup_orphaned_blobs=settings.cleanup_orphaned_blobs)


async def _preload(provider: ModelProvider):
    try:
        await provider.ensure_loaded()
        logger.info(f"Model info: {provider.get_model_info()}")
    except ModelLoadError as e:
        # The next request retries the load
        logger.error(f"Error loading the model at startup: {e.detail}")


def failure_response(status_code: int, message: str, error: Optional[str] = None) -> JSONResponse:
    content = {"status": "fail", "message": message}
    if error is not None:
        content["error"] = error
    return JSONResponse(status_code=status_code, content=content)


def create_app(settings: Settings = None, pipeline: PredictionPipeline = None,
               preload_model: bool = True) -> FastAPI:
    settings = settings or load_settings()
    pipeline = pipeline or build_pipeline(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        preload = None
        if preload_model:
            preload = asyncio.create_task(_preload(pipeline.model_provider))
        yield
        if preload is not None and not preload.done():
            preload.cancel()
            with suppress(asyncio.CancelledError):
                await preload

    app = FastAPI(title="Brain Tumor Detection API", version="1.0.0", lifespan=lifespan)
    app.state.pipeline = pipeline
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PredictionError)
    async def prediction_error_handler(request: Request, exc: PredictionError):
        if isinstance(exc, ValidationError):
            return failure_response(exc.status_code, exc.message)
        logger.error(f"Prediction error: {exc.detail}")
        return failure_response(exc.status_code, exc.message, exc.detail)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return failure_response(400, "Invalid request.")

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unexpected prediction error: {exc}")
        return failure_response(500, PredictionError.message, str(exc))

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return WELCOME_TEXT

    @app.post("/predict/{prediction_id}")
    async def predict(prediction_id: str, request: Request, image: Optional[UploadFile] = File(None)):
        uploaded = None
        if image is not None:
            # One byte past the limit is enough to tell it is oversized
            data = await image.read(MAX_UPLOAD_BYTES + 1)
            uploaded = UploadedImage(filename=image.filename, content_type=image.content_type, data=data)

        record = await request.app.state.pipeline.run(prediction_id, uploaded)
        return {
            "status": "success",
            "message": "Prediction successful",
            "data": record.to_document(),
        }

    return app


configure_logging(load_settings().log_level)
app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
