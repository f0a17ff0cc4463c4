"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, HTTPException, Request, UploadFile, status

from interviz.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ModelStateResponse,
    TestImage,
)
from interviz.errors import (
    ImageDecodeError,
    InvalidLabelMapError,
    MetadataFetchError,
    MetadataParseError,
    MissingParameterError,
    ModelLoadError,
    ModelNotReadyError,
    TestImageFetchError,
    UnsupportedModelTypeError,
    VisualizerError,
)
from interviz.visualizer import parse_metadata_url

if TYPE_CHECKING:
    from interviz.config import Settings
    from interviz.ml.inference import InferencePool
    from interviz.ml.model_manager import OnnxModelLoader
    from interviz.visualizer import Visualizer

router = APIRouter(prefix="/api/v1")

_ERROR_STATUS: dict[type[VisualizerError], int] = {
    MissingParameterError: status.HTTP_422_UNPROCESSABLE_CONTENT,
    MetadataFetchError: status.HTTP_502_BAD_GATEWAY,
    MetadataParseError: status.HTTP_502_BAD_GATEWAY,
    InvalidLabelMapError: status.HTTP_502_BAD_GATEWAY,
    ModelLoadError: status.HTTP_502_BAD_GATEWAY,
    TestImageFetchError: status.HTTP_502_BAD_GATEWAY,
    ModelNotReadyError: status.HTTP_409_CONFLICT,
    UnsupportedModelTypeError: status.HTTP_501_NOT_IMPLEMENTED,
    ImageDecodeError: status.HTTP_400_BAD_REQUEST,
}

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    code: {"model": ErrorResponse} for code in sorted(set(_ERROR_STATUS.values()))
}

# Inference waits on the pool semaphore; a full pool surfaces as TimeoutError.
_CLASSIFY_RESPONSES: dict[int | str, dict[str, object]] = {
    **_ERROR_RESPONSES,
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_visualizer(request: Request) -> Visualizer:
    visualizer: Visualizer = request.app.state.visualizer
    return visualizer


def _http_error(exc: VisualizerError) -> HTTPException:
    code = _ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return HTTPException(status_code=code, detail=str(exc))


def _busy_error(exc: TimeoutError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=str(exc) or "Inference capacity exhausted, retry later",
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health and visualizer state."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    loader: OnnxModelLoader = request.app.state.model_loader
    return HealthResponse(
        status="ok",
        state=_get_visualizer(request).state,
        gpu=settings.device == "cuda",
        models_loaded=loader.get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.post(
    "/model",
    response_model=ModelStateResponse,
    responses=_ERROR_RESPONSES,
    summary="Load a model from its metadata URL",
)
async def load_model(request: Request) -> ModelStateResponse:
    """Fetch metadata, label map, test images and model for ``?model_metadata_url=``."""
    visualizer = _get_visualizer(request)
    try:
        metadata_url = parse_metadata_url(request.query_params)
        await visualizer.init_app(metadata_url)
    except VisualizerError as exc:
        raise _http_error(exc) from exc
    return ModelStateResponse.from_visualizer(visualizer)


@router.get(
    "/model",
    response_model=ModelStateResponse,
    summary="Current model state",
)
async def get_model(request: Request) -> ModelStateResponse:
    """Return the visualizer state and the loaded resources."""
    return ModelStateResponse.from_visualizer(_get_visualizer(request))


@router.get(
    "/test-images",
    response_model=list[TestImage],
    summary="List test images",
)
async def list_test_images(request: Request) -> list[TestImage]:
    """Return the test images of the loaded model (empty when none were found)."""
    session = _get_visualizer(request).session
    if session is None:
        return []
    return [TestImage.from_entry(entry) for entry in session.test_images]


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses=_CLASSIFY_RESPONSES,
    summary="Classify an uploaded image",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse:
    """Classify an uploaded image and return labelled results."""
    settings = _get_settings(request)
    image_bytes = await file.read(settings.max_file_size + 1)
    if len(image_bytes) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )

    try:
        results = await _get_visualizer(request).classify_image_bytes(image_bytes)
    except VisualizerError as exc:
        raise _http_error(exc) from exc
    except TimeoutError as exc:
        raise _busy_error(exc) from exc
    return ClassifyImageResponse.from_results(results)


@router.post(
    "/test-images/{index}/classify",
    response_model=ClassifyImageResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}, **_CLASSIFY_RESPONSES},
    summary="Classify one of the model's test images",
)
async def classify_test_image(request: Request, index: int) -> ClassifyImageResponse:
    """Fetch the indexed test image and classify it."""
    try:
        results = await _get_visualizer(request).classify_test_image(index)
    except IndexError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except VisualizerError as exc:
        raise _http_error(exc) from exc
    except TimeoutError as exc:
        raise _busy_error(exc) from exc
    return ClassifyImageResponse.from_results(results)
