"""Visualizer orchestration.

State machine::

    uninitialized -> metadata_loading -> metadata_loaded -> model_loading -> ready
                                      \\                                 /
                                       `-------------> error <----------'

    ready -> classifying -> ready

Everything fetched during initialization lives in one immutable
``VisualizerSession``; the orchestrator only swaps that value (and its
state) at transitions.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from interviz.errors import (
    LabelMapFetchError,
    MissingParameterError,
    ModelNotReadyError,
    TestImageFetchError,
    UnsupportedModelTypeError,
)
from interviz.fetch import fetch_bytes
from interviz.image_index import TestImageEntry, resolve_test_images
from interviz.labelmap import LabelMap, fetch_label_map
from interviz.metadata import ModelMetadata, ModelType, fetch_metadata
from interviz.ml.classifier import ClassificationResult, build_classifier_results
from interviz.ml.preprocessing import decode_image, prepare_image_input

if TYPE_CHECKING:
    from collections.abc import Mapping

    import httpx
    import numpy as np
    from numpy.typing import NDArray
    from PIL import Image

    from interviz.config import Settings
    from interviz.ml.model_manager import ModelLoader, ModelRunner

logger = logging.getLogger(__name__)

METADATA_URL_PARAM = "model_metadata_url"


class AppState(StrEnum):
    UNINITIALIZED = "uninitialized"
    METADATA_LOADING = "metadata_loading"
    METADATA_LOADED = "metadata_loaded"
    MODEL_LOADING = "model_loading"
    READY = "ready"
    CLASSIFYING = "classifying"
    ERROR = "error"


@dataclass(frozen=True)
class VisualizerSession:
    """Everything loaded for one model; read-only once built."""

    metadata: ModelMetadata
    model: ModelRunner | None = None
    label_map: LabelMap = field(default_factory=list)
    test_images: list[TestImageEntry] = field(default_factory=list)

    @property
    def model_type(self) -> ModelType:
        return self.metadata.model_type


def parse_metadata_url(params: Mapping[str, str]) -> str:
    """Read the metadata URL from query parameters.

    Raises:
        MissingParameterError: If the parameter is absent or empty.
    """
    url = params.get(METADATA_URL_PARAM)
    if not url:
        raise MissingParameterError(f"Missing required query parameter '{METADATA_URL_PARAM}'")
    return url


class Visualizer:
    """Loads a model with its metadata, label map and test images, then classifies images."""

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient,
        model_loader: ModelLoader,
    ) -> None:
        self._settings = settings
        self._client = client
        self._model_loader = model_loader

        self._state = AppState.UNINITIALIZED
        self._session: VisualizerSession | None = None
        self._error: Exception | None = None

    # -- State --------------------------------------------------------------

    @property
    def state(self) -> AppState:
        return self._state

    @property
    def session(self) -> VisualizerSession | None:
        return self._session

    @property
    def error(self) -> Exception | None:
        """The exception that moved the visualizer to ``error``, if any."""
        return self._error

    def _transition(self, state: AppState) -> None:
        logger.info("Visualizer state: %s -> %s", self._state, state)
        self._state = state

    # -- Initialization -----------------------------------------------------

    async def init_app(self, metadata_url: str | None) -> VisualizerSession:
        """Fetch metadata, then label map, test images and model concurrently.

        Raises:
            MissingParameterError: If ``metadata_url`` is empty; raised before
                any network call and without changing state.
            MetadataFetchError, MetadataParseError: Initialization aborts and
                the state becomes ``error``.
        """
        if not metadata_url:
            raise MissingParameterError("A model metadata URL is required")

        self._session = None
        self._error = None
        self._transition(AppState.METADATA_LOADING)
        try:
            metadata = await fetch_metadata(self._client, metadata_url, self._settings.model_filename)
            self._session = VisualizerSession(metadata=metadata)
            self._transition(AppState.METADATA_LOADED)

            self._transition(AppState.MODEL_LOADING)
            label_map, test_images, model = await self._load_resources(metadata)
        except Exception as exc:
            logger.exception("Initialization from %s failed", metadata_url)
            self._error = exc
            self._transition(AppState.ERROR)
            raise

        self._session = VisualizerSession(
            metadata=metadata,
            model=model,
            label_map=label_map,
            test_images=test_images,
        )
        self._transition(AppState.READY)
        return self._session

    async def _load_resources(
        self, metadata: ModelMetadata
    ) -> tuple[LabelMap, list[TestImageEntry], ModelRunner | None]:
        """Load label map, test images and model concurrently.

        The first failure cancels the other loads and is re-raised as is.
        """
        try:
            async with asyncio.TaskGroup() as group:
                label_map = group.create_task(self._load_label_map(metadata))
                test_images = group.create_task(self._load_test_images(metadata))
                model = group.create_task(self._load_model(metadata))
        except ExceptionGroup as group_error:
            raise group_error.exceptions[0] from None
        return label_map.result(), test_images.result(), model.result()

    async def _load_label_map(self, metadata: ModelMetadata) -> LabelMap:
        if metadata.labelmap_url is None:
            return []
        try:
            return await fetch_label_map(self._client, metadata.labelmap_url)
        except LabelMapFetchError as exc:
            logger.warning("Continuing without label map: %s", exc)
            return []

    async def _load_test_images(self, metadata: ModelMetadata) -> list[TestImageEntry]:
        if metadata.test_images_index_url is None:
            return []
        try:
            return await resolve_test_images(self._client, metadata.test_images_index_url)
        except TestImageFetchError as exc:
            logger.warning("Continuing without test images: %s", exc)
            return []

    async def _load_model(self, metadata: ModelMetadata) -> ModelRunner | None:
        if metadata.model_url is None:
            return None
        return await self._model_loader.load(metadata.model_url)

    # -- Classification -----------------------------------------------------

    def _ready_session(self) -> tuple[VisualizerSession, ModelRunner]:
        session = self._session
        if self._state is not AppState.READY or session is None or session.model is None:
            raise ModelNotReadyError(f"Model is not ready (state={self._state})")
        if session.model_type is not ModelType.CLASSIFIER:
            raise UnsupportedModelTypeError(f"Classification is not supported for {session.model_type} models")
        return session, session.model

    async def run_image_classifier(self, image: Image.Image) -> list[ClassificationResult]:
        """Classify ``image`` with the loaded model.

        Errors raised by the model propagate unchanged; the state returns to
        ``ready`` either way.

        Raises:
            ModelNotReadyError: If called outside the ``ready`` state.
            UnsupportedModelTypeError: If the model is not a classifier.
        """
        session, model = self._ready_session()

        self._transition(AppState.CLASSIFYING)
        try:
            input_tensor = await asyncio.to_thread(self.prepare_image_input, image, model)
            scores = await model.execute(input_tensor)
        finally:
            self._transition(AppState.READY)

        results = build_classifier_results(scores, session.label_map, session.metadata.score_threshold)
        logger.info(
            "Classified image: %d results above threshold %.2f",
            len(results),
            session.metadata.score_threshold,
        )
        return results

    def prepare_image_input(self, image: Image.Image, model: ModelRunner) -> NDArray[np.float32]:
        """Build the model input tensor for ``image``."""
        return prepare_image_input(image, model.input_shape)

    async def classify_image_bytes(self, image_bytes: bytes) -> list[ClassificationResult]:
        """Decode raw bytes and classify them."""
        self._ready_session()
        image = await asyncio.to_thread(decode_image, image_bytes, self._settings.max_image_pixels)
        return await self.run_image_classifier(image)

    async def classify_test_image(self, index: int) -> list[ClassificationResult]:
        """Fetch the test image at ``index`` and classify it.

        Raises:
            IndexError: If ``index`` is outside the test-image list.
            TestImageFetchError: If the image cannot be fetched.
        """
        session, _model = self._ready_session()
        if not 0 <= index < len(session.test_images):
            raise IndexError(f"Test image {index} out of range (have {len(session.test_images)})")

        image_bytes = await fetch_bytes(self._client, session.test_images[index].image_url, TestImageFetchError)
        return await self.classify_image_bytes(image_bytes)
