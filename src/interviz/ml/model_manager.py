"""Model manager: download, load, and cache ONNX models.

Models are fetched over HTTP from a URL derived from the metadata document,
turned into ONNX InferenceSessions on the inference pool, and cached per URL
for the lifetime of the process.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Protocol

from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import (
    ExecutionMode,
    Fail,
    InvalidArgument,
    InvalidGraph,
    InvalidProtobuf,
    NoSuchFile,
    NotImplemented as OrtNotImplemented,
    RuntimeException,
)

from interviz.errors import ModelLoadError
from interviz.fetch import fetch_bytes

if TYPE_CHECKING:
    from collections.abc import Sequence

    import httpx
    import numpy as np
    from numpy.typing import NDArray

    from interviz.config import Settings
    from interviz.ml.inference import InferencePool

logger = logging.getLogger(__name__)

# ONNX Runtime raises these (plain Exception subclasses) for unusable model files.
SESSION_ERRORS: tuple[type[Exception], ...] = (
    Fail,
    InvalidArgument,
    InvalidGraph,
    InvalidProtobuf,
    NoSuchFile,
    OrtNotImplemented,
    RuntimeException,
    RuntimeError,
    ValueError,
)


# ---------------------------------------------------------------------------
# Protocols (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelRunner(Protocol):
    """A loaded model that maps an input tensor to an output tensor."""

    @property
    def input_shape(self) -> Sequence[object]:
        """Return the model's input shape (dynamic dimensions may be None or str)."""
        ...

    async def execute(self, input_tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run the model and return the first output head."""
        ...


class ModelLoader(Protocol):
    """Protocol for model loading."""

    async def load(self, model_url: str) -> ModelRunner:
        """Load (or return the cached) model at ``model_url``."""
        ...

    def shutdown(self) -> None:
        """Drop all cached models."""
        ...


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModel:
    """ModelRunner backed by an ONNX InferenceSession."""

    def __init__(self, session: InferenceSession, pool: InferencePool) -> None:
        self._session = session
        self._pool = pool
        model_input = session.get_inputs()[0]
        self._input_name: str = model_input.name
        self._input_shape: list[object] = list(model_input.shape)

    @property
    def input_shape(self) -> list[object]:
        return self._input_shape

    async def execute(self, input_tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        outputs = await self._pool.run(self._session.run, None, {self._input_name: input_tensor})
        return outputs[0]


class OnnxModelLoader:
    """Downloads model files and caches ONNX sessions per URL."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient, pool: InferencePool) -> None:
        self._settings = settings
        self._client = client
        self._pool = pool

        self._lock = asyncio.Lock()
        self._models: dict[str, OnnxModel] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    async def load(self, model_url: str) -> OnnxModel:
        """Return a cached model, downloading and creating a session if needed.

        Raises:
            ModelLoadError: If the download fails or ONNX Runtime rejects the file.
        """
        async with self._lock:
            cached = self._models.get(model_url)
            if cached is not None:
                return cached

            model_bytes = await fetch_bytes(self._client, model_url, ModelLoadError)
            logger.info("Downloaded %s (%d bytes)", model_url, len(model_bytes))
            try:
                session = await self._pool.run(self._create_session, model_bytes)
            except SESSION_ERRORS as exc:
                raise ModelLoadError(f"Cannot create session for {model_url}: {exc}") from exc

            model = OnnxModel(session, self._pool)
            self._models[model_url] = model
            logger.info("Loaded session for %s (input shape %s)", model_url, model.input_shape)
            return model

    def get_loaded_models(self) -> list[str]:
        """Return URLs of models with active sessions."""
        return list(self._models.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        self._models.clear()
        logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _create_session(self, model_bytes: bytes) -> InferenceSession:
        return InferenceSession(
            model_bytes,
            sess_options=self._session_options,
            providers=self._providers,
        )

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
