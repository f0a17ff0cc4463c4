"""Shared fakes: an in-memory HTTP transport and a stub model."""

from __future__ import annotations

import io
import json
from typing import TYPE_CHECKING

import httpx
import numpy as np
import pytest
from PIL import Image

from interviz.config import Settings

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from numpy.typing import NDArray


class FakeWeb:
    """Serves canned responses by URL and records every request."""

    def __init__(self) -> None:
        self.routes: dict[str, httpx.Response] = {}
        self.requests: list[str] = []

    def json(self, url: str, payload: object) -> None:
        self.routes[str(httpx.URL(url))] = httpx.Response(200, content=json.dumps(payload).encode())

    def body(self, url: str, content: bytes) -> None:
        self.routes[str(httpx.URL(url))] = httpx.Response(200, content=content)

    def status(self, url: str, code: int) -> None:
        self.routes[str(httpx.URL(url))] = httpx.Response(code)

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        response = self.routes.get(url)
        if response is None:
            return httpx.Response(404)
        return httpx.Response(response.status_code, content=response.content)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class FakeModel:
    """ModelRunner that returns fixed scores and records its inputs."""

    def __init__(self, scores: list[float], input_shape: list[object] | None = None) -> None:
        self._scores = np.array([scores], dtype=np.float32)
        self._input_shape = input_shape or [1, 4, 4, 3]
        self.inputs: list[NDArray[np.float32]] = []

    @property
    def input_shape(self) -> list[object]:
        return self._input_shape

    async def execute(self, input_tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        self.inputs.append(input_tensor)
        return self._scores


class FakeLoader:
    """ModelLoader returning a preset model."""

    def __init__(self, model: FakeModel) -> None:
        self.model = model
        self.loaded: list[str] = []

    async def load(self, model_url: str) -> FakeModel:
        self.loaded.append(model_url)
        return self.model

    def get_loaded_models(self) -> list[str]:
        return list(self.loaded)

    def shutdown(self) -> None:
        self.loaded.clear()


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "model_filename": "model.onnx",
        "http_timeout": 5.0,
        "max_concurrent": 1,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def png_bytes(size: tuple[int, int] = (8, 6), color: tuple[int, int, int] = (255, 0, 0)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture()
def web() -> FakeWeb:
    return FakeWeb()


@pytest.fixture()
async def http_client(web: FakeWeb) -> AsyncIterator[httpx.AsyncClient]:
    async with web.client() as client:
        yield client
