"""Tests for the Interviz HTTP API."""

from __future__ import annotations

import io
import os
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import httpx
import pytest
from conftest import FakeLoader, FakeModel, FakeWeb, png_bytes
from fastapi import FastAPI, status

from interviz.config import get_settings
from interviz.main import create_app, init_state
from interviz.visualizer import Visualizer

METADATA_URL = "https://modelmetadata.test/metadata.json"
INDEX_URL = "https://testimages.test/index.json"

CLASSIFIER_METADATA = {
    "tfjs_classifier_model_metadata": {
        "input_tensor_metadata": [1, 2, 3, 4],
        "output_head_metadata": [{"score_threshold": 0.5, "labelmap_path": "labelmap.json"}],
    },
    "test_images_index_path": INDEX_URL,
}


def _init_app_state(app: FastAPI, web: FakeWeb, **env_overrides: str) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, env_overrides):
        settings = get_settings()
    client = web.client()
    init_state(app, settings, client)
    loader = FakeLoader(FakeModel([0.6, 0.8, 0.4]))
    app.state.model_loader = loader
    app.state.visualizer = Visualizer(settings, client, loader)


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    app.state.inference_pool.shutdown()
    await app.state.http_client.aclose()


@pytest.fixture()
def app(web: FakeWeb) -> FastAPI:
    """Create a fresh app instance with default settings."""
    application = create_app()
    _init_app_state(application, web)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


@pytest.fixture()
def classifier_web(web: FakeWeb) -> FakeWeb:
    web.json(METADATA_URL, CLASSIFIER_METADATA)
    web.json(INDEX_URL, ["image1.jpg", "image2.jpg"])
    web.json(
        "https://modelmetadata.test/labelmap.json",
        {"item": [{"id": 0, "name": "someLabel"}, {"id": 1, "display_name": "otherLabel"}]},
    )
    web.body("https://testimages.test/image1.jpg", png_bytes())
    return web


async def _load(client: httpx.AsyncClient) -> httpx.Response:
    return await client.post("/api/v1/model", params={"model_metadata_url": METADATA_URL})


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["state"] == "uninitialized"
        assert data["gpu"] is False
        assert data["models_loaded"] == []
        assert isinstance(data["concurrent_requests"], int)
        assert isinstance(data["queue_depth"], int)

    async def test_health_gpu_true_when_cuda(self, web: FakeWeb) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, web, INTERVIZ_DEVICE="cuda")
        async for ac in _make_client(cuda_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["gpu"] is True


class TestModelEndpoint:
    async def test_load_without_url_is_rejected(self, web: FakeWeb, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/model")
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT
        assert "model_metadata_url" in response.json()["detail"]
        assert web.requests == []

    async def test_load_classifier(self, classifier_web: FakeWeb, client: httpx.AsyncClient) -> None:
        response = await _load(client)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["state"] == "ready"
        assert data["model_type"] == "classifier"
        assert data["score_threshold"] == 0.5
        assert data["label_map"] == ["someLabel", "otherLabel"]
        assert data["test_images"] == [
            {
                "image_url": "https://testimages.test/image1.jpg",
                "thumbnail_url": "https://testimages.test/image1_thumb.jpg",
            },
            {
                "image_url": "https://testimages.test/image2.jpg",
                "thumbnail_url": "https://testimages.test/image2_thumb.jpg",
            },
        ]

    async def test_metadata_failure_reports_error_state(self, web: FakeWeb, client: httpx.AsyncClient) -> None:
        web.status(METADATA_URL, 500)

        response = await _load(client)
        assert response.status_code == status.HTTP_502_BAD_GATEWAY

        state = (await client.get("/api/v1/model")).json()
        assert state["state"] == "error"
        assert state["error"]

    async def test_unrecognized_metadata(self, web: FakeWeb, client: httpx.AsyncClient) -> None:
        web.json(METADATA_URL, {"not_a_model": {}})
        response = await _load(client)
        assert response.status_code == status.HTTP_502_BAD_GATEWAY

    async def test_get_model_before_load(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/model")
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["state"] == "uninitialized"
        assert response.json()["model_type"] is None

    async def test_test_images_listing(self, classifier_web: FakeWeb, client: httpx.AsyncClient) -> None:
        assert (await client.get("/api/v1/test-images")).json() == []
        await _load(client)
        images = (await client.get("/api/v1/test-images")).json()
        assert [image["image_url"] for image in images] == [
            "https://testimages.test/image1.jpg",
            "https://testimages.test/image2.jpg",
        ]


class TestClassifyImageEndpoint:
    async def test_classify_before_load_returns_409(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("test.png", io.BytesIO(png_bytes()), "image/png")},
        )
        assert response.status_code == status.HTTP_409_CONFLICT

    async def test_classify_upload(self, classifier_web: FakeWeb, client: httpx.AsyncClient) -> None:
        await _load(client)

        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("test.png", io.BytesIO(png_bytes()), "image/png")},
        )

        assert response.status_code == status.HTTP_200_OK
        results = response.json()["results"]
        assert [r["display_name"] for r in results] == ["otherLabel", "someLabel"]
        assert [r["score"] for r in results] == pytest.approx([0.8, 0.6])

    async def test_classify_garbage_returns_400(self, classifier_web: FakeWeb, client: httpx.AsyncClient) -> None:
        await _load(client)
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("test.jpg", io.BytesIO(b"fake image data"), "image/jpeg")},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    async def test_classify_detector_returns_501(self, web: FakeWeb, client: httpx.AsyncClient) -> None:
        web.json(METADATA_URL, {"tfjs_detector_model_metadata": {}})
        await _load(client)
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("test.png", io.BytesIO(png_bytes()), "image/png")},
        )
        assert response.status_code == status.HTTP_501_NOT_IMPLEMENTED

    async def test_upload_too_large_returns_413(self, web: FakeWeb) -> None:
        small_app = create_app()
        _init_app_state(small_app, web, INTERVIZ_MAX_FILE_SIZE="10")
        async for ac in _make_client(small_app):
            response = await ac.post(
                "/api/v1/classify-image",
                files={"file": ("test.png", io.BytesIO(png_bytes()), "image/png")},
            )
            assert response.status_code == status.HTTP_413_CONTENT_TOO_LARGE

    async def test_saturated_pool_returns_503(
        self, classifier_web: FakeWeb, app: FastAPI, client: httpx.AsyncClient
    ) -> None:
        await _load(client)

        async def _timed_out(input_tensor: object) -> object:
            raise TimeoutError("Inference queue full")

        app.state.model_loader.model.execute = _timed_out
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("test.png", io.BytesIO(png_bytes()), "image/png")},
        )

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["detail"] == "Inference queue full"
        assert app.state.visualizer.state == "ready"


class TestClassifyTestImageEndpoint:
    async def test_classify_indexed_image(self, classifier_web: FakeWeb, client: httpx.AsyncClient) -> None:
        await _load(client)

        response = await client.post("/api/v1/test-images/0/classify")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["results"][0]["display_name"] == "otherLabel"

    async def test_unknown_index_returns_404(self, classifier_web: FakeWeb, client: httpx.AsyncClient) -> None:
        await _load(client)
        response = await client.post("/api/v1/test-images/7/classify")
        assert response.status_code == status.HTTP_404_NOT_FOUND

    async def test_unreachable_image_returns_502(self, classifier_web: FakeWeb, client: httpx.AsyncClient) -> None:
        await _load(client)
        response = await client.post("/api/v1/test-images/1/classify")
        assert response.status_code == status.HTTP_502_BAD_GATEWAY

    async def test_saturated_pool_returns_503(
        self, classifier_web: FakeWeb, app: FastAPI, client: httpx.AsyncClient
    ) -> None:
        await _load(client)

        async def _timed_out(input_tensor: object) -> object:
            raise TimeoutError

        app.state.model_loader.model.execute = _timed_out
        response = await client.post("/api/v1/test-images/0/classify")

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["detail"] == "Inference capacity exhausted, retry later"


class TestOnnxLoaderEndpoint:
    async def test_corrupt_model_file_returns_502(self, classifier_web: FakeWeb) -> None:
        classifier_web.body("https://modelmetadata.test/model.onnx", b"definitely not onnx")
        onnx_app = create_app()
        init_state(onnx_app, get_settings(), classifier_web.client())

        async for ac in _make_client(onnx_app):
            response = await _load(ac)
            assert response.status_code == status.HTTP_502_BAD_GATEWAY
            assert "Cannot create session" in response.json()["detail"]

            state = await ac.get("/api/v1/model")
            assert state.json()["state"] == "error"
