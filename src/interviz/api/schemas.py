"""Pydantic response schemas for the Interviz API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from interviz.image_index import TestImageEntry
    from interviz.ml.classifier import ClassificationResult
    from interviz.visualizer import Visualizer


class TestImage(BaseModel):
    """Full-size and thumbnail URLs of one test image."""

    image_url: str
    thumbnail_url: str

    @classmethod
    def from_entry(cls, entry: TestImageEntry) -> TestImage:
        return cls(image_url=entry.image_url, thumbnail_url=entry.thumbnail_url)


class ClassificationTag(BaseModel):
    """A single classification result."""

    display_name: str
    score: float = Field(description="Model confidence for this class")


class ClassifyImageResponse(BaseModel):
    """Response for the classification endpoints, sorted by score (descending)."""

    results: list[ClassificationTag]

    @classmethod
    def from_results(cls, results: list[ClassificationResult]) -> ClassifyImageResponse:
        return cls(results=[ClassificationTag(display_name=r.display_name, score=r.score) for r in results])


class ModelStateResponse(BaseModel):
    """Current visualizer state and what has been loaded."""

    state: str = Field(description="One of the visualizer states, e.g. 'ready' or 'error'")
    metadata_url: str | None = None
    model_type: str | None = Field(default=None, description="'classifier', 'detector' or 'segmenter'")
    score_threshold: float | None = None
    label_map: list[str] = Field(default_factory=list)
    test_images: list[TestImage] = Field(default_factory=list)
    error: str | None = None

    @classmethod
    def from_visualizer(cls, visualizer: Visualizer) -> ModelStateResponse:
        session = visualizer.session
        error = visualizer.error
        if session is None:
            return cls(state=visualizer.state, error=str(error) if error else None)
        return cls(
            state=visualizer.state,
            metadata_url=session.metadata.url,
            model_type=session.model_type,
            score_threshold=session.metadata.score_threshold,
            label_map=session.label_map,
            test_images=[TestImage.from_entry(entry) for entry in session.test_images],
            error=str(error) if error else None,
        )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    state: str
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
