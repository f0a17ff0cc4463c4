"""Model metadata document decoding and retrieval.

The metadata document is keyed by model family, for example::

    {
      "tfjs_classifier_model_metadata": {
        "input_tensor_metadata": [...],
        "output_head_metadata": [{"score_threshold": 0.5, "labelmap_path": "labelmap.json"}]
      },
      "test_images_index_path": "images/index.json"
    }

Auxiliary paths are resolved against the metadata document's own URL.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from interviz.errors import MetadataFetchError, MetadataParseError
from interviz.fetch import fetch_json, resolve_url

if TYPE_CHECKING:
    import httpx

logger = logging.getLogger(__name__)


class ModelType(StrEnum):
    CLASSIFIER = "classifier"
    DETECTOR = "detector"
    SEGMENTER = "segmenter"


# Checked in order; the first key present decides the model type.
MODEL_TYPE_KEYS: dict[str, ModelType] = {
    "tfjs_classifier_model_metadata": ModelType.CLASSIFIER,
    "tfjs_detector_model_metadata": ModelType.DETECTOR,
    "tfjs_segmenter_model_metadata": ModelType.SEGMENTER,
}


# ---------------------------------------------------------------------------
# Wire schema
# ---------------------------------------------------------------------------


class OutputHeadSpec(BaseModel):
    """Per-head configuration of a model output."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    score_threshold: float = Field(default=0.0, ge=0.0, le=1.0)
    labelmap_path: str | None = None


class ModelFamilyMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    input_tensor_metadata: list[Any] = Field(default_factory=list)
    output_head_metadata: list[OutputHeadSpec] = Field(default_factory=list)


class MetadataDocument(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, protected_namespaces=())

    test_images_index_path: str | None = None
    labelmap_path: str | None = None
    model_path: str | None = None


# ---------------------------------------------------------------------------
# Decoded metadata
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelMetadata:
    """Validated metadata with every auxiliary path resolved to an absolute URL."""

    url: str
    model_type: ModelType
    output_heads: tuple[OutputHeadSpec, ...]
    input_tensor_metadata: tuple[Any, ...] = ()
    labelmap_url: str | None = None
    test_images_index_url: str | None = None
    model_url: str | None = None

    @property
    def score_threshold(self) -> float:
        """Threshold of the first output head (0 when the model declares none)."""
        if not self.output_heads:
            return 0.0
        return self.output_heads[0].score_threshold


def parse_metadata(raw: Any, url: str, default_model_filename: str | None = None) -> ModelMetadata:
    """Decode a raw metadata document fetched from ``url``.

    Raises:
        MetadataParseError: If the document is not an object, has no
            recognized model-type key, or a field fails validation.
    """
    if not isinstance(raw, dict):
        raise MetadataParseError(f"Metadata at {url} is not a JSON object")

    family_key = next((key for key in MODEL_TYPE_KEYS if key in raw), None)
    if family_key is None:
        raise MetadataParseError(
            f"Metadata at {url} has none of the recognized keys: {', '.join(MODEL_TYPE_KEYS)}"
        )

    try:
        family = ModelFamilyMetadata.model_validate(raw[family_key] or {})
        document = MetadataDocument.model_validate(raw)
    except ValidationError as exc:
        raise MetadataParseError(f"Malformed metadata at {url}: {exc}") from exc

    labelmap_path = document.labelmap_path
    if family.output_head_metadata and family.output_head_metadata[0].labelmap_path:
        labelmap_path = family.output_head_metadata[0].labelmap_path

    model_path = document.model_path or default_model_filename

    def _resolve(path: str | None) -> str | None:
        return resolve_url(url, path) if path else None

    return ModelMetadata(
        url=url,
        model_type=MODEL_TYPE_KEYS[family_key],
        output_heads=tuple(family.output_head_metadata),
        input_tensor_metadata=tuple(family.input_tensor_metadata),
        labelmap_url=_resolve(labelmap_path),
        test_images_index_url=_resolve(document.test_images_index_path),
        model_url=_resolve(model_path),
    )


async def fetch_metadata(
    client: httpx.AsyncClient,
    url: str,
    default_model_filename: str | None = None,
) -> ModelMetadata:
    """Fetch and decode the metadata document at ``url``.

    Raises:
        MetadataFetchError: On transport failure.
        MetadataParseError: If the body is not valid metadata.
    """
    raw = await fetch_json(client, url, MetadataFetchError, MetadataParseError)
    metadata = parse_metadata(raw, url, default_model_filename)
    logger.info(
        "Loaded metadata from %s (type=%s, heads=%d)",
        url,
        metadata.model_type,
        len(metadata.output_heads),
    )
    return metadata
