"""Test-image index resolution."""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pydantic import TypeAdapter, ValidationError

from interviz.errors import TestImageFetchError
from interviz.fetch import append_file_name, base_directory, fetch_json

if TYPE_CHECKING:
    import httpx

logger = logging.getLogger(__name__)

THUMBNAIL_SUFFIX = "_thumb"

_INDEX_ADAPTER = TypeAdapter(list[str])


@dataclass(frozen=True)
class TestImageEntry:
    """Full-size and thumbnail URLs for one test image."""

    image_url: str
    thumbnail_url: str


def thumbnail_name(file_name: str) -> str:
    """Return ``stem + "_thumb" + extension`` for ``file_name``."""
    stem, ext = posixpath.splitext(file_name)
    return f"{stem}{THUMBNAIL_SUFFIX}{ext}"


def build_test_images(index_url: str, file_names: list[str]) -> list[TestImageEntry]:
    """Derive image/thumbnail URLs in the directory of ``index_url``, keeping input order.

    File names are appended literally, so they cannot change the scheme,
    host, query or fragment of the result.
    """
    directory = base_directory(index_url)
    return [
        TestImageEntry(
            image_url=append_file_name(directory, name),
            thumbnail_url=append_file_name(directory, thumbnail_name(name)),
        )
        for name in file_names
    ]


async def resolve_test_images(client: httpx.AsyncClient, index_url: str) -> list[TestImageEntry]:
    """Fetch the JSON array of file names at ``index_url`` and expand it.

    Raises:
        TestImageFetchError: On transport failure or if the index is not a list of strings.
    """
    raw = await fetch_json(client, index_url, TestImageFetchError)
    try:
        file_names = _INDEX_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        raise TestImageFetchError(f"Malformed test-image index at {index_url}: {exc}") from exc

    images = build_test_images(index_url, file_names)
    logger.info("Resolved %d test images from %s", len(images), index_url)
    return images
