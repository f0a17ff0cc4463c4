"""Thin retrieval and URL helpers shared by the metadata, label map and image index loaders."""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)


async def fetch_bytes(
    client: httpx.AsyncClient,
    url: str,
    error_cls: type[Exception],
) -> bytes:
    """GET ``url`` and return the body.

    Raises:
        error_cls: On any transport failure or an HTTP error status.
    """
    try:
        response = await client.get(url)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        raise error_cls(f"Failed to fetch {url}: {exc}") from exc
    logger.debug("Fetched %s (%d bytes)", url, len(response.content))
    return response.content


async def fetch_json(
    client: httpx.AsyncClient,
    url: str,
    error_cls: type[Exception],
    parse_error_cls: type[Exception] | None = None,
) -> Any:
    """GET ``url`` and decode its body as JSON.

    Transport failures raise ``error_cls``; undecodable bodies raise
    ``parse_error_cls`` (defaults to ``error_cls``).
    """
    body = await fetch_bytes(client, url, error_cls)
    try:
        return json.loads(body)
    except ValueError as exc:
        raise (parse_error_cls or error_cls)(f"Invalid JSON at {url}: {exc}") from exc


def resolve_url(base_url: str, path: str) -> str:
    """Resolve ``path`` against the directory of ``base_url``; absolute URLs pass through."""
    return str(httpx.URL(base_url).join(path))


def base_directory(url: str) -> str:
    """Return ``url`` cut back to its last ``/`` with query and fragment dropped."""
    parsed = httpx.URL(url)
    path = parsed.raw_path.decode("ascii").split("?", 1)[0]
    directory = path[: path.rfind("/") + 1] or "/"
    return f"{parsed.scheme}://{parsed.netloc.decode('ascii')}{directory}"


def append_file_name(directory_url: str, file_name: str) -> str:
    """Append a literal file name to a directory URL.

    Unlike :func:`resolve_url`, the name is never read as a URL reference:
    ``:``, ``#``, ``?`` and ``%`` are percent-quoted and a leading ``//``
    stays in the path.
    """
    return directory_url + quote(file_name, safe="/")
