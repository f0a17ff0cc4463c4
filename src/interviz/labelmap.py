"""Label map construction.

A label map is a dense list indexed by class id. The raw document lists
sparse ``{id, name?, display_name?}`` entries starting at id 1; slot 0 and
any id without an entry hold the ``"unknown"`` placeholder.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt, TypeAdapter, ValidationError

from interviz.errors import InvalidLabelMapError, LabelMapFetchError
from interviz.fetch import fetch_json

if TYPE_CHECKING:
    import httpx

logger = logging.getLogger(__name__)

UNKNOWN_LABEL = "unknown"

LabelMap = list[str]


class LabelEntry(BaseModel):
    """One raw label map item."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: StrictInt = Field(ge=0)
    name: str | None = None
    display_name: str | None = None

    @property
    def label(self) -> str | None:
        return self.display_name if self.display_name is not None else self.name


class LabelMapDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    item: list[LabelEntry]


_ENTRIES_ADAPTER = TypeAdapter(list[LabelEntry])


def build_label_map(entries: Iterable[Mapping[str, Any] | LabelEntry]) -> LabelMap:
    """Build a dense label map from sparse entries.

    Entries may come in any order. When two entries share an id the later
    one wins. An entry for id 0 replaces the placeholder.

    Raises:
        InvalidLabelMapError: If any id is negative or not an integer.
    """
    try:
        parsed = _ENTRIES_ADAPTER.validate_python(
            [e.model_dump() if isinstance(e, LabelEntry) else e for e in entries]
        )
    except ValidationError as exc:
        raise InvalidLabelMapError(f"Invalid label map entries: {exc}") from exc

    size = max((entry.id for entry in parsed), default=0) + 1
    label_map = [UNKNOWN_LABEL] * size
    for entry in parsed:
        label = entry.label
        if label is not None:
            label_map[entry.id] = label
    return label_map


async def fetch_label_map(client: httpx.AsyncClient, url: str) -> LabelMap:
    """Fetch a ``{"item": [...]}`` document and build its label map.

    Raises:
        LabelMapFetchError: On transport failure or a non-JSON body.
        InvalidLabelMapError: If the document shape or any entry is invalid.
    """
    raw = await fetch_json(client, url, LabelMapFetchError)
    try:
        document = LabelMapDocument.model_validate(raw)
    except ValidationError as exc:
        raise InvalidLabelMapError(f"Malformed label map at {url}: {exc}") from exc

    label_map = build_label_map(document.item)
    logger.info("Loaded label map from %s (%d classes)", url, len(label_map))
    return label_map
