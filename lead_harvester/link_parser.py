from __future__ import annotations

import json
import logging
from typing import Any, List, Union

from .errors import SearchResponseError
from .models import LinkResult

logger = logging.getLogger(__name__)


def parse_links(payload: Union[str, bytes, dict, None]) -> List[LinkResult]:
    """Extract ``items[].link/title/snippet`` from a search API response.

    Raises ``SearchResponseError`` when the body is not a JSON object.
    Items without a link are skipped.
    """
    if payload is None:
        return []
    document: Any = payload
    if isinstance(payload, (str, bytes)):
        if not payload.strip():
            return []
        try:
            document = json.loads(payload)
        except ValueError as exc:
            raise SearchResponseError(f"Search response is not valid JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise SearchResponseError(f"Search response has unexpected type {type(document).__name__}")

    items = document.get("items") or []
    if not isinstance(items, list):
        raise SearchResponseError("Search response 'items' is not a list")

    results: List[LinkResult] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        link = str(item.get("link") or "").strip()
        if not link:
            continue
        results.append(
            LinkResult(
                link=link,
                title=str(item.get("title") or ""),
                snippet=str(item.get("snippet") or ""),
            )
        )
    logger.debug("Parsed %d links from search response", len(results))
    return results
