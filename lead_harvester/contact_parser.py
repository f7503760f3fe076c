from __future__ import annotations

import logging
import re
from typing import Iterable, Optional, Set

from bs4 import BeautifulSoup
from email_validator import EmailNotValidError, validate_email

EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")

# file names that look like addresses, e.g. logo@2x.png
ASSET_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".css", ".js")

logger = logging.getLogger(__name__)


def normalize_email(candidate: str) -> Optional[str]:
    value = candidate.strip().strip(".,;:")
    if not value or value.lower().endswith(ASSET_SUFFIXES):
        return None
    try:
        return validate_email(value, check_deliverability=False).normalized.lower()
    except EmailNotValidError:
        return None


def _mailto_targets(soup: BeautifulSoup) -> Iterable[str]:
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href.lower().startswith("mailto:"):
            continue
        target = href[len("mailto:"):].split("?", 1)[0]
        for part in target.split(","):
            if part.strip():
                yield part


def parse(html: Optional[str]) -> Set[str]:
    """Validated, normalized e-mail addresses found in an HTML page."""
    if not html or not html.strip():
        return set()

    soup = BeautifulSoup(html, "html.parser")
    candidates = set(EMAIL_PATTERN.findall(soup.get_text(" ")))
    candidates.update(_mailto_targets(soup))

    emails: Set[str] = set()
    for candidate in candidates:
        normalized = normalize_email(candidate)
        if normalized:
            emails.add(normalized)
        else:
            logger.debug("Discarding invalid e-mail candidate %r", candidate)
    return emails


__all__ = ["EMAIL_PATTERN", "normalize_email", "parse"]
