from __future__ import annotations

import itertools
import random
from typing import Iterable, Iterator, List, Optional, Sequence


class QueryStrategyGenerator:
    """Generate search sentences that tend to surface business contact pages."""

    DEFAULT_INDUSTRIES = (
        "dental clinic",
        "law firm",
        "accounting firm",
        "real estate agency",
        "marketing agency",
        "architecture studio",
        "veterinary clinic",
        "plumbing company",
        "wedding photographer",
        "software consultancy",
    )
    DEFAULT_REGIONS = (
        "london",
        "berlin",
        "new york",
        "toronto",
        "sydney",
        "amsterdam",
        "dublin",
        "madrid",
    )
    CONTACT_PHRASES = (
        '{industry} {region} "contact us"',
        '{industry} in {region} email',
        '{industry} {region} "get in touch"',
        '"{industry}" {region} contact email address',
    )
    GENERIC_PHRASES = (
        '{industry} "email us"',
        '{industry} "contact" "@gmail.com"',
    )

    def __init__(
        self,
        industries: Optional[Sequence[str]] = None,
        regions: Optional[Sequence[str]] = None,
        seed: Optional[int] = None,
    ) -> None:
        self.random = random.Random(seed)
        self.industries = list(industries or self.DEFAULT_INDUSTRIES)
        self.regions = list(regions or self.DEFAULT_REGIONS)
        self._pool = self._build_pool()

    @property
    def pool(self) -> List[str]:
        return list(self._pool)

    def generate(self, limit: Optional[int] = None) -> List[str]:
        """Return ``limit`` shuffled sentences, or the whole pool when ``limit`` is None."""
        if limit is None:
            shuffled = list(self._pool)
            self.random.shuffle(shuffled)
            return shuffled
        if limit <= 0:
            raise ValueError("Query generation requires a positive limit")
        iterator = self.iterate()
        return [next(iterator) for _ in range(limit)]

    def iterate(self) -> Iterator[str]:
        if not self._pool:
            raise ValueError("Query pool is empty")
        while True:
            shuffled = list(self._pool)
            self.random.shuffle(shuffled)
            for sentence in shuffled:
                yield sentence

    def batched(self, batch_size: int, limit: Optional[int] = None) -> Iterable[List[str]]:
        if batch_size <= 0:
            raise ValueError("Batch size must be positive")
        iterator = self.iterate()
        batch: List[str] = []
        produced = 0
        while limit is None or produced < limit:
            batch.append(next(iterator))
            produced += 1
            if len(batch) == batch_size:
                yield batch
                batch = []
        if batch:
            yield batch

    @staticmethod
    def _dedupe(sentences: Iterable[str]) -> List[str]:
        seen = set()
        unique: List[str] = []
        for raw in sentences:
            normalized = " ".join(raw.split())
            key = normalized.lower()
            if not normalized or key in seen:
                continue
            seen.add(key)
            unique.append(normalized)
        return unique

    def _build_pool(self) -> List[str]:
        sentences = []
        for industry, region, template in itertools.product(
            self.industries, self.regions, self.CONTACT_PHRASES
        ):
            sentences.append(template.format(industry=industry, region=region))
        for industry, template in itertools.product(self.industries, self.GENERIC_PHRASES):
            sentences.append(template.format(industry=industry, region=""))
        return self._dedupe(sentences)


__all__ = ["QueryStrategyGenerator"]
