from __future__ import annotations

import logging
import random
from typing import List, Optional

import requests
from requests.exceptions import RequestException

from .errors import ConfigurationError, RateLimitError, SearchResponseError, TransientNetworkError
from .link_parser import parse_links
from .models import ApiKey, SearchQuery
from .pipeline_control import PipelineControl
from .storage import ApiKeyStore, JobStore, QueryStore

MIN_JITTER_BASE_MS = 1000


def truncate(text: Optional[str], max_len: int) -> str:
    if text is None:
        return ""
    return text if len(text) <= max_len else text[:max_len] + "..."


class SearchFetcher:
    """Pages through search results for every under-filled query.

    Requests are spaced by ``rate_limit_ms``; 429 responses back off
    exponentially with jitter and retry the same page with the next key;
    other HTTP failures rotate keys until every key has been tried for the
    page. All waits are cancellable through ``PipelineControl.sleep``.
    """

    def __init__(
        self,
        *,
        api_keys: ApiKeyStore,
        queries: QueryStore,
        jobs: JobStore,
        control: PipelineControl,
        results_per_page: int = 10,
        max_pages: int = 3,
        rate_limit_ms: int = 1000,
        max_retries_per_page: int = 3,
        backoff_initial_ms: int = 3000,
        backoff_multiplier: float = 2.0,
        backoff_max_ms: int = 20000,
        max_query_links: int = 10,
        request_timeout: float = 15,
        session: Optional[requests.Session] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.api_keys = api_keys
        self.queries = queries
        self.jobs = jobs
        self.control = control
        self.results_per_page = max(1, int(results_per_page))
        self.max_pages = max(1, int(max_pages))
        self.rate_limit_ms = max(0, int(rate_limit_ms))
        self.max_retries_per_page = max(0, int(max_retries_per_page))
        self.backoff_initial_ms = max(0, int(backoff_initial_ms))
        self.backoff_multiplier = max(1.0, float(backoff_multiplier))
        self.backoff_max_ms = max(self.backoff_initial_ms, int(backoff_max_ms))
        self.max_query_links = max_query_links
        self.request_timeout = request_timeout
        self.session = session or requests.Session()
        self.random = rng or random.Random()
        self.logger = logging.getLogger(__name__ + ".SearchFetcher")

        self.processed_count = 0
        self.total_count = 0
        self.links_created = 0

    # delays -------------------------------------------------------------

    def backoff_delay(self, retries: int) -> int:
        """Delay in ms before retry number ``retries + 1`` of a page."""
        delay = self.backoff_initial_ms * (self.backoff_multiplier ** max(0, retries))
        return int(min(delay, self.backoff_max_ms))

    def with_jitter(self, base_delay_ms: int) -> int:
        safe_base = max(int(base_delay_ms), MIN_JITTER_BASE_MS)
        jitter = self.random.randrange(max(1, safe_base // 4))
        return safe_base + jitter

    def _sleep_ms(self, delay_ms: int) -> bool:
        return self.control.sleep(delay_ms / 1000.0)

    # requests -----------------------------------------------------------

    def build_url(self, sentence: str, page: int, key: ApiKey) -> str:
        if sentence is None:
            raise ValueError("Query sentence cannot be None")
        start_index = page * self.results_per_page + 1
        return (
            key.api_link.replace("<query>", sentence.replace(" ", "+"))
            .replace("<api_key>", key.key)
            .replace("<search_engine_id>", key.search_engine_id or "")
            .replace("<start_index>", str(start_index))
            .replace("<count>", str(self.results_per_page))
        )

    def _execute(self, url: str) -> str:
        try:
            response = self.session.get(url, timeout=self.request_timeout)
        except RequestException as exc:
            raise TransientNetworkError(f"Search request failed: {exc}") from exc
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                retry_seconds = float(retry_after) if retry_after else None
            except ValueError:
                retry_seconds = None
            raise RateLimitError("Search API rate limited the request", retry_after=retry_seconds)
        if response.status_code >= 400:
            raise TransientNetworkError(
                f"Search API returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.text or ""

    # loop ---------------------------------------------------------------

    def fetch(self) -> int:
        """Run every pending query; returns the number of new scrape jobs."""
        keys = self.api_keys.list()
        if not keys:
            raise ConfigurationError("No API keys configured")

        queries = self.queries.below_link_count(self.max_query_links)
        self.processed_count = 0
        self.total_count = len(queries)
        self.links_created = 0
        if not queries:
            self.logger.info("No pending search queries found.")
            return 0

        self.logger.info(
            "Processing %d search queries with rate limit of %dms between API calls",
            self.total_count,
            self.rate_limit_ms,
        )
        for query in queries:
            if not self.control.check_and_wait():
                self.logger.info("Search fetch stopped by pipeline control (paused/cancelled/skipped)")
                break

            if not query.sentence or not query.sentence.strip():
                self.logger.error("Query with id %s is blank", query.id)
                self.processed_count += 1
                continue

            found = self.process_query(query, keys)
            query.link_count += found
            self.queries.save(query)

            self.processed_count += 1
            self.logger.info(
                "[%d/%d] Query '%s' found %d links",
                self.processed_count,
                self.total_count,
                truncate(query.sentence, 50),
                found,
            )
        return self.links_created

    def process_query(self, query: SearchQuery, keys: List[ApiKey]) -> int:
        total_found = 0
        page = 0
        key_index = self.random.randrange(len(keys))
        page_start_index = key_index
        retries_for_page = 0
        label = truncate(query.sentence, 40)

        while page < self.max_pages:
            if self.control.should_stop():
                self.logger.info("Stopping query processing due to pipeline control")
                break

            if (page > 0 or self.processed_count > 0) and self.rate_limit_ms > 0:
                if not self._sleep_ms(self.rate_limit_ms):
                    self.logger.info("Rate limit wait interrupted or cancelled")
                    break

            key = keys[key_index]
            url = self.build_url(query.sentence, page, key)

            try:
                body = self._execute(url)
                if not body.strip():
                    self.logger.warning("Empty response for query: %s", label)
                    page += 1
                    key_index = (key_index + 1) % len(keys)
                    page_start_index = key_index
                    retries_for_page = 0
                    continue

                try:
                    links = parse_links(body)
                except SearchResponseError as exc:
                    self.logger.error("Unparsable response for query '%s' page %d: %s", label, page, exc)
                    links = []
                if not links:
                    self.logger.debug("No links parsed for query: %s (page %d)", label, page)
                    page += 1
                    key_index = (key_index + 1) % len(keys)
                    page_start_index = key_index
                    retries_for_page = 0
                    continue

                created = self.jobs.create_for_links(links, query_id=query.id)
                total_found += len(links)
                self.links_created += len(created)
                self.logger.debug(
                    "Created %d scrape jobs (%d links) from query page %d",
                    len(created),
                    len(links),
                    page,
                )
                retries_for_page = 0
                page += 1
                key_index = (key_index + 1) % len(keys)
                page_start_index = key_index

            except RateLimitError:
                retries_for_page += 1
                if retries_for_page > self.max_retries_per_page:
                    self.logger.error(
                        "Exceeded retry limit (%d attempts) for query '%s' page %d due to repeated 429 responses.",
                        self.max_retries_per_page,
                        label,
                        page,
                    )
                    break
                wait_ms = self.with_jitter(self.backoff_delay(retries_for_page - 1))
                self.logger.warning(
                    "Rate limited (429) for query '%s' page %d. Waiting %d ms before retry (attempt %d/%d).",
                    label,
                    page,
                    wait_ms,
                    retries_for_page,
                    self.max_retries_per_page,
                )
                if not self._sleep_ms(wait_ms):
                    self.logger.info("Backoff wait interrupted or cancelled")
                    break
                key_index = (key_index + 1) % len(keys)

            except TransientNetworkError as exc:
                self.logger.error("Search call failed: %s for query '%s' (page %d)", exc, label, page)
                key_index = (key_index + 1) % len(keys)
                if key_index == page_start_index:
                    self.logger.error("All keys attempted for page %d. Aborting remaining pages.", page)
                    break
                if not self._sleep_ms(self.backoff_initial_ms):
                    self.logger.info("Backoff wait interrupted or cancelled after HTTP error")
                    break

            except Exception as exc:  # pylint: disable=broad-except
                self.logger.error(
                    "Unexpected error for query '%s' (page %d): %s",
                    label,
                    page,
                    exc,
                    exc_info=True,
                )
                break
        return total_found


__all__ = ["SearchFetcher", "truncate"]
