from __future__ import annotations

import logging
import time
from typing import Iterable, List, Optional
from urllib.parse import urlparse

import requests
from requests.exceptions import RequestException

from .errors import LeadHarvesterError, TunnelStartError
from .models import ProxyRecord, ProxyStatus, ScrapeArtifact, ScrapeJob
from .pipeline_control import PipelineControl
from .proxy_registry import ProxyRegistry
from .storage import ArtifactStorage, ArtifactStore, JobStore
from .tunnel_supervisor import TunnelSupervisor

PAGE_FILE_NAME = "page.html"


def is_blocked_domain(url: str, blocked_domains: Iterable[str]) -> bool:
    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        return False
    if not host:
        return False
    return any(host == domain or host.endswith("." + domain) for domain in blocked_domains)


class Scraper:
    """Downloads pending scrape jobs, rotating through live proxies."""

    def __init__(
        self,
        *,
        jobs: JobStore,
        artifacts: ArtifactStore,
        artifact_storage: ArtifactStorage,
        registry: ProxyRegistry,
        supervisor: TunnelSupervisor,
        control: PipelineControl,
        use_proxy: bool = True,
        batch_size: int = 100,
        max_attempts: int = 3,
        page_timeout_seconds: float = 10,
        proxy_strategy: str = "round_robin",
        user_agent: str = "",
        blocked_domains: Optional[Iterable[str]] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.jobs = jobs
        self.artifacts = artifacts
        self.artifact_storage = artifact_storage
        self.registry = registry
        self.supervisor = supervisor
        self.control = control
        self.use_proxy = use_proxy
        self.batch_size = max(1, int(batch_size))
        self.max_attempts = max(1, int(max_attempts))
        self.page_timeout_seconds = page_timeout_seconds
        self.proxy_strategy = proxy_strategy
        self.blocked_domains = [domain.lower() for domain in (blocked_domains or [])]
        self.session = session or requests.Session()
        if user_agent:
            self.session.headers["User-Agent"] = user_agent
        self.logger = logging.getLogger(__name__ + ".Scraper")

        self.processed_count = 0
        self.total_count = 0
        self.pages_scraped = 0
        self.errors_count = 0

    def _is_blocked(self, url: str) -> bool:
        return is_blocked_domain(url, self.blocked_domains)

    def _pending_batch(self) -> List[ScrapeJob]:
        return self.jobs.pending(self.max_attempts, limit=self.batch_size, skip=self._is_blocked)

    def scrape_pending_jobs(self) -> int:
        """Scrape until no eligible job is left or the run is stopped; returns pages stored."""
        pending = self.jobs.pending(self.max_attempts, skip=self._is_blocked)
        self.processed_count = 0
        self.total_count = len(pending)
        self.pages_scraped = 0
        self.errors_count = 0
        if not pending:
            self.logger.info("No scrape jobs left to process")
            return 0

        self.logger.info(
            "Starting to scrape %d pending jobs (use_proxy=%s, batch_size=%d)",
            self.total_count,
            self.use_proxy,
            self.batch_size,
        )
        while True:
            batch = self._pending_batch()
            if not batch:
                self.logger.debug("No more pending jobs found in current batch")
                break
            with self.jobs.store.deferred_flush():
                for job in batch:
                    if not self.control.check_and_wait():
                        self.logger.info("Scraping stopped by pipeline control (paused/cancelled/skipped)")
                        return self.pages_scraped
                    self.scrape_job(job)
        return self.pages_scraped

    def _acquire_proxy(self) -> Optional[ProxyRecord]:
        if not self.use_proxy:
            return None
        proxy = self.registry.select(self.proxy_strategy)
        if proxy is None:
            self.logger.warning("No active proxy available, scraping without proxy")
            return None
        if proxy.requires_tunnel:
            try:
                self.supervisor.start_proxy(proxy)
            except TunnelStartError as exc:
                self.logger.error("Failed to start tunnel for proxy %s: %s", proxy.id, exc)
                self.registry.set_status(proxy.id, ProxyStatus.FAILED)
                return None
        return proxy

    def scrape_job(self, job: ScrapeJob) -> bool:
        proxy = self._acquire_proxy()
        proxies = proxy.requests_proxies() if proxy is not None else None
        if proxy is not None:
            self.logger.debug("Using proxy %s for %s", proxy.display_name(), job.link)

        attempt = job.attempt + 1
        started = time.monotonic()
        try:
            response = self.session.get(job.link, timeout=self.page_timeout_seconds, proxies=proxies)
            response.raise_for_status()
            content = response.text
            self.artifact_storage.write(job.id, attempt, PAGE_FILE_NAME, content)
            self.artifacts.save(ScrapeArtifact(job_id=job.id, attempt=attempt, file_name=PAGE_FILE_NAME))

            job.attempt = attempt
            job.scraped = True
            job.scrape_failed = False
            self.jobs.save(job)

            if proxy is not None:
                latency_ms = int((time.monotonic() - started) * 1000)
                self.registry.record_success(proxy.id, latency_ms)

            self.processed_count += 1
            self.pages_scraped += 1
            self.logger.info(
                "[%d/%d] Successfully scraped: %s",
                self.processed_count,
                self.total_count,
                job.link,
            )
            return True
        except (RequestException, OSError, LeadHarvesterError, ValueError) as exc:
            self._handle_failure(job, proxy, exc)
            return False
        finally:
            if proxy is not None and proxy.requires_tunnel:
                self.supervisor.stop_proxy(proxy.id)

    def _handle_failure(self, job: ScrapeJob, proxy: Optional[ProxyRecord], exc: Exception) -> None:
        job.attempt += 1
        if job.attempt >= self.max_attempts:
            job.scrape_failed = True
            self.logger.error("[FAILED] Max attempts reached for job %s: %s", job.id, job.link)
        else:
            self.logger.warning(
                "[RETRY %d/%d] Failed to scrape %s: %s",
                job.attempt,
                self.max_attempts,
                job.link,
                exc,
            )
        self.jobs.save(job)
        if proxy is not None:
            self.registry.record_failure(proxy.id)
        self.processed_count += 1
        self.errors_count += 1


__all__ = ["PAGE_FILE_NAME", "Scraper", "is_blocked_domain"]
