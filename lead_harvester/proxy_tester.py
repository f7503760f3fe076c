from __future__ import annotations

import logging
import threading
import time
from collections import Counter
import contextlib
from concurrent.futures import Executor, Future, ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, Optional

import requests
from requests.exceptions import RequestException

from .errors import LeadHarvesterError, TunnelStartError
from .models import ProxyRecord, ProxyStatus, utcnow
from .proxy_registry import ProxyRegistry
from .tunnel_supervisor import TunnelSupervisor

ORIGIN_MARKER = "origin"


class ProxyTester:
    """Health checks a proxy by fetching an IP echo endpoint through it."""

    def __init__(
        self,
        *,
        registry: ProxyRegistry,
        supervisor: TunnelSupervisor,
        test_url: str = "https://httpbin.org/ip",
        timeout: float = 15.0,
        slow_threshold_ms: int = 5000,
        max_workers: int = 8,
        session: Optional[requests.Session] = None,
        executor: Optional[Executor] = None,
    ) -> None:
        self.registry = registry
        self.supervisor = supervisor
        self.test_url = test_url
        self.timeout = timeout
        self.slow_threshold_ms = slow_threshold_ms
        self.max_workers = max(1, int(max_workers))
        self.session = session or requests.Session()
        self.executor = executor
        self.logger = logging.getLogger(__name__ + ".ProxyTester")

    def _mark_failed(self, proxy_id: str) -> ProxyRecord:
        def _mutate(record: ProxyRecord) -> None:
            record.status = ProxyStatus.FAILED
            record.record_failure(self.registry.failure_threshold)
            record.last_tested_at = utcnow()

        return self.registry.update(proxy_id, _mutate)

    def _mark_working(self, proxy_id: str, latency_ms: int) -> ProxyRecord:
        status = ProxyStatus.SLOW if latency_ms > self.slow_threshold_ms else ProxyStatus.ACTIVE

        def _mutate(record: ProxyRecord) -> None:
            record.status = status
            record.record_success(latency_ms)
            record.last_tested_at = utcnow()

        return self.registry.update(proxy_id, _mutate)

    def test(self, proxy: ProxyRecord) -> ProxyRecord:
        self.logger.debug("Testing proxy %s", proxy.display_name())
        if proxy.requires_tunnel:
            try:
                self.supervisor.start_proxy(proxy)
            except TunnelStartError as exc:
                self.logger.error("Failed to start tunnel for proxy %s: %s", proxy.id, exc)
                return self._mark_failed(proxy.id)

        try:
            started = time.monotonic()
            response = self.session.get(
                self.test_url,
                timeout=self.timeout,
                proxies=proxy.requests_proxies(),
            )
            latency_ms = int((time.monotonic() - started) * 1000)
            if response.ok and ORIGIN_MARKER in (response.text or ""):
                updated = self._mark_working(proxy.id, latency_ms)
                self.logger.info(
                    "Proxy %s is %s (%d ms)",
                    proxy.display_name(),
                    updated.status.value,
                    latency_ms,
                )
                return updated
            self.logger.warning(
                "Proxy %s returned unexpected response (HTTP %s)",
                proxy.display_name(),
                response.status_code,
            )
            return self._mark_failed(proxy.id)
        except (RequestException, OSError, LeadHarvesterError, ValueError) as exc:
            self.logger.warning("Proxy %s failed test: %s", proxy.display_name(), exc)
            return self._mark_failed(proxy.id)
        finally:
            if proxy.requires_tunnel:
                self.supervisor.stop_proxy(proxy.id)

    def test_many(
        self,
        proxies: Iterable[ProxyRecord],
        shutdown_event: Optional[threading.Event] = None,
    ) -> Dict[str, int]:
        """Test ``proxies`` concurrently; returns counts per resulting status."""
        candidates = list(proxies)
        counts: Counter = Counter()
        if not candidates:
            return dict(counts)

        self.logger.info("Testing %d proxies", len(candidates))
        with contextlib.ExitStack() as stack:
            executor = self.executor
            if executor is None:
                executor = stack.enter_context(ThreadPoolExecutor(max_workers=self.max_workers))
            futures: Dict[Future, ProxyRecord] = {}
            for proxy in candidates:
                if shutdown_event is not None and shutdown_event.is_set():
                    self.logger.info("Shutdown requested; stopped scheduling remaining proxy tests")
                    break
                futures[executor.submit(self.test, proxy)] = proxy
            for future in as_completed(futures):
                proxy = futures[future]
                try:
                    result = future.result()
                except Exception as exc:  # pylint: disable=broad-except
                    self.logger.error("Proxy test task failed for %s: %s", proxy.display_name(), exc)
                    counts["errors"] += 1
                    continue
                counts[result.status.value] += 1

        self.logger.info(
            "Finished testing %d proxies (%s)",
            sum(counts.values()),
            ", ".join(f"{key}={value}" for key, value in sorted(counts.items())),
        )
        return dict(counts)

    def test_untested(self, shutdown_event: Optional[threading.Event] = None) -> Dict[str, int]:
        return self.test_many(self.registry.untested(), shutdown_event)

    def test_active(self, shutdown_event: Optional[threading.Event] = None) -> Dict[str, int]:
        active = [proxy for proxy in self.registry.list() if proxy.status == ProxyStatus.ACTIVE]
        return self.test_many(active, shutdown_event)

    def test_all(self, shutdown_event: Optional[threading.Event] = None) -> Dict[str, int]:
        return self.test_many(self.registry.list(), shutdown_event)


__all__ = ["ProxyTester", "ORIGIN_MARKER"]
