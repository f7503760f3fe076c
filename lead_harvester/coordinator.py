from __future__ import annotations

import contextlib
import logging
import signal
import threading
from concurrent.futures import ThreadPoolExecutor
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .config import load_config, validate_api_link, validate_config
from .data_processor import DataProcessor
from .errors import InvalidStateTransition
from .models import ApiKey, ImportSummary, PipelineRun, SearchQuery
from .orchestrator import Orchestrator
from .pipeline_control import PipelineControl
from .proxy_registry import ProxyRegistry
from .proxy_tester import ProxyTester
from .query_strategy import QueryStrategyGenerator
from .scraper import Scraper
from .search_client import SearchFetcher
from .storage import ArtifactStorage, JsonStore, Stores
from .tunnel_supervisor import TunnelSupervisor

TEST_SELECTIONS = ("untested", "active", "all")


class Coordinator:
    """Builds and owns every runtime component of the harvester."""

    def __init__(
        self,
        config_overrides: Optional[Dict[str, object]] = None,
    ) -> None:
        self.config = load_config(config_overrides)
        validate_config(self.config)
        self._configure_logging()
        self.logger = logging.getLogger(__name__ + ".Coordinator")
        self.shutdown_event = threading.Event()

        storage_cfg = self.config["storage"]
        self.store = JsonStore(storage_cfg["path"])
        self.stores = Stores(self.store)
        self.artifact_storage = ArtifactStorage(storage_cfg["artifact_dir"])

        pipeline_cfg = self.config["pipeline"]
        self.control = PipelineControl(
            self.stores.pipelines,
            wait_slice=float(pipeline_cfg["wait_slice_seconds"]),
        )

        proxies_cfg = self.config["proxies"]
        self.registry = ProxyRegistry(
            self.stores.proxies,
            failure_threshold=int(proxies_cfg["failure_threshold"]),
        )

        tunnel_cfg = self.config["tunnel"]
        self.supervisor = TunnelSupervisor(
            executable=tunnel_cfg["executable"],
            config_dir=tunnel_cfg["config_dir"],
            base_port=int(tunnel_cfg["base_port"]),
            max_port_attempts=int(tunnel_cfg["max_port_attempts"]),
            startup_settle_seconds=float(tunnel_cfg["startup_settle_seconds"]),
            startup_timeout_seconds=float(tunnel_cfg["startup_timeout_seconds"]),
            probe_interval_seconds=float(tunnel_cfg["probe_interval_seconds"]),
            probe_connect_timeout=float(tunnel_cfg["probe_connect_timeout"]),
            stop_timeout_seconds=float(tunnel_cfg["stop_timeout_seconds"]),
            registry=self.registry,
        )
        self.executor = ThreadPoolExecutor(
            max_workers=max(1, int(pipeline_cfg["worker_count"])),
            thread_name_prefix="pipeline",
        )
        self.tester = ProxyTester(
            registry=self.registry,
            supervisor=self.supervisor,
            test_url=proxies_cfg["test_url"],
            timeout=float(proxies_cfg["test_timeout_seconds"]),
            slow_threshold_ms=int(proxies_cfg["slow_threshold_ms"]),
            max_workers=int(proxies_cfg["test_workers"]),
            executor=self.executor,
        )

        search_cfg = self.config["search"]
        self.fetcher = SearchFetcher(
            api_keys=self.stores.api_keys,
            queries=self.stores.queries,
            jobs=self.stores.jobs,
            control=self.control,
            results_per_page=int(search_cfg["results_per_page"]),
            max_pages=int(search_cfg["max_pages"]),
            rate_limit_ms=int(search_cfg["rate_limit_ms"]),
            max_retries_per_page=int(search_cfg["max_retries_per_page"]),
            backoff_initial_ms=int(search_cfg["backoff_initial_ms"]),
            backoff_multiplier=float(search_cfg["backoff_multiplier"]),
            backoff_max_ms=int(search_cfg["backoff_max_ms"]),
            max_query_links=int(search_cfg["max_query_links"]),
            request_timeout=float(search_cfg["request_timeout"]),
        )

        scraper_cfg = self.config["scraper"]
        self.scraper = Scraper(
            jobs=self.stores.jobs,
            artifacts=self.stores.artifacts,
            artifact_storage=self.artifact_storage,
            registry=self.registry,
            supervisor=self.supervisor,
            control=self.control,
            use_proxy=bool(scraper_cfg["use_proxy"]),
            batch_size=int(scraper_cfg["batch_size"]),
            max_attempts=int(scraper_cfg["max_attempts"]),
            page_timeout_seconds=float(scraper_cfg["page_timeout_seconds"]),
            proxy_strategy=scraper_cfg["proxy_strategy"],
            user_agent=scraper_cfg.get("user_agent", ""),
            blocked_domains=scraper_cfg.get("blocked_domains"),
        )
        self.processor = DataProcessor(
            artifacts=self.stores.artifacts,
            artifact_storage=self.artifact_storage,
            contacts=self.stores.contacts,
            control=self.control,
        )
        self.orchestrator = Orchestrator(
            control=self.control,
            pipelines=self.stores.pipelines,
            fetcher=self.fetcher,
            scraper=self.scraper,
            processor=self.processor,
            executor=self.executor,
        )
        if pipeline_cfg.get("recover_orphaned_runs", True):
            self.orchestrator.recover_orphaned_runs()

    def _configure_logging(self) -> None:
        logging_cfg = self.config.get("logging", {})
        level_name = str(logging_cfg.get("level", "INFO")).upper()
        level = getattr(logging, level_name, logging.INFO)
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

        root_logger = logging.getLogger()
        root_logger.setLevel(level)

        if not any(
            isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler)
            for handler in root_logger.handlers
        ):
            stream_handler = logging.StreamHandler()
            stream_handler.setLevel(level)
            stream_handler.setFormatter(formatter)
            root_logger.addHandler(stream_handler)

        directory = logging_cfg.get("directory")
        if not directory:
            return
        log_dir = Path(directory)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / logging_cfg.get("filename", "app.log")
        has_file_handler = any(
            isinstance(handler, RotatingFileHandler)
            and Path(getattr(handler, "baseFilename", "")) == log_file.resolve()
            for handler in root_logger.handlers
        )
        if not has_file_handler:
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=int(logging_cfg.get("max_bytes", 2 * 1024 * 1024)),
                backupCount=int(logging_cfg.get("backup_count", 5)),
                encoding="utf-8",
            )
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

    @contextlib.contextmanager
    def _signal_handler(self):
        handlers = []
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        def _handler(signum, _frame) -> None:
            sig_name = signal.Signals(signum).name
            self.logger.warning("Caught termination signal %s, cancelling active pipeline", sig_name)
            self.shutdown_event.set()
            self.cancel_active()

        for sig in (signal.SIGINT, signal.SIGTERM):
            previous = signal.getsignal(sig)
            handlers.append((sig, previous))
            signal.signal(sig, _handler)
        try:
            yield
        finally:
            for sig, previous in handlers:
                signal.signal(sig, previous)

    # pipeline -----------------------------------------------------------

    def run(self, stages: Optional[Sequence[str]] = None) -> PipelineRun:
        """Run the pipeline in the worker pool and wait for it to finish."""
        with self._signal_handler():
            future = self.orchestrator.submit(stages)
            return future.result()

    def pause(self, run_id: str) -> None:
        self.control.pause(run_id)

    def resume(self, run_id: str) -> None:
        self.control.resume(run_id)

    def skip_current_stage(self, run_id: str) -> None:
        self.control.skip_current_stage(run_id)

    def cancel(self, run_id: str) -> None:
        self.control.cancel(run_id)

    def cancel_active(self) -> Optional[str]:
        run_id = self.control.active_run_id()
        if run_id is None:
            return None
        try:
            self.control.cancel(run_id)
        except InvalidStateTransition as exc:
            self.logger.warning("Unable to cancel pipeline %s: %s", run_id, exc)
        return run_id

    # proxies ------------------------------------------------------------

    def import_proxies(self, path) -> ImportSummary:
        summary = self.registry.import_file(path)
        self.logger.info(
            "Imported %d proxies from %s (%d duplicates, %d invalid)",
            summary.created_count,
            path,
            summary.duplicates,
            summary.invalid,
        )
        return summary

    def test_proxies(self, which: str = "untested") -> Dict[str, int]:
        if which not in TEST_SELECTIONS:
            raise ValueError(f"Unknown proxy selection '{which}', expected one of {', '.join(TEST_SELECTIONS)}")
        with self._signal_handler():
            if which == "all":
                return self.tester.test_all(self.shutdown_event)
            if which == "active":
                return self.tester.test_active(self.shutdown_event)
            return self.tester.test_untested(self.shutdown_event)

    # backlog ------------------------------------------------------------

    def seed_queries(
        self,
        sentences: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
        seed: Optional[int] = None,
    ) -> List[SearchQuery]:
        """Add search sentences to the backlog; generated ones when none are given."""
        if sentences is None:
            sentences = QueryStrategyGenerator(seed=seed).generate(limit)
        created = self.stores.queries.add_sentences(sentences)
        self.logger.info("Added %d new search queries", len(created))
        return created

    def add_api_key(self, key: str, search_engine_id: str = "", api_link: Optional[str] = None) -> ApiKey:
        template = api_link or self.config["search"]["api_link_template"]
        validate_api_link(template)
        record = ApiKey(key=key, api_link=template, search_engine_id=search_engine_id)
        self.stores.api_keys.save(record)
        self.logger.info("Registered API key %s", record.id)
        return record

    def status(self) -> Dict[str, Any]:
        latest = self.stores.pipelines.latest()
        return {
            "active_run": self.control.active_run_id(),
            "latest_run": latest.to_dict() if latest is not None else None,
            "latest_duration": latest.duration_formatted if latest is not None else "N/A",
            "proxies": self.registry.stats(),
            "running_tunnels": self.supervisor.running_proxies(),
            "queries": self.stores.queries.count(),
            "api_keys": self.stores.api_keys.count(),
            "jobs": self.stores.jobs.count(),
            "artifacts": self.stores.artifacts.count(),
            "contacts": self.stores.contacts.count(),
            "emails": len(self.stores.contacts.all_emails()),
        }

    def shutdown(self) -> None:
        self.shutdown_event.set()
        self.cancel_active()
        self.executor.shutdown(wait=True)
        self.supervisor.stop_all()
        self.logger.info("Coordinator shut down")


__all__ = ["Coordinator", "TEST_SELECTIONS"]
