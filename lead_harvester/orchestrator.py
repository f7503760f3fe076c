from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .errors import InvalidStateTransition
from .models import PipelineRun, PipelineStage, PipelineState, utcnow
from .pipeline_control import PipelineControl
from .storage import PipelineStore

STAGE_ORDER = ("fetch", "scrape", "parse")

STAGE_ALIASES = {
    "fetch": "fetch",
    "api": "fetch",
    "api_caller": "fetch",
    "search": "fetch",
    "scrape": "scrape",
    "scraper": "scrape",
    "parse": "parse",
    "parser": "parse",
}


@dataclass(frozen=True)
class StageSpec:
    name: str
    started: PipelineStage
    complete: PipelineStage
    runner: Callable[[], object]
    collect: Callable[[PipelineRun], None]


def normalize_stages(stages: Optional[Iterable[str]]) -> List[str]:
    """Map user supplied stage names onto ``STAGE_ORDER``, keeping that order."""
    if stages is None:
        return list(STAGE_ORDER)
    selected = set()
    for raw in stages:
        key = str(raw).strip().lower()
        if not key:
            continue
        if key not in STAGE_ALIASES:
            raise ValueError(f"Unknown pipeline stage '{raw}', expected one of {', '.join(STAGE_ORDER)}")
        selected.add(STAGE_ALIASES[key])
    return [name for name in STAGE_ORDER if name in selected]


class Orchestrator:
    """Sequences fetch, scrape and parse for one run at a time."""

    def __init__(
        self,
        *,
        control: PipelineControl,
        pipelines: PipelineStore,
        fetcher,
        scraper,
        processor,
        executor: Executor,
    ) -> None:
        self.control = control
        self.pipelines = pipelines
        self.fetcher = fetcher
        self.scraper = scraper
        self.processor = processor
        self.executor = executor
        self._submit_lock = threading.Lock()
        self.logger = logging.getLogger(__name__ + ".Orchestrator")
        self._stages: Dict[str, StageSpec] = {
            "fetch": StageSpec(
                "fetch",
                PipelineStage.API_CALLER_STARTED,
                PipelineStage.API_CALLER_COMPLETE,
                self.fetcher.fetch,
                self._collect_fetch,
            ),
            "scrape": StageSpec(
                "scrape",
                PipelineStage.SCRAPER_STARTED,
                PipelineStage.SCRAPER_COMPLETE,
                self.scraper.scrape_pending_jobs,
                self._collect_scrape,
            ),
            "parse": StageSpec(
                "parse",
                PipelineStage.PARSER_STARTED,
                PipelineStage.PARSER_COMPLETE,
                self.processor.process_unparsed,
                self._collect_parse,
            ),
        }

    # progress -----------------------------------------------------------

    def _collect_fetch(self, run: PipelineRun) -> None:
        run.items_processed = self.fetcher.processed_count
        run.items_total = self.fetcher.total_count
        run.increment_links_created(self.fetcher.links_created)

    def _collect_scrape(self, run: PipelineRun) -> None:
        run.items_processed = self.scraper.processed_count
        run.items_total = self.scraper.total_count
        run.pages_scraped += self.scraper.pages_scraped
        run.errors_count += self.scraper.errors_count

    def _collect_parse(self, run: PipelineRun) -> None:
        run.items_processed = self.processor.processed_count
        run.items_total = self.processor.total_count
        run.increment_contacts_found(self.processor.contacts_found)
        run.errors_count += self.processor.errors_count

    # persistence --------------------------------------------------------

    def _save(self, run: PipelineRun) -> None:
        live = self.control.get_state(run.id)
        if live != PipelineState.PENDING:
            run.state = live
        self.pipelines.save(run)

    def _finish(self, run: PipelineRun, state: PipelineState) -> PipelineRun:
        run.state = state
        run.end_time = utcnow()
        self.pipelines.save(run)
        self.logger.info(
            "Pipeline %s finished as %s after %s",
            run.id,
            state.value,
            run.duration_formatted,
        )
        return run

    # execution ----------------------------------------------------------

    def submit(self, stages: Optional[Sequence[str]] = None) -> Future:
        """Start a run on the worker pool; only one run may be active."""
        selected = normalize_stages(stages)
        with self._submit_lock:
            # a cancelled run still unwinding counts as current
            active_id = self.control.current_run_id()
            if active_id is not None:
                raise InvalidStateTransition(active_id, self.control.get_state(active_id), "start a run alongside")
            run = PipelineRun(stage=PipelineStage.STARTED, state=PipelineState.PENDING, start_time=utcnow())
            self.pipelines.save(run)
            self.control.register(run.id)
            run.state = PipelineState.RUNNING
            self.pipelines.save(run)
        self.logger.info("Pipeline %s started with stages %s", run.id, ", ".join(selected) or "(none)")
        try:
            return self.executor.submit(self.execute_stages, run, selected)
        except RuntimeError:
            self.control.unregister(run.id)
            self._finish(run, PipelineState.FAILED)
            raise

    def run(self, stages: Optional[Sequence[str]] = None) -> PipelineRun:
        return self.submit(stages).result()

    def _skip_stage(self, run: PipelineRun, stage: StageSpec) -> None:
        self.logger.info("Pipeline %s skipping stage %s", run.id, stage.name)
        run.stage = stage.complete
        self._save(run)

    def execute_stages(self, run: PipelineRun, stages: Sequence[str]) -> PipelineRun:
        try:
            for name in stages:
                stage = self._stages[name]

                if self.control.consume_skip(run.id):
                    self._skip_stage(run, stage)
                    continue

                if not self.control.wait_while_paused(run.id):
                    self.logger.info("Pipeline %s cancelled while waiting before stage %s", run.id, name)
                    return self._finish(run, PipelineState.CANCELLED)

                if self.control.should_stop():
                    if self.control.consume_skip(run.id):
                        self._skip_stage(run, stage)
                        continue
                    if self.control.get_state(run.id) == PipelineState.CANCELLED:
                        return self._finish(run, PipelineState.CANCELLED)
                    if not self.control.wait_while_paused(run.id):
                        return self._finish(run, PipelineState.CANCELLED)

                run.stage = stage.started
                run.current_step_name = name
                self._save(run)
                self.logger.info("Pipeline %s executing stage %s", run.id, name)

                stage.runner()
                stage.collect(run)

                if self.control.get_state(run.id) == PipelineState.CANCELLED:
                    self.logger.info("Pipeline %s cancelled during stage %s", run.id, name)
                    return self._finish(run, PipelineState.CANCELLED)
                if self.control.consume_skip(run.id):
                    self.logger.info("Pipeline %s stage %s cut short by skip request", run.id, name)

                run.stage = stage.complete
                self._save(run)

            return self._finish(run, PipelineState.COMPLETED)
        except Exception as exc:  # pylint: disable=broad-except
            self.logger.error("Pipeline %s failed: %s", run.id, exc, exc_info=True)
            return self._finish(run, PipelineState.FAILED)
        finally:
            self.control.unregister(run.id)

    def recover_orphaned_runs(self) -> List[PipelineRun]:
        """Mark durable runs left active by a previous process as failed."""
        recovered: List[PipelineRun] = []
        for run in self.pipelines.active_runs():
            if self.control.get_state(run.id) != PipelineState.PENDING:
                continue
            run.state = PipelineState.FAILED
            run.end_time = run.end_time or utcnow()
            self.pipelines.save(run)
            recovered.append(run)
            self.logger.warning(
                "Pipeline %s was left %s by a previous process; marked failed",
                run.id,
                run.stage.value,
            )
        return recovered


__all__ = ["Orchestrator", "STAGE_ORDER", "StageSpec", "normalize_stages"]
