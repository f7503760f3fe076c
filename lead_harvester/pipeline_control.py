from __future__ import annotations

import logging
import threading
import time
from typing import Dict, Optional

from .errors import InvalidStateTransition, RecordNotFoundError
from .models import PipelineRun, PipelineState, utcnow
from .storage import PipelineStore

STOP_STATES = (PipelineState.CANCELLED, PipelineState.SKIPPING, PipelineState.PAUSED)


class PipelineControl:
    """Live control states of pipeline runs.

    The in-memory map is authoritative while a run executes; the durable
    record in ``store`` is updated on pause, resume and cancel. Every
    mutation wakes blocked waiters through a condition variable, and waits
    still happen in slices of at most ``wait_slice`` seconds.
    """

    def __init__(self, store: Optional[PipelineStore] = None, *, wait_slice: float = 0.25) -> None:
        self.store = store
        self.wait_slice = min(max(wait_slice, 0.01), 0.25)
        self._states: Dict[str, PipelineState] = {}
        self._condition = threading.Condition(threading.RLock())
        self.logger = logging.getLogger(__name__ + ".PipelineControl")

    # registration -------------------------------------------------------

    def register(self, run_id: str) -> None:
        with self._condition:
            self._states[run_id] = PipelineState.RUNNING
            self._condition.notify_all()
        self.logger.info("Pipeline %s registered as active", run_id)

    def unregister(self, run_id: str) -> None:
        with self._condition:
            self._states.pop(run_id, None)
            self._condition.notify_all()
        self.logger.info("Pipeline %s unregistered", run_id)

    # queries ------------------------------------------------------------

    def get_state(self, run_id: str) -> PipelineState:
        with self._condition:
            return self._states.get(run_id, PipelineState.PENDING)

    def should_continue(self, run_id: str) -> bool:
        return self.get_state(run_id) in (PipelineState.RUNNING, PipelineState.SKIPPING)

    def is_paused(self, run_id: str) -> bool:
        return self.get_state(run_id) == PipelineState.PAUSED

    def active_run_id(self) -> Optional[str]:
        with self._condition:
            for run_id, state in self._states.items():
                if state.is_active:
                    return run_id
        return None

    def has_active_run(self) -> bool:
        return self.active_run_id() is not None

    def _current_locked(self) -> Optional[str]:
        # a cancelled run stays current until unregistered so loops observe it
        for run_id, state in self._states.items():
            if state.is_active or state == PipelineState.CANCELLED:
                return run_id
        return None

    def current_run_id(self) -> Optional[str]:
        with self._condition:
            return self._current_locked()

    def should_stop(self) -> bool:
        with self._condition:
            run_id = self._current_locked()
            if run_id is None:
                return False
            return self._states[run_id] in STOP_STATES

    # blocking -----------------------------------------------------------

    def consume_skip(self, run_id: str) -> bool:
        """Acknowledge a pending skip; True exactly once per request."""
        with self._condition:
            if self._states.get(run_id) != PipelineState.SKIPPING:
                return False
            self._states[run_id] = PipelineState.RUNNING
            self._condition.notify_all()
        self.logger.info("Pipeline %s acknowledged skip request", run_id)
        return True

    def wait_while_paused(self, run_id: str) -> bool:
        with self._condition:
            while self._states.get(run_id) == PipelineState.PAUSED:
                self._condition.wait(self.wait_slice)
            state = self._states.get(run_id, PipelineState.PENDING)
        if state == PipelineState.CANCELLED:
            return False
        return state in (PipelineState.RUNNING, PipelineState.SKIPPING)

    def check_and_wait(self) -> bool:
        """Cooperative checkpoint for long-running loops.

        Returns False when the caller should abandon its current operation
        (cancelled or skipping), blocks while paused.
        """
        with self._condition:
            run_id = self._current_locked()
            if run_id is None:
                return True
            state = self._states[run_id]
        if state in (PipelineState.CANCELLED, PipelineState.SKIPPING):
            self.logger.info("Pipeline %s is %s, stopping current operation", run_id, state.value)
            return False
        if state == PipelineState.PAUSED:
            self.logger.info("Pipeline %s is paused, waiting...", run_id)
            return self.wait_while_paused(run_id)
        return True

    def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; False as soon as ``should_stop`` turns true."""
        deadline = time.monotonic() + max(0.0, seconds)
        with self._condition:
            while True:
                if self._stop_requested_locked():
                    return False
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return True
                self._condition.wait(min(self.wait_slice, remaining))

    def _stop_requested_locked(self) -> bool:
        run_id = self._current_locked()
        return run_id is not None and self._states[run_id] in STOP_STATES

    # operator transitions -----------------------------------------------

    def _durable(self, run_id: str) -> Optional[PipelineRun]:
        if self.store is None:
            return None
        return self.store.get(run_id)

    def _state_for_transition(self, run_id: str, durable: Optional[PipelineRun]) -> PipelineState:
        live = self._states.get(run_id)
        if live is not None:
            return live
        if durable is not None:
            return durable.state
        raise RecordNotFoundError("Pipeline", run_id)

    def _persist(self, durable: Optional[PipelineRun], state: PipelineState, *, stamp_end: bool = False) -> None:
        if durable is None or self.store is None:
            return
        durable.state = state
        if stamp_end:
            durable.end_time = utcnow()
        self.store.save(durable)

    def pause(self, run_id: str) -> Optional[PipelineRun]:
        with self._condition:
            durable = self._durable(run_id)
            state = self._state_for_transition(run_id, durable)
            if state != PipelineState.RUNNING or run_id not in self._states:
                raise InvalidStateTransition(run_id, state, "pause")
            self._states[run_id] = PipelineState.PAUSED
            self._persist(durable, PipelineState.PAUSED)
            self._condition.notify_all()
        self.logger.info("Pipeline %s paused at stage %s", run_id, getattr(durable, "stage", None))
        return durable

    def resume(self, run_id: str) -> Optional[PipelineRun]:
        with self._condition:
            durable = self._durable(run_id)
            state = self._state_for_transition(run_id, durable)
            if state != PipelineState.PAUSED or run_id not in self._states:
                raise InvalidStateTransition(run_id, state, "resume")
            self._states[run_id] = PipelineState.RUNNING
            self._persist(durable, PipelineState.RUNNING)
            self._condition.notify_all()
        self.logger.info("Pipeline %s resumed at stage %s", run_id, getattr(durable, "stage", None))
        return durable

    def skip_current_stage(self, run_id: str) -> Optional[PipelineRun]:
        with self._condition:
            durable = self._durable(run_id)
            state = self._state_for_transition(run_id, durable)
            if not state.is_active or run_id not in self._states:
                raise InvalidStateTransition(run_id, state, "skip stage of")
            self._states[run_id] = PipelineState.SKIPPING
            self._condition.notify_all()
        self.logger.info("Pipeline %s will skip current stage %s", run_id, getattr(durable, "stage", None))
        return durable

    def cancel(self, run_id: str) -> Optional[PipelineRun]:
        with self._condition:
            durable = self._durable(run_id)
            state = self._state_for_transition(run_id, durable)
            if state.is_finished:
                raise InvalidStateTransition(run_id, state, "cancel")
            if run_id in self._states:
                self._states[run_id] = PipelineState.CANCELLED
            self._persist(durable, PipelineState.CANCELLED, stamp_end=True)
            self._condition.notify_all()
        self.logger.info("Pipeline %s cancelled at stage %s", run_id, getattr(durable, "stage", None))
        return durable


__all__ = ["PipelineControl", "STOP_STATES"]
