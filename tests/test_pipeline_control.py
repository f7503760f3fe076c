from __future__ import annotations

import threading
import time
import unittest

from lead_harvester.errors import InvalidStateTransition, RecordNotFoundError
from lead_harvester.models import PipelineRun, PipelineState, utcnow
from lead_harvester.pipeline_control import PipelineControl
from lead_harvester.storage import JsonStore, PipelineStore


class PipelineControlTest(unittest.TestCase):
    def setUp(self) -> None:
        self.pipelines = PipelineStore(JsonStore())
        self.control = PipelineControl(self.pipelines, wait_slice=0.05)
        self.run = PipelineRun(state=PipelineState.RUNNING, start_time=utcnow())
        self.pipelines.save(self.run)
        self.control.register(self.run.id)

    def test_pause_then_resume(self) -> None:
        self.control.pause(self.run.id)
        self.assertTrue(self.control.is_paused(self.run.id))
        self.assertEqual(self.pipelines.require(self.run.id).state, PipelineState.PAUSED)

        self.control.resume(self.run.id)
        self.assertEqual(self.control.get_state(self.run.id), PipelineState.RUNNING)
        self.assertEqual(self.pipelines.require(self.run.id).state, PipelineState.RUNNING)
        self.assertTrue(self.control.check_and_wait())

    def test_illegal_transitions(self) -> None:
        with self.assertRaises(InvalidStateTransition):
            self.control.resume(self.run.id)
        self.control.pause(self.run.id)
        with self.assertRaises(InvalidStateTransition):
            self.control.pause(self.run.id)
        with self.assertRaises(RecordNotFoundError):
            self.control.pause("missing")

    def test_cancel_rejected_for_finished_run(self) -> None:
        finished = PipelineRun(state=PipelineState.COMPLETED, start_time=utcnow(), end_time=utcnow())
        self.pipelines.save(finished)

        with self.assertRaises(InvalidStateTransition) as ctx:
            self.control.cancel(finished.id)
        self.assertIn("completed", str(ctx.exception))

    def test_check_and_wait_blocks_until_resumed(self) -> None:
        self.control.pause(self.run.id)
        results = []
        worker = threading.Thread(target=lambda: results.append(self.control.check_and_wait()))
        worker.start()
        time.sleep(0.2)
        self.assertTrue(worker.is_alive())

        self.control.resume(self.run.id)
        worker.join(timeout=2)

        self.assertFalse(worker.is_alive())
        self.assertEqual(results, [True])

    def test_cancel_while_paused_releases_waiters_quickly(self) -> None:
        self.control.pause(self.run.id)
        results = []
        worker = threading.Thread(target=lambda: results.append(self.control.wait_while_paused(self.run.id)))
        worker.start()
        time.sleep(0.1)

        started = time.monotonic()
        self.control.cancel(self.run.id)
        worker.join(timeout=2)
        elapsed = time.monotonic() - started

        self.assertEqual(results, [False])
        self.assertLess(elapsed, 0.5)
        durable = self.pipelines.require(self.run.id)
        self.assertEqual(durable.state, PipelineState.CANCELLED)
        self.assertIsNotNone(durable.end_time)

    def test_skip_consumed_once_across_threads(self) -> None:
        self.control.skip_current_stage(self.run.id)
        self.assertTrue(self.control.should_stop())
        self.assertFalse(self.control.check_and_wait())

        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def _consume() -> None:
            barrier.wait()
            value = self.control.consume_skip(self.run.id)
            with lock:
                results.append(value)

        workers = [threading.Thread(target=_consume) for _ in range(8)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(timeout=2)

        self.assertEqual(results.count(True), 1)
        self.assertEqual(self.control.get_state(self.run.id), PipelineState.RUNNING)

    def test_skip_requires_registered_run(self) -> None:
        other = PipelineRun(state=PipelineState.RUNNING, start_time=utcnow())
        self.pipelines.save(other)

        with self.assertRaises(InvalidStateTransition):
            self.control.skip_current_stage(other.id)

    def test_unowned_durable_run_does_not_become_current(self) -> None:
        self.control.unregister(self.run.id)
        stale = PipelineRun(state=PipelineState.RUNNING, start_time=utcnow())
        self.pipelines.save(stale)

        with self.assertRaises(InvalidStateTransition):
            self.control.pause(stale.id)
        paused = PipelineRun(state=PipelineState.PAUSED, start_time=utcnow())
        self.pipelines.save(paused)
        with self.assertRaises(InvalidStateTransition):
            self.control.resume(paused.id)

        self.control.cancel(stale.id)

        self.assertEqual(self.pipelines.require(stale.id).state, PipelineState.CANCELLED)
        self.assertIsNone(self.control.current_run_id())

    def test_sleep_interrupted_by_cancel(self) -> None:
        timer = threading.Timer(0.1, self.control.cancel, args=(self.run.id,))
        timer.start()
        started = time.monotonic()

        completed = self.control.sleep(5.0)

        self.assertFalse(completed)
        self.assertLess(time.monotonic() - started, 1.0)
        timer.join()

    def test_unregister_clears_current_run(self) -> None:
        self.control.cancel(self.run.id)
        self.assertEqual(self.control.current_run_id(), self.run.id)
        self.assertIsNone(self.control.active_run_id())

        self.control.unregister(self.run.id)

        self.assertIsNone(self.control.current_run_id())
        self.assertTrue(self.control.check_and_wait())
        self.assertTrue(self.control.sleep(0))

    def test_pause_resume_cancel_scenario(self) -> None:
        self.control.pause(self.run.id)
        self.control.resume(self.run.id)
        self.control.pause(self.run.id)
        self.control.cancel(self.run.id)

        self.assertEqual(self.control.get_state(self.run.id), PipelineState.CANCELLED)
        self.assertFalse(self.control.check_and_wait())
        with self.assertRaises(InvalidStateTransition):
            self.control.resume(self.run.id)


if __name__ == "__main__":
    unittest.main()
