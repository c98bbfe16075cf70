import os
import threading
import unittest
from unittest.mock import patch

from clipai.workers.dispatch import CeleryDispatcher, ThreadPoolDispatcher, get_dispatcher


class ThreadPoolDispatcherTests(unittest.TestCase):
    def setUp(self):
        self.dispatcher = ThreadPoolDispatcher(max_workers=2)
        self.addCleanup(self.dispatcher.shutdown)

    def test_runs_job_and_forgets_it(self):
        seen = []

        self.dispatcher.dispatch(11, seen.append)

        self.assertTrue(self.dispatcher.wait(11, timeout=5))
        self.assertTrue(self.dispatcher.wait_all(timeout=5))
        self.assertEqual(seen, [11])
        self.assertEqual(self.dispatcher.active_jobs(), [])

    def test_wait_times_out_while_job_is_running(self):
        release = threading.Event()
        self.addCleanup(release.set)

        self.dispatcher.dispatch(3, lambda job_id: release.wait(5))

        self.assertEqual(self.dispatcher.active_jobs(), [3])
        self.assertFalse(self.dispatcher.wait(3, timeout=0.05))
        release.set()
        self.assertTrue(self.dispatcher.wait(3, timeout=5))

    def test_crashing_runner_is_contained(self):
        def crash(job_id):
            raise RuntimeError("boom")

        future = self.dispatcher.dispatch(4, crash)

        self.assertIsNone(future.result(timeout=5))

    def test_unknown_job_counts_as_finished(self):
        self.assertTrue(self.dispatcher.wait(999, timeout=0))


class CeleryDispatcherTests(unittest.TestCase):
    def test_dispatch_enqueues_job_id(self):
        from clipai.workers import tasks

        with patch.object(tasks.process_job, "delay") as delay:
            CeleryDispatcher().dispatch(21, runner=lambda job_id: None)

        delay.assert_called_once_with(21)

    def test_task_runs_orchestrator(self):
        from clipai.workers import tasks

        with patch("clipai.workers.pipeline.build_orchestrator") as build:
            tasks.process_job(8)

        build.return_value.run_job.assert_called_once_with(8)


class GetDispatcherTests(unittest.TestCase):
    def test_backend_selection(self):
        with patch.dict(os.environ, {"JOB_DISPATCH_BACKEND": "celery"}):
            self.assertIsInstance(get_dispatcher(), CeleryDispatcher)
        with patch.dict(os.environ, {"JOB_DISPATCH_BACKEND": "thread"}):
            dispatcher = get_dispatcher()
            self.addCleanup(dispatcher.shutdown)
            self.assertIsInstance(dispatcher, ThreadPoolDispatcher)


if __name__ == "__main__":
    unittest.main()
