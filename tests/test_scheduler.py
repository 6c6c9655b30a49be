import asyncio
import unittest

from scheduler import Scheduler


class TestScheduler(unittest.IsolatedAsyncioTestCase):
    async def test_runs_immediately_and_repeats(self):
        calls = []

        async def job():
            calls.append(1)

        scheduler = Scheduler(job)
        scheduler.start(period_minutes=0.001)  # 60ms
        await asyncio.sleep(0.2)
        await scheduler.stop()

        self.assertGreaterEqual(len(calls), 2)
        self.assertFalse(scheduler.running)

        count = len(calls)
        await asyncio.sleep(0.1)
        self.assertEqual(len(calls), count)

    async def test_delayed_first_run(self):
        calls = []

        async def job():
            calls.append(1)

        scheduler = Scheduler(job)
        scheduler.start(period_minutes=1, run_immediately=False)
        await asyncio.sleep(0.05)
        self.assertTrue(scheduler.running)
        await scheduler.stop()

        self.assertEqual(calls, [])

    async def test_failing_job_keeps_loop_alive(self):
        calls = []

        async def job():
            calls.append(1)
            raise RuntimeError("cycle blew up")

        scheduler = Scheduler(job)
        scheduler.start(period_minutes=0.001)
        await asyncio.sleep(0.2)
        await scheduler.stop()

        self.assertGreaterEqual(len(calls), 2)

    async def test_stop_lets_inflight_job_finish(self):
        finished = []

        async def job():
            await asyncio.sleep(0.1)
            finished.append(1)

        scheduler = Scheduler(job)
        scheduler.start(period_minutes=10)
        await asyncio.sleep(0.01)
        await scheduler.stop()

        self.assertEqual(finished, [1])

    async def test_stop_without_start(self):
        async def job():
            return None

        await Scheduler(job).stop()

    def test_rejects_non_positive_period(self):
        async def job():
            return None

        with self.assertRaises(ValueError):
            Scheduler(job).start(0)


if __name__ == "__main__":
    unittest.main()
