import asyncio
import os
import tempfile
import unittest
from datetime import timedelta

from analyzer import RiskAssessor
from chains import CHAIN_PROFILES
from errors import RetriesExhaustedError
from filters import FilterSettings, TokenFilter
from ingestion import IngestionCycle
from models import FilterConfiguration
from notifier import AlertCriteria
from store import Database, TokenRepository

from tests.factories import NOW, make_pair, make_risk

ALERT_WORTHY = {"volume": {"h24": 50000}, "liquidity": {"usd": 40000, "base": 1000, "quote": 200}}


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class FakeFetcher:
    def __init__(self, pairs_by_chain):
        self.pairs_by_chain = pairs_by_chain
        self.calls = []

    async def fetch(self, chain=None):
        self.calls.append(chain)
        value = self.pairs_by_chain.get(chain, [])
        if isinstance(value, Exception):
            raise value
        return list(value)


class FakeAssessor:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.calls = []

    async def assess(self, token_address, chain_id="solana"):
        self.calls.append(token_address)
        if token_address in self.fail_for:
            raise RuntimeError("unexpected")
        return make_risk(token_address)


class BrokenRugCheckClient:
    async def fetch_report(self, token_address):
        raise RetriesExhaustedError(3, ConnectionError("down"))


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.payloads = []

    async def notify(self, payload):
        self.payloads.append(payload)
        if self.fail:
            raise ConnectionError("webhook down")
        return True


class IngestionTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.database = Database(f"sqlite+aiosqlite:///{os.path.join(self._tmp.name, 'tokens.db')}")
        await self.database.create_schema()
        self.repository = TokenRepository(self.database)
        self.clock = Clock(NOW)
        self.sleeps = []

    async def asyncTearDown(self):
        await self.database.close()
        self._tmp.cleanup()

    async def _sleep(self, seconds):
        self.sleeps.append(seconds)

    def build_cycle(self, fetcher, assessor=None, notifier=None, chains=("solana",), **config):
        settings = FilterSettings(FilterConfiguration(**config))
        return IngestionCycle(
            fetcher=fetcher,
            assessor=assessor or FakeAssessor(),
            token_filter=TokenFilter(settings, CHAIN_PROFILES, clock=self.clock),
            repository=self.repository,
            notifier=notifier,
            alert_criteria=AlertCriteria(),
            chains=chains,
            profiles=CHAIN_PROFILES,
            max_pairs=50,
            freshness_window=timedelta(minutes=60),
            request_delay=0.2,
            clock=self.clock,
            sleep=self._sleep,
        )


class TestCycle(IngestionTestCase):
    async def test_counts_saved_and_filtered(self):
        fetcher = FakeFetcher({"solana": [make_pair("GOOD"), make_pair("LOW", volume={"h24": 1})]})
        cycle = self.build_cycle(fetcher)

        result = await cycle.run()

        self.assertEqual(result.processed, 2)
        self.assertEqual(result.saved, 1)
        self.assertEqual(result.filtered, 1)
        self.assertEqual(result.errors, 0)
        self.assertIsNotNone(await self.repository.find_by_pair_address("GOOD"))
        self.assertIsNone(await self.repository.find_by_pair_address("LOW"))

    async def test_courtesy_delay_between_pairs(self):
        fetcher = FakeFetcher({"solana": [make_pair("A"), make_pair("B"), make_pair("C")]})
        await self.build_cycle(fetcher).run()

        self.assertEqual(self.sleeps, [0.2, 0.2])

    async def test_max_pairs_cap_and_priority(self):
        pairs = [make_pair(f"P{i}", dexId="orca") for i in range(3)] + [make_pair("RAY", dexId="raydium")]
        assessor = FakeAssessor()
        cycle = self.build_cycle(FakeFetcher({"solana": pairs}), assessor=assessor)
        cycle.max_pairs = 2

        result = await cycle.run()

        self.assertEqual(result.processed, 2)
        self.assertEqual(assessor.calls[0], "TOKEN_RAY")


class TestFreshness(IngestionTestCase):
    async def test_reingestion_respects_window(self):
        fetcher = FakeFetcher({"solana": [make_pair("PAIR1")]})
        assessor = FakeAssessor()
        cycle = self.build_cycle(fetcher, assessor=assessor)

        first = await cycle.run()
        self.assertEqual(first.saved, 1)

        self.clock.now = NOW + timedelta(minutes=30)
        second = await cycle.run()
        stored = await self.repository.find_by_pair_address("PAIR1")

        self.assertEqual(second.skipped, 1)
        self.assertEqual(second.saved, 0)
        self.assertEqual(second.filtered, 0)
        self.assertEqual(stored.updated_at, NOW)
        self.assertEqual(len(assessor.calls), 1)

        self.clock.now = NOW + timedelta(minutes=61)
        fetcher.pairs_by_chain["solana"] = [make_pair("PAIR1", volume={"h24": 7777})]
        third = await cycle.run()
        stored = await self.repository.find_by_pair_address("PAIR1")

        self.assertEqual(third.saved, 1)
        self.assertEqual(stored.updated_at, NOW + timedelta(minutes=61))
        self.assertEqual(stored.created_at, NOW)
        self.assertEqual(stored.volume_24h, 7777)

    async def test_status_survives_reingestion(self):
        fetcher = FakeFetcher({"solana": [make_pair("PAIR1")]})
        cycle = self.build_cycle(fetcher)
        await cycle.run()
        await self.repository.update_status("PAIR1", "flagged")

        self.clock.now = NOW + timedelta(hours=3)
        await cycle.run()

        stored = await self.repository.find_by_pair_address("PAIR1")
        self.assertEqual(stored.status.value, "flagged")


class TestFailures(IngestionTestCase):
    async def test_fetch_failure_yields_zero_result(self):
        fetcher = FakeFetcher({"solana": RetriesExhaustedError(3, ConnectionError("down"))})

        result = await self.build_cycle(fetcher).run()

        self.assertEqual(result.model_dump(), {
            "processed": 0,
            "saved": 0,
            "filtered": 0,
            "skipped": 0,
            "errors": 0,
            "alerts": 0,
            "overlapped": False,
        })

    async def test_one_failing_chain_does_not_block_others(self):
        pair = make_pair(
            "ETH1",
            chainId="ethereum",
            dexId="uniswap",
            quoteToken={"address": "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2", "symbol": "WETH"},
        )
        fetcher = FakeFetcher({"solana": ConnectionError("down"), "ethereum": [pair]})

        result = await self.build_cycle(fetcher, chains=("solana", "ethereum")).run()

        self.assertEqual(fetcher.calls, ["solana", "ethereum"])
        self.assertEqual(result.saved, 1)

    async def test_degraded_risk_completes_cycle(self):
        fetcher = FakeFetcher({"solana": [make_pair("A"), make_pair("B")]})
        assessor = RiskAssessor(BrokenRugCheckClient(), default_score=5.0)

        strict = await self.build_cycle(fetcher, assessor=assessor).run()
        self.assertEqual(strict.processed, 2)
        self.assertEqual(strict.filtered, 2)
        self.assertEqual(strict.errors, 0)

        relaxed = self.build_cycle(
            fetcher,
            assessor=assessor,
            min_holders=None,
            max_top_holder_percentage=None,
        )
        result = await relaxed.run()
        stored = await self.repository.find_by_pair_address("A")

        self.assertEqual(result.saved, 2)
        self.assertEqual(stored.rug_score, 5.0)
        self.assertIn("data_unavailable", stored.rug_risks)

    async def test_pair_error_is_contained(self):
        fetcher = FakeFetcher({"solana": [make_pair("BAD"), make_pair("GOOD")]})
        assessor = FakeAssessor(fail_for={"TOKEN_BAD"})

        result = await self.build_cycle(fetcher, assessor=assessor).run()

        self.assertEqual(result.errors, 1)
        self.assertEqual(result.saved, 1)


class TestAlerts(IngestionTestCase):
    async def test_alert_sent_for_eligible_pair(self):
        notifier = RecordingNotifier()
        fetcher = FakeFetcher({"solana": [make_pair("HOT", **ALERT_WORTHY), make_pair("MEH")]})

        result = await self.build_cycle(fetcher, notifier=notifier).run()

        self.assertEqual(result.saved, 2)
        self.assertEqual(result.alerts, 1)
        self.assertEqual([p.pair_address for p in notifier.payloads], ["HOT"])
        self.assertEqual(notifier.payloads[0].detected_at, NOW)

    async def test_notifier_failure_is_isolated(self):
        notifier = RecordingNotifier(fail=True)
        fetcher = FakeFetcher({"solana": [make_pair("HOT", **ALERT_WORTHY)]})

        result = await self.build_cycle(fetcher, notifier=notifier).run()

        self.assertEqual(result.saved, 1)
        self.assertEqual(result.alerts, 0)
        self.assertEqual(result.errors, 0)
        self.assertIsNotNone(await self.repository.find_by_pair_address("HOT"))


class BlockingFetcher:
    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch(self, chain=None):
        self.started.set()
        await self.release.wait()
        return []


class TestOverlap(IngestionTestCase):
    async def test_overlapping_run_is_skipped(self):
        fetcher = BlockingFetcher()
        cycle = self.build_cycle(fetcher)

        first = asyncio.create_task(cycle.run())
        await fetcher.started.wait()
        self.assertTrue(cycle.running)

        second = await cycle.run()
        self.assertTrue(second.overlapped)

        fetcher.release.set()
        result = await first
        self.assertFalse(result.overlapped)
        self.assertFalse(cycle.running)


if __name__ == "__main__":
    unittest.main()
