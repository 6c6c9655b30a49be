import unittest

import httpx

from analyzer import (
    RiskAssessor,
    RugCheckClient,
    classify_holder,
    extract_risk_tags,
    normalize_report,
    summarize_holders,
)
from chains import CHAIN_PROFILES
from errors import RetriesExhaustedError
from filters import FilterSettings, TokenFilter
from models import DATA_UNAVAILABLE
from ratelimit import RateLimiter
from retry import RetryPolicy

from tests.factories import NOW, CountingLimiter, make_pair, rugcheck_report

SOLANA = CHAIN_PROFILES["solana"]


def build_client(handler, limiter=None):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = RugCheckClient(
        http,
        limiter or RateLimiter(100, 60.0),
        RetryPolicy(max_attempts=2, base_delay=0),
        base_url="https://rugcheck.test/v1",
    )
    return http, client


def build_assessor(handler, default_score: float = 5.0):
    http, client = build_client(handler)
    return http, RiskAssessor(client, default_score=default_score)


class TestHolderSummary(unittest.TestCase):
    def test_burn_and_program_accounts_excluded_from_concentration(self):
        top = [
            {"address": "1nc1nerator11111111111111111111111111111111", "pct": 60.0},
            {"address": "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA", "pct": 20.0},
            {"address": "RealHolder", "pct": 8.0},
            {"address": "OtherHolder", "pct": 3.0},
        ]

        summary = summarize_holders(top, 1000, 400, SOLANA)

        self.assertEqual(summary.count, 400)
        self.assertEqual(summary.top_percentage, 8.0)
        self.assertEqual(
            [h.classification for h in summary.distribution],
            ["burn", "program", "holder", "holder"],
        )

    def test_percentage_from_balance_when_missing(self):
        summary = summarize_holders([{"address": "A", "balance": 250}], 1000, None, SOLANA)

        self.assertEqual(summary.top_percentage, 25.0)
        self.assertEqual(summary.count, 1)

    def test_no_holders_is_fully_concentrated(self):
        summary = summarize_holders([], 0, None, SOLANA)
        self.assertEqual(summary.count, 0)
        self.assertEqual(summary.top_percentage, 100.0)

    def test_evm_dead_address(self):
        profile = CHAIN_PROFILES["ethereum"]
        self.assertEqual(classify_holder("0x000000000000000000000000000000000000dEaD".lower(), profile), "burn")
        self.assertEqual(classify_holder("0xabc", profile), "holder")


class TestNormalize(unittest.TestCase):
    def test_rugcheck_report(self):
        report = rugcheck_report(
            score=3,
            risks=[{"name": "Mutable metadata"}, "Low Liquidity", {"name": "Mutable metadata"}],
            mintAuthority="MintAuth",
            tokenMeta={"updateAuthority": "UpdAuth", "mutable": True},
        )

        record = normalize_report(report, "TOKEN", SOLANA)

        self.assertEqual(record.score, 3.0)
        self.assertEqual(record.tags, ["mutable_metadata", "low_liquidity"])
        self.assertEqual(record.holders.count, 250)
        self.assertEqual(record.holders.top_percentage, 10.0)
        self.assertEqual(record.mint_authority, "MintAuth")
        self.assertIsNone(record.freeze_authority)
        self.assertEqual(record.update_authority, "UpdAuth")
        self.assertTrue(record.mutable)

    def test_nested_holders_shape(self):
        report = {"score": 1, "holders": {"top": [{"address": "A", "balance": 50}], "total": 100, "count": 12}}

        record = normalize_report(report, "TOKEN", SOLANA)

        self.assertEqual(record.holders.count, 12)
        self.assertEqual(record.holders.top_percentage, 50.0)

    def test_empty_report_uses_zero_values(self):
        record = normalize_report({}, "TOKEN", SOLANA)
        self.assertEqual(record.score, 0.0)
        self.assertEqual(record.tags, [])
        self.assertFalse(record.is_degraded)

    def test_non_object_rejected(self):
        with self.assertRaises(ValueError):
            normalize_report(["not", "a", "dict"], "TOKEN", SOLANA)

    def test_risk_tags(self):
        self.assertEqual(extract_risk_tags(["Honeypot", {"type": "Proxy Contract"}, ""]), ["honeypot", "proxy_contract"])

    def test_normalised_score_preferred_over_raw_sum(self):
        record = normalize_report(rugcheck_report(score=1501, score_normalised=3), "TOKEN", SOLANA)
        self.assertEqual(record.score, 3.0)

    def test_score_clamped_to_scale(self):
        self.assertEqual(normalize_report(rugcheck_report(score=42), "TOKEN", SOLANA).score, 10.0)
        self.assertEqual(normalize_report(rugcheck_report(score=-3), "TOKEN", SOLANA).score, 0.0)
        self.assertEqual(
            normalize_report(rugcheck_report(score=2, score_normalised=17), "TOKEN", SOLANA).score,
            10.0,
        )

    def test_normalised_report_passes_default_filter(self):
        pair = make_pair()
        record = normalize_report(
            rugcheck_report(score=1501, score_normalised=3),
            pair.base_token.address,
            SOLANA,
        )
        token_filter = TokenFilter(FilterSettings(), CHAIN_PROFILES, clock=lambda: NOW)

        outcome = token_filter.filter(pair, record)

        self.assertTrue(outcome.passed, outcome.reason)

    def test_zero_holder_total_falls_back_to_distribution(self):
        record = normalize_report(rugcheck_report(totalHolders=0), "TOKEN", SOLANA)

        self.assertEqual(record.holders.count, 2)
        self.assertEqual(record.holders.top_percentage, 10.0)


class TestRiskAssessor(unittest.IsolatedAsyncioTestCase):
    async def test_successful_lookup(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json=rugcheck_report(score=4))

        http, assessor = build_assessor(handler)
        try:
            record = await assessor.assess("TOKEN_A", "solana")
        finally:
            await http.aclose()

        self.assertEqual(seen, ["https://rugcheck.test/v1/tokens/TOKEN_A/report"])
        self.assertEqual(record.score, 4.0)
        self.assertFalse(record.is_degraded)

    async def test_failure_returns_degraded_default(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(503)

        http, assessor = build_assessor(handler, default_score=7.0)
        try:
            record = await assessor.assess("TOKEN_B", "solana")
        finally:
            await http.aclose()

        self.assertEqual(len(calls), 2)
        self.assertEqual(record.token_address, "TOKEN_B")
        self.assertEqual(record.score, 7.0)
        self.assertIn(DATA_UNAVAILABLE, record.tags)
        self.assertTrue(record.is_degraded)

    async def test_malformed_body_returns_degraded_default(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>oops</html>")

        http, assessor = build_assessor(handler)
        try:
            record = await assessor.assess("TOKEN_C", "unknownchain")
        finally:
            await http.aclose()

        self.assertTrue(record.is_degraded)
        self.assertEqual(record.score, 5.0)


class TestRugCheckClient(unittest.IsolatedAsyncioTestCase):
    async def test_limiter_acquired_once_per_request(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=rugcheck_report())

        limiter = CountingLimiter()
        http, client = build_client(handler, limiter=limiter)
        try:
            await client.fetch_report("TOKEN_A")
        finally:
            await http.aclose()

        self.assertEqual(len(requests), 1)
        self.assertEqual(limiter.calls, 1)

    async def test_limiter_acquired_before_each_retry(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(503)

        limiter = CountingLimiter()
        http, client = build_client(handler, limiter=limiter)
        try:
            with self.assertRaises(RetriesExhaustedError):
                await client.fetch_report("TOKEN_B")
        finally:
            await http.aclose()

        self.assertEqual(len(requests), 2)
        self.assertEqual(limiter.calls, 2)


if __name__ == "__main__":
    unittest.main()
