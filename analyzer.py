import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import httpx

from chains import ChainProfile, profile_for
from collector import api_headers
from models import HolderEntry, HolderSummary, RiskRecord
from ratelimit import RateLimiter
from retry import RetryPolicy, retry

logger = logging.getLogger(__name__)

MAX_RISK_SCORE = 10.0


# ---------------------------------------------------------
# Holder classification
# ---------------------------------------------------------
def is_burn_address(address: str, profile: ChainProfile) -> bool:
    """
    Burn / incinerator addresses. Matched as case-sensitive substrings.
    """
    return any(pattern in address for pattern in profile.burn_patterns)


def is_program_account(address: str, profile: ChainProfile) -> bool:
    """
    Program and system accounts. Matched exactly.
    """
    return address in profile.program_accounts


def classify_holder(address: str, profile: ChainProfile) -> str:
    if is_burn_address(address, profile):
        return "burn"
    if is_program_account(address, profile):
        return "program"
    return "holder"


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def summarize_holders(
    top: List[Dict[str, Any]],
    total_supply: float,
    count: Optional[int],
    profile: ChainProfile,
) -> HolderSummary:
    """
    Build the holder distribution for a token.

    Burn addresses and program accounts are kept in the distribution but
    excluded when computing the top-holder concentration.

    Returns:
        HolderSummary with count 0 and concentration 100% when there is no
        holder data at all.
    """
    if not top:
        return HolderSummary(count=count or 0, top_percentage=100.0)

    supply = total_supply if total_supply and total_supply > 0 else 1.0

    distribution: List[HolderEntry] = []
    for holder in top:
        address = str(holder.get("address") or holder.get("owner") or "")
        if not address:
            continue
        balance = _to_float(holder.get("balance", holder.get("amount")))
        if holder.get("pct") is not None:
            percentage = _to_float(holder.get("pct"))
        else:
            percentage = (balance / supply) * 100.0
        distribution.append(
            HolderEntry(
                address=address,
                balance=balance,
                percentage=percentage,
                classification=classify_holder(address, profile),
            )
        )

    real_holders = [h for h in distribution if h.classification == "holder"]
    top_percentage = max((h.percentage for h in real_holders), default=0.0)

    return HolderSummary(
        count=count or len(distribution),
        top_percentage=top_percentage,
        distribution=distribution,
    )


# ---------------------------------------------------------
# Report normalisation
# ---------------------------------------------------------
def slugify_risk(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")


def extract_risk_tags(risks: Any) -> List[str]:
    """
    Risk entries arrive either as plain strings or as objects with a
    `name`. Both become snake_case tags, de-duplicated in order.
    """
    tags: List[str] = []
    for risk in risks or []:
        if isinstance(risk, dict):
            name = risk.get("name") or risk.get("type") or ""
        else:
            name = str(risk)
        tag = slugify_risk(name)
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def _extract_holders(report: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], float, Optional[int]]:
    # Shape 1: {"holders": {"top": [...], "total": supply, "count": n}}
    holders = report.get("holders")
    if isinstance(holders, dict) and holders:
        return (
            holders.get("top") or [],
            _to_float(holders.get("total")),
            holders.get("count"),
        )

    # Shape 2: RugCheck report {"topHolders": [...], "totalHolders": n, "token": {"supply": ...}}
    top = report.get("topHolders") or []
    token = report.get("token") or {}
    supply = _to_float(token.get("supply")) if isinstance(token, dict) else 0.0
    return top, supply, report.get("totalHolders")


def _bounded_score(report: Dict[str, Any]) -> float:
    """
    Risk score on the 0-10 scale. Prefers `score_normalised` and falls back
    to the raw `score`. Values are clamped to the scale.
    """
    raw = report.get("score_normalised")
    if raw is None:
        raw = report.get("score")
    return min(max(_to_float(raw), 0.0), MAX_RISK_SCORE)


def normalize_report(report: Dict[str, Any], token_address: str, profile: ChainProfile) -> RiskRecord:
    """
    Map a raw reputation payload onto a RiskRecord. Absent fields fall back
    to zero / empty values.
    """
    if not isinstance(report, dict):
        raise ValueError("Risk report is not a JSON object")

    top, supply, count = _extract_holders(report)
    token_meta = report.get("tokenMeta") or {}

    return RiskRecord(
        token_address=token_address,
        score=_bounded_score(report),
        tags=extract_risk_tags(report.get("risks")),
        holders=summarize_holders(top, supply, count, profile),
        freeze_authority=report.get("freezeAuthority") or None,
        mint_authority=report.get("mintAuthority") or None,
        update_authority=(report.get("updateAuthority") or token_meta.get("updateAuthority") or None),
        mutable=bool(report.get("mutable", token_meta.get("mutable", False))),
    )


# ---------------------------------------------------------
# Remote client + assessor
# ---------------------------------------------------------
class RugCheckClient:
    """
    Rate-limited, retried client for the token reputation service.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        limiter: RateLimiter,
        policy: RetryPolicy,
        base_url: str = "https://api.rugcheck.xyz/v1",
        api_key: Optional[str] = None,
    ):
        self.http = http
        self.limiter = limiter
        self.policy = policy
        self.base_url = base_url.rstrip("/")
        self.headers = api_headers(api_key)

    def report_url(self, token_address: str) -> str:
        return f"{self.base_url}/tokens/{token_address}/report"

    async def _get_json(self, url: str) -> Any:
        await self.limiter.acquire()
        resp = await self.http.get(url, headers=self.headers)
        if resp.status_code == 429:
            logger.warning("RugCheck rate limit hit - consider increasing delays")
        resp.raise_for_status()
        return resp.json()

    async def fetch_report(self, token_address: str) -> Dict[str, Any]:
        """
        Raw report for a token. May raise.
        """
        url = self.report_url(token_address)
        return await retry(
            lambda: self._get_json(url),
            self.policy,
            description=f"RugCheck GET {url}",
        )


class RiskAssessor:
    """
    Produces a RiskRecord for every token, even when the lookup fails.
    """

    def __init__(self, client: RugCheckClient, default_score: float = 5.0):
        self.client = client
        self.default_score = default_score

    async def assess(self, token_address: str, chain_id: str = "solana") -> RiskRecord:
        profile = profile_for(chain_id)
        try:
            report = await self.client.fetch_report(token_address)
            return normalize_report(report, token_address, profile)
        except Exception as e:
            logger.warning(
                "Risk lookup failed for %s, using default score %s: %s",
                token_address,
                self.default_score,
                e,
            )
            return RiskRecord.degraded(token_address, self.default_score)
