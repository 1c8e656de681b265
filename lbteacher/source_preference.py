"""
API vs DOM data-source arbitration.

Some sites expose the same leaderboard both through a JSON API and in the
rendered page, and the two disagree. Obvious problems (site names parsed as
usernames, empty top prizes, tiny wagers) settle the choice without the
oracle; otherwise the oracle is asked when a client is supplied, and entry
counts break the tie as a last resort. The winner is persisted per
leaderboard so later runs skip the comparison.

Usage:
    comparison = await compare_data_sources(api_entries, dom_entries, "stake", oracle=client, domain=domain)
    save_data_source_preference(store, domain, "stake", comparison)
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .anomaly_detector import entry_prize, entry_wager
from .llm_client import OracleClient
from .response_parser import extract_json
from .site_profiles import ProfileStore, SourcePreference

logger = logging.getLogger(__name__)

SOURCE_API = "api"
SOURCE_DOM = "dom"

MIN_AVERAGE_WAGER = 100
COMPARISON_MAX_TOKENS = 500
SAMPLE_SIZE = 5

KNOWN_WEBSITE_NAMES = {
    # casinos
    "gamdom", "stake", "rollbit", "roobet", "duelbits", "shuffle", "bc.game", "bcgame",
    "packdraw", "hypedrop", "cases", "clash.gg", "clashgg", "csgoroll", "csgopolygon",
    "csgoempire", "lootbox", "datdrop", "keydrop", "farmskins", "hellcase", "csgoluck",
    "skinclub", "dmarket", "gameboost", "cscase", "skinhub", "csgo500", "wtfskins",
    "skinbaron", "skinport", "bitsler", "primedice", "bitskins", "csfloat", "clash",
    # page furniture
    "leaderboard", "leaderboards", "rewards", "affiliates", "sponsored",
    # affiliate brands
    "paxgambles", "wrewards", "devlrewards", "goatgambles", "codeshury",
    "betjuicy", "birb", "muta", "elliotrewards", "crunchyrewards", "augustrewards",
    "scrapesgambles", "jonkenn", "vinnyvh", "tanskidegen", "yeeterboards",
}

_DOMAIN_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"\.com$", r"\.gg$", r"\.io$", r"\.net$", r"\.org$", r"\.co$", r"^www\.", r"^https?://")
]

COMPARISON_PROMPT = """You compare two scraped copies of the same gambling leaderboard and pick the more accurate one.

Evaluation criteria:
1. Website names incorrectly parsed as usernames (e.g. "Gamdom.com", "Stake")
2. Missing or zero prizes for top positions
3. Reasonable wager amounts (typically $10,000 - $10,000,000)
4. Correct rank ordering
5. Data completeness

Return ONLY a JSON object:
{"winner": "api" or "dom", "reason": "brief explanation", "confidence": 0-100, "issues_found": ["..."]}"""


@dataclass
class SourceComparison:
    winner: str
    reason: str
    confidence: float
    api_issues: List[str] = field(default_factory=list)
    dom_issues: List[str] = field(default_factory=list)
    issues_found: List[str] = field(default_factory=list)
    llm_decision: bool = False


def looks_like_website_name(text: Any) -> bool:
    if not text or not isinstance(text, str):
        return False
    lowered = text.strip().lower()
    if lowered in KNOWN_WEBSITE_NAMES:
        return True
    # Censored e-mail addresses are real usernames
    if "@" in lowered:
        return False
    return any(p.search(lowered) for p in _DOMAIN_PATTERNS)


def source_issues(entries: List[Dict[str, Any]]) -> List[str]:
    """Heuristic problems with one source's entries."""
    issues = []
    site_names = [e.get("username") for e in entries if looks_like_website_name(e.get("username"))]
    if site_names:
        issues.append(f"Contains {len(site_names)} website names as usernames: {', '.join(site_names)}")

    zero_prizes = sum(1 for e in entries[:3] if entry_prize(e) == 0)
    if zero_prizes:
        issues.append(f"{zero_prizes} of top 3 have $0 prize")

    if entries and sum(entry_wager(e) for e in entries) / len(entries) < MIN_AVERAGE_WAGER:
        issues.append("Suspiciously low average wager")
    return issues


def heuristic_comparison(api_entries: List[Dict[str, Any]], dom_entries: List[Dict[str, Any]]) -> SourceComparison:
    """Decide without the oracle."""
    if not api_entries:
        return SourceComparison(winner=SOURCE_DOM, reason="no_api_data", confidence=100)
    if not dom_entries:
        return SourceComparison(winner=SOURCE_API, reason="no_dom_data", confidence=100)

    api_issues = source_issues(api_entries)
    dom_issues = source_issues(dom_entries)

    if api_issues and not dom_issues:
        logger.info(f"API has issues ({'; '.join(api_issues)}), using DOM")
        return SourceComparison(SOURCE_DOM, f"API issues: {'; '.join(api_issues)}", 90, api_issues, dom_issues)
    if dom_issues and not api_issues:
        logger.info(f"DOM has issues ({'; '.join(dom_issues)}), using API")
        return SourceComparison(SOURCE_API, f"DOM issues: {'; '.join(dom_issues)}", 90, api_issues, dom_issues)

    if len(api_entries) > len(dom_entries) and len(dom_issues) >= len(api_issues):
        return SourceComparison(SOURCE_API, "More entries and fewer/equal issues", 60, api_issues, dom_issues)
    if len(dom_entries) >= len(api_entries) or len(dom_issues) < len(api_issues):
        return SourceComparison(SOURCE_DOM, "More entries or fewer issues", 60, api_issues, dom_issues)
    return SourceComparison(SOURCE_API, "Default preference for structured API data", 50, api_issues, dom_issues)


def _sample(entries: List[Dict[str, Any]]) -> str:
    text = json.dumps(entries[:SAMPLE_SIZE], indent=2, default=str)
    if len(entries) > SAMPLE_SIZE:
        text += f"\n... and {len(entries) - SAMPLE_SIZE} more entries"
    return text


async def compare_data_sources(
    api_entries: List[Dict[str, Any]],
    dom_entries: List[Dict[str, Any]],
    site_name: str,
    oracle: Optional[OracleClient] = None,
    domain: Optional[str] = None,
) -> SourceComparison:
    heuristic = heuristic_comparison(api_entries, dom_entries)
    decisive = heuristic.confidence >= 90
    if decisive or oracle is None or not oracle.is_available():
        return heuristic

    message = (
        f'Leaderboard: "{site_name}"\n\n'
        f"## API data ({len(api_entries)} entries)\n{_sample(api_entries)}\n\n"
        f"## DOM data ({len(dom_entries)} entries)\n{_sample(dom_entries)}\n\n"
        f"API issues: {'; '.join(heuristic.api_issues) or 'None detected'}\n"
        f"DOM issues: {'; '.join(heuristic.dom_issues) or 'None detected'}"
    )
    response = await oracle.call(
        system_prompt=COMPARISON_PROMPT,
        user_message=message,
        domain=domain or site_name,
        max_tokens=COMPARISON_MAX_TOKENS,
    )
    if not response.success:
        logger.warning(f"Oracle source comparison failed for {site_name}: {response.error}")
        return heuristic

    extracted = extract_json(response.content)
    value = extracted.value if extracted.success else None
    if not isinstance(value, dict) or value.get("winner") not in (SOURCE_API, SOURCE_DOM):
        logger.warning(f"Unusable oracle source comparison for {site_name}; falling back to heuristics")
        return heuristic

    confidence = value.get("confidence")
    comparison = SourceComparison(
        winner=value["winner"],
        reason=str(value.get("reason") or ""),
        confidence=confidence if isinstance(confidence, (int, float)) else heuristic.confidence,
        api_issues=heuristic.api_issues,
        dom_issues=heuristic.dom_issues,
        issues_found=[str(i) for i in value.get("issues_found") or []],
        llm_decision=True,
    )
    logger.info(f"Oracle chose {comparison.winner} for {site_name} ({comparison.confidence}%): {comparison.reason}")
    return comparison


def save_data_source_preference(store: ProfileStore, domain: str, leaderboard: str,
                                comparison: SourceComparison) -> SourcePreference:
    preference = SourcePreference(
        source=comparison.winner,
        reason=comparison.reason,
        confidence=comparison.confidence,
        decided_at=datetime.now(timezone.utc).isoformat(),
        llm_decision=comparison.llm_decision,
    )
    store.record_source_preference(domain, leaderboard, preference)
    logger.info(f"Saved data source preference for {domain}/{leaderboard}: {comparison.winner}")
    return preference


def get_data_source_preference(store: ProfileStore, domain: str, leaderboard: str) -> Optional[SourcePreference]:
    return store.get_source_preference(domain, leaderboard)
