"""
Prompts and context packages sent to the oracle.

The prompts define the JSON schema the oracle must answer with (see
``response_parser``); the builders assemble what the oracle gets to see:
site metadata, the scraper's own findings, recent API captures and any
rules learned earlier.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .anomaly_detector import leaderboard_entries, leaderboard_name, leaderboards_of
from .browser_controller import PageState, recent_api_responses
from .site_profiles import ProfileStatus, SiteProfile

logger = logging.getLogger(__name__)

DEFAULT_KEYWORDS = [
    "diceblox", "cases", "casesgg", "acebet", "csbattle",
    "shuffle", "stake", "roobet", "duelbits", "gamdom",
    "rollbit", "clash", "clashgg", "hypedrop", "keydrop",
    "packdraw", "csgoroll", "skinport", "farmskins", "rainbet",
    "csgoempire", "empire", "rustyloot", "bandit", "howl", "daddyskins",
    "chicken", "csgoluck", "datdrop", "hellcase", "skinhub",
    "skinrave", "csgostake", "lootbox",
]

WHAT_IS_LEADERBOARD = """A leaderboard displays rankings of gambling users by wager amount.
Each entry typically contains:
- RANK: Position (1, 2, 3 or #1, #2, #3 or 1st, 2nd, 3rd)
- USERNAME: Player name (often censored like J***n or T***K*****)
- WAGER: Amount wagered in USD (LARGER number, typically $10,000-$10,000,000)
- PRIZE: Reward amount (SMALLER than wager, e.g., $100-$50,000)
Usually shows top 10 entries. Top 3 often in "podium" style cards, ranks 4-10 in a table."""

WHAT_ARE_SWITCHERS = """Buttons/tabs to switch between different casino leaderboards.
Look for: tabs with casino names, sliders with logos, dropdown menus, card buttons.
Keywords may appear in: button text, image alt text, SVG elements, class names, data attributes."""

SUCCESS_CRITERIA = """A successful extraction has:
- All leaderboards on the site identified and scraped
- 5-10 entries per leaderboard with valid data
- All fields populated: rank, username, wager, prize
- Wager values are large (typically $10,000-$10,000,000)
- Prize values make sense (top prizes larger than lower ranks)
- No duplicate entries across different leaderboards
- No UI text accidentally captured as usernames
- Confidence score of 80 or higher"""

QUICK_ANALYSIS_PROMPT = """You are an expert web scraper assistant analyzing leaderboard data from gambling affiliate websites.

## YOUR TASK
Review the extraction results and the screenshot. Determine if the scraper got it right. Provide rules for future scraping.

## WHAT TO CHECK
1. Are the extracted leaderboards correct?
2. Are there any leaderboards the scraper missed?
3. Are the site switcher buttons correctly identified?
4. Is the data (usernames, wagers, prizes) accurate?

## RESPOND WITH JSON ONLY
{
  "data_verification": {
    "is_correct": true/false,
    "issues": [{"leaderboard": "name", "problem": "description", "corrected_data": [...]}]
  },
  "missed_leaderboards": [{"name": "...", "why_missed": "...", "location": {"selector": "...", "coordinates": {"x": N, "y": N}}}],
  "switchers": [{"name": "casino_name", "selector": ".selector", "coordinates": {"x": N, "y": N}, "keywords": ["..."]}],
  "extraction": {"container_selector": "...", "entry_selector": "...", "fields": {"rank": "...", "username": "...", "wager": "...", "prize": "..."}},
  "api_patterns": {"entries_endpoint": "url pattern or null", "prizes_endpoint": "url pattern or null"},
  "extraction_config": {"method": "api|dom|hybrid", "api_config": {...}, "dom_config": {...}},
  "layout_fingerprint": {"switcher_count": N, "switcher_names": [...], "layout_type": "podium-table|table-only|list"},
  "notes": {"confidence": 0-100, "observations": ["..."], "warnings": ["..."]}
}

Be specific with selectors. If a selector might be ambiguous, provide coordinates as backup."""

INTERACTIVE_PROMPT = """You are investigating a leaderboard page that needs more exploration.

## YOUR CAPABILITIES
You can control the browser. Include commands in your response to interact with the page.

## AVAILABLE COMMANDS (include in browser_commands array)
- {"action": "click", "selector": ".css-selector"}
- {"action": "click", "coordinates": {"x": 100, "y": 200}}
- {"action": "scroll", "direction": "down", "amount": 300}
- {"action": "wait", "ms": 2000}
- {"action": "waitForSelector", "selector": ".element", "timeout": 5000}
- {"action": "hover", "selector": ".element"}

## RESPOND WITH JSON
{
  "browser_commands": [...],
  "finished": false,
  "data_verification": {...},
  "switchers": [...],
  "extraction": {...},
  "extraction_config": {...},
  "notes": {"confidence": 0-100, "observations": [...], "warnings": [...]}
}

Leave browser_commands empty when no action is needed.
Set "finished": true when you've gathered enough information to provide confident rules."""


def load_keywords(path: Optional[Path]) -> List[str]:
    """Keywords from a one-per-line file, falling back to the built-in list."""
    if path is None or not Path(path).exists():
        return list(DEFAULT_KEYWORDS)
    lines = Path(path).read_text(encoding="utf-8").splitlines()
    keywords = [line.strip().lower() for line in lines if line.strip() and not line.startswith("#")]
    return keywords or list(DEFAULT_KEYWORDS)


def to_message(context: Dict[str, Any]) -> str:
    return json.dumps(context, indent=2, ensure_ascii=False, default=str)


class ContextBuilder:
    def __init__(self, keywords: Optional[List[str]] = None):
        self.keywords = list(keywords) if keywords else list(DEFAULT_KEYWORDS)

    def training_context(self) -> Dict[str, Any]:
        return {
            "what_is_leaderboard": WHAT_IS_LEADERBOARD,
            "what_are_site_switchers": WHAT_ARE_SWITCHERS,
            "success_criteria": SUCCESS_CRITERIA,
            "known_sites": self.keywords,
        }

    def system_prompt(self, interactive: bool = False) -> str:
        return INTERACTIVE_PROMPT if interactive else QUICK_ANALYSIS_PROMPT

    def build_quick_context(
        self,
        url: str,
        network_data: Optional[Dict[str, Any]],
        extraction_result: Dict[str, Any],
        profile: SiteProfile,
    ) -> Dict[str, Any]:
        findings = extraction_result if isinstance(extraction_result, dict) else {}
        leaderboards = []
        for lb in leaderboards_of(extraction_result):
            entries = leaderboard_entries(lb)
            leaderboards.append({
                "name": leaderboard_name(lb),
                "type": lb.get("type"),
                "entry_count": len(entries),
                "confidence": lb.get("confidence"),
                "top_entries": [
                    {k: e.get(k) for k in ("rank", "username", "wager", "prize")}
                    for e in entries[:3]
                ],
                "extraction_method": lb.get("extraction_method"),
            })

        api_summary = []
        for r in recent_api_responses(network_data, 5):
            data = r.get("data")
            has_entries = isinstance(data, dict) and any(k in data for k in ("entries", "leaders", "leaderboard"))
            api_summary.append({"url": str(r.get("url") or "")[:100], "has_leaderboard_data": has_entries})

        previous_rules = None
        if profile.status != ProfileStatus.NEW:
            previous_rules = {
                "switcher_count": len(profile.switchers),
                "extraction_selector": profile.extraction.get("container_selector"),
                "extraction_method": profile.extraction_config.method,
                "last_confidence": profile.verification.confidence,
                "learning_instructions": profile.learning_instructions,
            }

        return {
            "training": self.training_context(),
            "site": {
                "domain": profile.domain,
                "url": url,
                "status": profile.status.value,
                "attempt": profile.attempts + 1,
                "max_attempts": profile.max_attempts,
            },
            "scraper_findings": {
                "leaderboards": leaderboards,
                "detected_switchers": [
                    {k: s.get(k) for k in ("keyword", "type", "coordinates")}
                    for s in findings.get("detected_switchers") or []
                    if isinstance(s, dict)
                ],
                "errors": list(findings.get("errors") or [])[:5],
            },
            "api_summary": api_summary,
            "previous_rules": previous_rules,
        }

    def build_interactive_context(
        self,
        base: Dict[str, Any],
        state: PageState,
        iteration: int,
        max_iterations: int,
    ) -> Dict[str, Any]:
        return {
            **base,
            "browser_state": {
                "current_url": state.url,
                "dom_summary": state.dom_summary,
                "recent_api_responses": [
                    {"url": str(r.get("url") or "")[:80], "data_preview": json.dumps(r.get("data"), default=str)[:200]}
                    for r in state.api_responses[-3:]
                ],
                "capture_error": state.error,
            },
            "session": {
                "iteration": iteration,
                "max_iterations": max_iterations,
                "note": "Set finished: true when you have enough information",
            },
        }
