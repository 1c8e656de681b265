"""
Screenshot-based switcher verification.

Once per cooldown window (24h by default) a site's leaderboard page is shown
to the oracle, which lists the site switchers it can see. Switchers the DOM
scan missed come back as ``additional_switchers``; switchers the DOM scan
found but the oracle could not see are reported as ``missing_from_oracle``.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from .config import TeacherConfig
from .llm_client import OracleClient
from .page import PageHandle
from .response_parser import extract_json
from .site_profiles import ProfileStore, parse_time

logger = logging.getLogger(__name__)

VISUAL_MAX_TOKENS = 1000
MISSING_CONFIDENCE_FLOOR = 70
ADDITIONAL_SWITCHER_PRIORITY = 70

VISUAL_VERIFICATION_PROMPT = """You are an expert at analyzing gambling affiliate website leaderboard pages.

Look at this screenshot of a leaderboard page and identify ALL visible site switchers, tabs, or buttons
that switch between different casino/gambling site leaderboards.

Site switchers are typically:
- Tabs or buttons with casino names (Gamdom, Stake, Packdraw, etc.)
- Slider/carousel with casino logos
- Card-style buttons showing different sites
- Dropdown menus for site selection (look for arrows or chevrons)

Return your findings as JSON:
{
  "site_switchers_found": ["name1", "name2", ...],
  "switcher_count": <number>,
  "switcher_type": "tabs" | "buttons" | "slider" | "dropdown" | "cards" | "none" | "mixed",
  "has_dropdown": true/false,
  "confidence": <0-100>,
  "notes": "any observations about the page layout or potential issues"
}"""


@dataclass
class VisualVerification:
    additional_switchers: List[Dict[str, Any]] = field(default_factory=list)
    missing_from_oracle: List[str] = field(default_factory=list)
    findings: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def should_update(self) -> bool:
        return bool(self.additional_switchers)


def _keyword(switcher: Dict[str, Any]) -> str:
    return str(switcher.get("keyword") or switcher.get("name") or "").strip().lower()


class VisualVerifier:
    def __init__(self, config: TeacherConfig, profiles: ProfileStore, oracle: OracleClient):
        self.config = config
        self.profiles = profiles
        self.oracle = oracle

    def needs_visual_verification(self, domain: str) -> bool:
        profile = self.profiles.get(domain)
        if profile.llm_disabled:
            return False
        last = parse_time(profile.last_screenshot_verify_at)
        if last is None:
            return True
        cooldown = timedelta(hours=self.config.visual_verify_cooldown_hours)
        return self.profiles.now() - last > cooldown

    async def verify(
        self,
        page: PageHandle,
        detected_switchers: List[Dict[str, Any]],
        domain: str,
    ) -> VisualVerification:
        profile = self.profiles.get(domain)
        if not self.config.is_enabled() or profile.llm_disabled:
            return VisualVerification(error="disabled")

        screenshot = await page.screenshot()
        logger.info(f"Visual verification for {domain}...")
        response = await self.oracle.call(
            system_prompt=VISUAL_VERIFICATION_PROMPT,
            user_message="Analyze this leaderboard page screenshot and identify all site switchers.",
            domain=domain,
            image=screenshot,
            max_tokens=VISUAL_MAX_TOKENS,
        )
        if not response.success:
            logger.warning(f"Visual verification call failed for {domain}: {response.error}")
            return VisualVerification(error=response.error)

        extracted = extract_json(response.content)
        if not extracted.success or not isinstance(extracted.value, dict):
            logger.warning(f"Could not parse visual verification for {domain}: {extracted.error}")
            return VisualVerification(error=extracted.error or "not a JSON object")

        findings = extracted.value
        seen = [str(s) for s in findings.get("site_switchers_found") or []]
        seen_lower = {s.strip().lower() for s in seen}
        confidence = findings.get("confidence") or 0
        detected_lower = {_keyword(s) for s in detected_switchers}

        additional = [
            {
                "keyword": name,
                "type": "llm-visual",
                "priority": ADDITIONAL_SWITCHER_PRIORITY,
                "coordinates": None,
                "source": "visual-verification",
                "requires_coordinate_detection": True,
            }
            for name in seen
            if name.strip().lower() not in detected_lower
        ]
        missing = []
        if isinstance(confidence, (int, float)) and confidence >= MISSING_CONFIDENCE_FLOOR:
            missing = [
                s.get("keyword") or s.get("name")
                for s in detected_switchers
                if _keyword(s) and _keyword(s) not in seen_lower
            ]

        for name in additional:
            logger.info(f"Oracle found additional switcher on {domain}: {name['keyword']}")

        self.profiles.record_visual_verification(domain, {
            "oracle_switcher_count": findings.get("switcher_count"),
            "oracle_switchers": seen,
            "dom_switcher_count": len(detected_switchers),
            "additional_found": len(additional),
            "missing_from_oracle": missing,
            "confidence": confidence,
            "notes": findings.get("notes"),
        })
        return VisualVerification(additional_switchers=additional, missing_from_oracle=missing, findings=findings)
