"""
Site profiles - the persisted per-domain learning state.

One JSON document per domain under ``<data_dir>/site-profiles/``, plus a
flagged-sites registry. Profiles are never overwritten wholesale: every
change is a partial update merged into the stored document under a
cross-process file lock, so a narrow update never erases an earlier,
unrelated discovery.

Merge rules (``deep_merge``):
    * nested records (dicts) merge key by key, preserving unspecified keys
    * lists and scalars in the update replace the stored value outright

Usage:
    store = ProfileStore(config)
    profile = store.get("example.com")           # status=new if unseen
    store.update("example.com", {"navigation": {"leaderboard_path": "/lb"}})
    attempts = store.increment_attempts("example.com")
    if attempts.max_reached:
        store.flag_for_review("example.com", "max_attempts_reached")
"""

import copy
import dataclasses
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union, get_args, get_origin, get_type_hints

from .config import TeacherConfig
from .errors import InvalidStatusError, InvalidTransitionError
from .fingerprint import LayoutFingerprint
from .page import PageHandle
from .response_parser import ParsedFields
from .storage import locked, read_json, sanitize_domain, update_json, write_json_atomic

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
MAX_OBSERVATIONS = 20
SWITCHER_VALID_RATIO = 0.7


class ProfileStatus(str, Enum):
    NEW = "new"
    PENDING_VERIFICATION = "pending_verification"
    LEARNING = "learning"
    VERIFIED = "verified"
    FLAGGED_FOR_REVIEW = "flagged_for_review"
    LAYOUT_CHANGED = "layout_changed"


# Forward progress only; layout_changed sits with new because it restarts learning
_STATUS_RANK = {
    ProfileStatus.NEW: 0,
    ProfileStatus.LAYOUT_CHANGED: 0,
    ProfileStatus.PENDING_VERIFICATION: 1,
    ProfileStatus.LEARNING: 2,
    ProfileStatus.VERIFIED: 3,
}


def parse_status(value: Union[str, ProfileStatus]) -> ProfileStatus:
    try:
        return ProfileStatus(value)
    except ValueError:
        raise InvalidStatusError(f"Invalid profile status: {value}") from None


def can_transition(old: ProfileStatus, new: ProfileStatus) -> bool:
    """Whether ``old -> new`` is allowed without an explicit reset."""
    if old == new:
        return True
    if old == ProfileStatus.FLAGGED_FOR_REVIEW:
        return False
    if new in (ProfileStatus.FLAGGED_FOR_REVIEW, ProfileStatus.LAYOUT_CHANGED):
        return True
    return _STATUS_RANK[new] >= _STATUS_RANK[old]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def deep_merge(target: Dict[str, Any], source: Dict[str, Any]) -> Dict[str, Any]:
    """Return ``target`` updated by ``source``: dicts merge recursively, everything else replaces."""
    merged = copy.deepcopy(target)
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _plain(value: Any) -> Any:
    """Dataclasses/enums inside a partial update become plain JSON values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return value.to_dict() if isinstance(value, Record) else asdict(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def _build(tp: Any, value: Any) -> Any:
    if value is None:
        return None
    origin = get_origin(tp)
    if origin is Union:
        options = [a for a in get_args(tp) if a is not type(None)]
        return _build(options[0], value) if options else value
    if isinstance(tp, type) and issubclass(tp, Record) and isinstance(value, dict):
        return tp.from_dict(value)
    if isinstance(tp, type) and issubclass(tp, Enum):
        return tp(value)
    if origin is list and isinstance(value, list):
        (item_type,) = get_args(tp) or (Any,)
        return [_build(item_type, v) for v in value]
    if origin is dict and isinstance(value, dict):
        _, value_type = get_args(tp) or (str, Any)
        return {k: _build(value_type, v) for k, v in value.items()}
    return value


class Record:
    """Dataclass mixin: typed from_dict/to_dict; unknown keys land in ``extra`` when present."""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]):
        hints = get_type_hints(cls)
        names = {f.name for f in dataclasses.fields(cls)}
        kwargs: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            if key == "extra" and isinstance(value, dict):
                extra.update(value)
            elif key in names:
                kwargs[key] = _build(hints[key], value)
            else:
                extra[key] = value
        if "extra" in names:
            kwargs["extra"] = extra
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = _plain({f.name: getattr(self, f.name) for f in dataclasses.fields(self)})
        extra = data.pop("extra", None)
        if extra:
            data.update(extra)
        return data


@dataclass
class Verification(Record):
    first_verified_at: Optional[str] = None
    last_verified_at: Optional[str] = None
    verified_by_llm: bool = False
    confidence: Optional[float] = None


@dataclass
class Navigation(Record):
    leaderboard_path: Optional[str] = None
    auth_required: bool = False


@dataclass
class ApiConfig(Record):
    base_url: Optional[str] = None
    endpoints: Dict[str, Optional[str]] = field(default_factory=lambda: {
        "providers": None,
        "leaderboard_list": None,
        "leaderboard_details": None,
        "historical": None,
    })
    substitution_rules: Dict[str, Any] = field(default_factory=dict)
    auth_required: bool = False
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class DomConfig(Record):
    container_selector: Optional[str] = None
    entry_selector: Optional[str] = None
    fields: Dict[str, Optional[str]] = field(default_factory=lambda: {
        "rank": None, "username": None, "wager": None, "prize": None,
    })


@dataclass
class HistoricalConfig(Record):
    supported: bool = False
    min_year: int = 2025
    min_month: int = 1
    method: Optional[str] = None


@dataclass
class ExtractionConfig(Record):
    """Reusable, oracle-discovered extraction rules"""
    method: Optional[str] = None
    discovered_at: Optional[str] = None
    discovered_by: Optional[str] = None
    api_config: ApiConfig = field(default_factory=ApiConfig)
    dom_config: DomConfig = field(default_factory=DomConfig)
    click_sequence: List[Dict[str, Any]] = field(default_factory=list)
    known_providers: List[str] = field(default_factory=list)
    historical_config: HistoricalConfig = field(default_factory=HistoricalConfig)
    switcher_config: Optional[Dict[str, Any]] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class InactiveLeaderboard(Record):
    name: str = ""
    reason: str = ""
    last_checked: Optional[str] = None
    fail_count: int = 0
    first_marked_at: Optional[str] = None


@dataclass
class SourcePreference(Record):
    source: str = ""
    reason: str = ""
    confidence: float = 0
    decided_at: Optional[str] = None
    llm_decision: bool = False


@dataclass
class SiteProfile(Record):
    domain: str = ""
    schema_version: int = SCHEMA_VERSION
    status: ProfileStatus = ProfileStatus.NEW
    attempts: int = 0
    max_attempts: int = 3
    llm_disabled: bool = False
    llm_cost_total: float = 0.0
    flagged_reason: Optional[str] = None
    verification: Verification = field(default_factory=Verification)
    layout_fingerprint: Dict[str, Any] = field(default_factory=dict)
    oracle_layout: Dict[str, Any] = field(default_factory=dict)
    navigation: Navigation = field(default_factory=Navigation)
    switchers: List[Dict[str, Any]] = field(default_factory=list)
    extraction: Dict[str, Any] = field(default_factory=dict)
    api_patterns: Dict[str, Any] = field(default_factory=dict)
    extraction_config: ExtractionConfig = field(default_factory=ExtractionConfig)
    data_source_preference: Dict[str, SourcePreference] = field(default_factory=dict)
    observations: List[Dict[str, Any]] = field(default_factory=list)
    corrections: List[Dict[str, Any]] = field(default_factory=list)
    inactive_leaderboards: List[InactiveLeaderboard] = field(default_factory=list)
    last_validation_issues: List[str] = field(default_factory=list)
    last_validation_at: Optional[str] = None
    learning_instructions: Optional[Dict[str, Any]] = None
    last_screenshot_verify_at: Optional[str] = None
    last_visual_verification: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def fingerprint(self) -> Optional[LayoutFingerprint]:
        return LayoutFingerprint.from_dict(self.layout_fingerprint)

    @property
    def confidence(self) -> float:
        return self.verification.confidence or 0


@dataclass
class AttemptResult:
    attempts: int
    max_reached: bool


@dataclass
class SwitcherValidation:
    valid: bool
    valid_count: int
    total_count: int


SWITCHER_PRESENCE_SCRIPT = """
(switchers) => {
  let found = 0;
  const html = document.body ? document.body.innerHTML.toLowerCase() : '';
  for (const s of switchers) {
    if (s.selector) {
      try {
        if (document.querySelector(s.selector)) { found++; continue; }
      } catch (e) { /* invalid selector, fall through */ }
    }
    if (s.coordinates) {
      const el = document.elementFromPoint(s.coordinates.x, s.coordinates.y);
      if (el && (el.tagName === 'BUTTON' || el.tagName === 'A' || el.closest('button, a'))) { found++; continue; }
    }
    const keyword = (s.keyword || s.name || '').toLowerCase();
    if (keyword && html.includes(keyword)) found++;
  }
  return found;
}
"""


class ProfileStore:
    """File-backed store of SiteProfile documents."""

    def __init__(self, config: TeacherConfig, clock: Callable[[], datetime] = _utcnow):
        self.config = config
        self.profiles_dir = config.profiles_dir
        self.flagged_path = config.flagged_sites_file
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def _timestamp(self) -> str:
        return self._clock().isoformat()

    def path_for(self, domain: str) -> Path:
        return self.profiles_dir / f"{sanitize_domain(domain)}.json"

    def new_profile(self, domain: str) -> SiteProfile:
        now = self._timestamp()
        return SiteProfile(
            domain=domain,
            max_attempts=self.config.max_attempts,
            created_at=now,
            updated_at=now,
        )

    # ------------------------------------------------------------------
    # Core contract
    # ------------------------------------------------------------------

    def get(self, domain: str) -> SiteProfile:
        """Load a profile, creating (and persisting) an empty one on first sight."""
        path = self.path_for(domain)
        with locked(path):
            data = read_json(path, lambda: None)
            if data is None:
                profile = self.new_profile(domain)
                write_json_atomic(path, profile.to_dict())
                logger.info(f"Created new site profile for {domain}")
                return profile
        return SiteProfile.from_dict(data)

    def save(self, profile: SiteProfile) -> SiteProfile:
        profile.updated_at = self._timestamp()
        path = self.path_for(profile.domain)
        with locked(path):
            write_json_atomic(path, profile.to_dict())
        return profile

    def _modify(
        self,
        domain: str,
        build_partial: Callable[[SiteProfile], Dict[str, Any]],
        reset: bool = False,
    ) -> SiteProfile:
        """Locked read -> partial -> merge -> write cycle."""
        path = self.path_for(domain)
        with locked(path):
            data = read_json(path, lambda: None)
            current = SiteProfile.from_dict(data) if data is not None else self.new_profile(domain)
            partial = _plain(build_partial(current) or {})

            if "status" in partial:
                new_status = parse_status(partial["status"])
                if not reset and not can_transition(current.status, new_status):
                    raise InvalidTransitionError(
                        f"{domain}: cannot move from {current.status.value} to {new_status.value} without reset"
                    )
                partial["status"] = new_status.value

            merged = deep_merge(current.to_dict(), partial)
            merged["domain"] = domain
            merged["updated_at"] = self._timestamp()
            profile = SiteProfile.from_dict(merged)
            write_json_atomic(path, profile.to_dict())
            return profile

    def update(self, domain: str, partial: Dict[str, Any], reset: bool = False) -> SiteProfile:
        """Deep-merge ``partial`` into the stored profile and stamp ``updated_at``."""
        return self._modify(domain, lambda _: partial, reset=reset)

    def set_status(self, domain: str, status: Union[str, ProfileStatus], reset: bool = False) -> SiteProfile:
        status = parse_status(status)
        logger.info(f"{domain}: status -> {status.value}")
        return self.update(domain, {"status": status}, reset=reset)

    def increment_attempts(self, domain: str) -> AttemptResult:
        def partial(profile: SiteProfile) -> Dict[str, Any]:
            changes: Dict[str, Any] = {"attempts": profile.attempts + 1}
            if can_transition(profile.status, ProfileStatus.LEARNING):
                changes["status"] = ProfileStatus.LEARNING
            return changes

        profile = self._modify(domain, partial)
        result = AttemptResult(attempts=profile.attempts, max_reached=profile.attempts >= profile.max_attempts)
        logger.info(f"{domain}: learning attempt {profile.attempts}/{profile.max_attempts}")
        return result

    def add_llm_cost(self, domain: str, cost: float) -> SiteProfile:
        return self._modify(domain, lambda p: {"llm_cost_total": p.llm_cost_total + cost})

    def flag_for_review(self, domain: str, reason: str) -> SiteProfile:
        """Disable the oracle for this site and add it to the flagged registry."""
        logger.warning(f"Flagging {domain} for manual review: {reason}")
        profile = self.update(domain, {
            "status": ProfileStatus.FLAGGED_FOR_REVIEW,
            "llm_disabled": True,
            "flagged_reason": reason,
        })

        entry = {"domain": domain, "reason": reason, "flagged_at": self._timestamp(), "resolved": False}

        def upsert(flagged: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
            others = [f for f in flagged if f.get("domain") != domain]
            return others + [entry]

        update_json(self.flagged_path, upsert, list)
        return profile

    def reset_for_relearning(self, domain: str) -> SiteProfile:
        logger.info(f"Resetting {domain} for re-learning")
        profile = self.update(domain, {
            "status": ProfileStatus.LEARNING,
            "attempts": 0,
            "llm_disabled": False,
            "flagged_reason": None,
        }, reset=True)
        update_json(self.flagged_path, lambda flagged: [f for f in flagged if f.get("domain") != domain], list)
        return profile

    # ------------------------------------------------------------------
    # Verification / oracle results
    # ------------------------------------------------------------------

    def mark_verified(self, domain: str, confidence: float) -> SiteProfile:
        now = self._timestamp()
        logger.info(f"Marking {domain} as verified with confidence {confidence}")
        return self._modify(domain, lambda p: {
            "status": ProfileStatus.VERIFIED,
            "verification": {
                "first_verified_at": p.verification.first_verified_at or now,
                "last_verified_at": now,
                "verified_by_llm": True,
                "confidence": confidence,
            },
        })

    def update_from_oracle(self, domain: str, fields: ParsedFields, verified_threshold: float) -> SiteProfile:
        """Persist whatever rules the oracle discovered; mark verified when confident enough."""
        now = self._timestamp()

        def partial(profile: SiteProfile) -> Dict[str, Any]:
            changes: Dict[str, Any] = {}
            if fields.switchers:
                changes["switchers"] = fields.switchers
            if fields.extraction:
                changes["extraction"] = fields.extraction
            if fields.api_patterns:
                changes["api_patterns"] = fields.api_patterns
            if fields.layout_fingerprint:
                changes["oracle_layout"] = {**fields.layout_fingerprint, "generated_at": now}
            if fields.extraction_config:
                changes["extraction_config"] = {
                    **fields.extraction_config,
                    "discovered_at": now,
                    "discovered_by": "llm",
                }
            if fields.observations:
                added = [{"text": text, "added_at": now} for text in fields.observations]
                changes["observations"] = (profile.observations + added)[-MAX_OBSERVATIONS:]
            return changes

        profile = self._modify(domain, partial)
        if fields.confidence >= verified_threshold:
            profile = self.mark_verified(domain, fields.confidence)
        return profile

    def record_visual_verification(self, domain: str, summary: Dict[str, Any]) -> SiteProfile:
        now = self._timestamp()
        return self.update(domain, {
            "last_screenshot_verify_at": now,
            "last_visual_verification": {**summary, "verified_at": now},
        })

    # ------------------------------------------------------------------
    # Inactive leaderboards
    # ------------------------------------------------------------------

    def mark_leaderboard_inactive(self, domain: str, name: str, reason: str) -> InactiveLeaderboard:
        now = self._timestamp()
        marked: Dict[str, InactiveLeaderboard] = {}

        def partial(profile: SiteProfile) -> Dict[str, Any]:
            entries = [copy.deepcopy(lb) for lb in profile.inactive_leaderboards]
            for lb in entries:
                if lb.name.lower() == name.lower():
                    lb.last_checked = now
                    lb.fail_count += 1
                    lb.reason = reason
                    marked["entry"] = lb
                    break
            else:
                lb = InactiveLeaderboard(name=name, reason=reason, last_checked=now, fail_count=1, first_marked_at=now)
                entries.append(lb)
                marked["entry"] = lb
            return {"inactive_leaderboards": entries}

        self._modify(domain, partial)
        logger.info(f"Marked {name} as inactive on {domain}: {reason}")
        return marked["entry"]

    def get_inactive_leaderboard(self, domain: str, name: str) -> Optional[InactiveLeaderboard]:
        for lb in self.get(domain).inactive_leaderboards:
            if lb.name.lower() == name.lower():
                return lb
        return None

    def should_retry_inactive_leaderboard(self, domain: str, name: str, cooldown: Optional[timedelta] = None) -> bool:
        inactive = self.get_inactive_leaderboard(domain, name)
        if inactive is None:
            return True
        cooldown = cooldown or timedelta(hours=self.config.inactive_retry_hours)
        last_checked = parse_time(inactive.last_checked)
        return last_checked is None or self.now() - last_checked > cooldown

    def reactivate_leaderboard(self, domain: str, name: str) -> bool:
        removed: Dict[str, bool] = {"value": False}

        def partial(profile: SiteProfile) -> Dict[str, Any]:
            kept = [lb for lb in profile.inactive_leaderboards if lb.name.lower() != name.lower()]
            removed["value"] = len(kept) < len(profile.inactive_leaderboards)
            return {"inactive_leaderboards": kept} if removed["value"] else {}

        self._modify(domain, partial)
        if removed["value"]:
            logger.info(f"Reactivated {name} on {domain}")
        return removed["value"]

    def get_inactive_leaderboards(self, domain: str) -> List[InactiveLeaderboard]:
        return self.get(domain).inactive_leaderboards

    # ------------------------------------------------------------------
    # Extraction config (learn once, run forever)
    # ------------------------------------------------------------------

    def save_extraction_config(self, domain: str, config: Dict[str, Any], discovered_by: str = "auto") -> SiteProfile:
        logger.info(f"Saving extraction config for {domain} (discovered by: {discovered_by})")
        return self.update(domain, {
            "extraction_config": {**_plain(config), "discovered_at": self._timestamp(), "discovered_by": discovered_by},
        })

    def get_extraction_config(self, domain: str) -> Optional[ExtractionConfig]:
        config = self.get(domain).extraction_config
        return config if config.method else None

    def has_extraction_config(self, domain: str) -> bool:
        return self.get_extraction_config(domain) is not None

    def update_extraction_api_endpoints(self, domain: str, endpoints: Dict[str, Optional[str]]) -> SiteProfile:
        return self.update(domain, {"extraction_config": {"api_config": {"endpoints": endpoints}}})

    def add_known_providers(self, domain: str, providers: List[str]) -> SiteProfile:
        def partial(profile: SiteProfile) -> Dict[str, Any]:
            known = list(profile.extraction_config.known_providers)
            for provider in providers:
                name = provider.lower().strip()
                if name and name not in known:
                    known.append(name)
            return {"extraction_config": {"known_providers": known}}

        return self._modify(domain, partial)

    def set_historical_config(self, domain: str, historical: Dict[str, Any]) -> SiteProfile:
        return self.update(domain, {"extraction_config": {"historical_config": historical}})

    # ------------------------------------------------------------------
    # Switchers
    # ------------------------------------------------------------------

    def save_switcher_config(self, domain: str, switchers: List[Dict[str, Any]],
                             main_leaderboard_url: Optional[str] = None,
                             navigation_method: str = "click-based") -> SiteProfile:
        now = self._timestamp()
        logger.info(f"Saving switcher config for {domain}: {len(switchers)} switchers")
        click_sequence = [
            {
                "keyword": s.get("keyword"),
                "action": "click",
                "selector": s.get("selector") or f'[data-site="{s.get("keyword")}"]',
                "coordinates": s.get("coordinates"),
            }
            for s in switchers
            if s.get("type") != "href-relative"
        ]
        return self.update(domain, {
            "switchers": switchers,
            "extraction_config": {
                "switcher_config": {
                    "discovered_at": now,
                    "main_leaderboard_url": main_leaderboard_url,
                    "navigation_method": navigation_method,
                    "all_switchers": switchers,
                },
                "click_sequence": click_sequence,
            },
        })

    def get_switcher_config(self, domain: str) -> Optional[Dict[str, Any]]:
        profile = self.get(domain)
        config = profile.extraction_config.switcher_config
        if config and config.get("all_switchers"):
            return config
        if profile.switchers:
            return {
                "discovered_at": profile.updated_at,
                "main_leaderboard_url": profile.navigation.leaderboard_path,
                "navigation_method": "click-based",
                "all_switchers": profile.switchers,
            }
        return None

    def is_switcher_config_valid(self, config: Optional[Dict[str, Any]], max_age_days: Optional[int] = None) -> bool:
        if not config or not config.get("all_switchers"):
            return False
        discovered = parse_time(config.get("discovered_at"))
        if discovered is None:
            return False
        max_age = timedelta(days=max_age_days if max_age_days is not None else self.config.fingerprint_max_age_days)
        return self.now() - discovered <= max_age

    async def validate_saved_switchers(self, page: PageHandle, switchers: List[Dict[str, Any]]) -> SwitcherValidation:
        """Check that at least 70% of saved switchers are still on the page."""
        if not switchers:
            return SwitcherValidation(valid=False, valid_count=0, total_count=0)
        found = int(await page.evaluate(SWITCHER_PRESENCE_SCRIPT, switchers) or 0)
        return SwitcherValidation(
            valid=found / len(switchers) >= SWITCHER_VALID_RATIO,
            valid_count=found,
            total_count=len(switchers),
        )

    # ------------------------------------------------------------------
    # Data source preference
    # ------------------------------------------------------------------

    def record_source_preference(self, domain: str, leaderboard: str, preference: SourcePreference) -> SiteProfile:
        return self.update(domain, {"data_source_preference": {leaderboard.lower(): preference}})

    def get_source_preference(self, domain: str, leaderboard: str) -> Optional[SourcePreference]:
        return self.get(domain).data_source_preference.get(leaderboard.lower())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def all_profiles(self) -> List[SiteProfile]:
        if not self.profiles_dir.exists():
            return []
        profiles = []
        for path in sorted(self.profiles_dir.glob("*.json")):
            data = read_json(path, lambda: None)
            if data is not None:
                profiles.append(SiteProfile.from_dict(data))
        return profiles

    def profiles_by_status(self, status: Union[str, ProfileStatus]) -> List[SiteProfile]:
        status = parse_status(status)
        return [p for p in self.all_profiles() if p.status == status]

    def flagged_sites(self, include_resolved: bool = False) -> List[Dict[str, Any]]:
        flagged = read_json(self.flagged_path, list)
        if include_resolved:
            return flagged
        return [f for f in flagged if not f.get("resolved")]
