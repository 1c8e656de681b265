"""
Data-quality checks for scraped leaderboards.

Flags duplicated rows, stale (unchanged) scrapes, implausible prize and wager
values and inverted orderings. Nothing here is fatal: the resulting
``ValidationReport`` tells the orchestrator whether the oracle should look
(``requires_verification``) and whether the stored rules are likely wrong
(``requires_learning``).

Usage:
    detector = AnomalyDetector()
    report = detector.validate_extraction_results(result, previous_result)
    if report.requires_learning:
        instructions = detector.generate_learning_instructions(report, domain)
"""

import json
import logging
import math
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

_NON_NUMERIC = re.compile(r"[^0-9.\-]")
_WHITESPACE = re.compile(r"\s+")
_CENSOR_RUN = re.compile(r"\*+")

UNRANKED = 999


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class AnomalyThresholds:
    max_reasonable_prize: float = 100000
    min_expected_top_prize: float = 10
    max_reasonable_wager: float = 50000000
    min_entries_expected: int = 3
    duplicate_similarity_threshold: float = 0.95
    swap_prize_floor: float = 10000


@dataclass
class Anomaly:
    code: str
    severity: Severity
    details: str
    suggested_fix: Optional[str] = None
    rank: Optional[int] = None
    value: Optional[float] = None
    threshold: Optional[float] = None

    @property
    def type(self) -> str:
        return self.code


@dataclass
class AnomalyReport:
    has_anomalies: bool
    anomalies: List[Anomaly] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    summary: str = ""

    def high_severity(self) -> List[Anomaly]:
        return [a for a in self.anomalies if a.severity == Severity.HIGH]


@dataclass
class DuplicatePair:
    original_index: int
    duplicate_index: int
    type: str
    entry: Dict[str, Any] = field(default_factory=dict)
    details: str = ""


@dataclass
class DuplicateReport:
    has_duplicates: bool
    duplicates: List[DuplicatePair] = field(default_factory=list)
    details: str = ""


@dataclass
class IdenticalMatch:
    leaderboard: str
    similarity: float
    issue: str


@dataclass
class IdenticalReport:
    has_identical_leaderboards: bool
    matches: List[IdenticalMatch] = field(default_factory=list)
    details: str = ""


@dataclass
class ValidationChecks:
    duplicates: Dict[str, DuplicateReport] = field(default_factory=dict)
    prize_anomalies: Dict[str, AnomalyReport] = field(default_factory=dict)
    wager_anomalies: Dict[str, AnomalyReport] = field(default_factory=dict)
    identical_to_previous: Optional[IdenticalReport] = None
    entry_count: Dict[str, int] = field(default_factory=dict)


@dataclass
class ValidationReport:
    valid: bool = True
    timestamp: str = ""
    checks: ValidationChecks = field(default_factory=ValidationChecks)
    issues: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    requires_verification: bool = False
    requires_learning: bool = False

    def has_duplicates(self) -> bool:
        return any(r.has_duplicates for r in self.checks.duplicates.values())


@dataclass
class LearningInstructions:
    domain: str
    timestamp: str
    corrections: List[Dict[str, Any]] = field(default_factory=list)
    verification_needed: List[Dict[str, Any]] = field(default_factory=list)
    scraper_adjustments: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _first(entry: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = entry.get(key)
        if value not in (None, "", 0):
            return value
    return None


def normalize_username(username: Any) -> str:
    text = _WHITESPACE.sub("", str(username or "").lower())
    return _CENSOR_RUN.sub("*", text)


def normalize_number(value: Any) -> float:
    """Parse ``$1,234.50``-style values; anything unparseable is 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return round(float(value), 2) if math.isfinite(value) else 0.0
    cleaned = _NON_NUMERIC.sub("", str(value))
    try:
        return round(float(cleaned), 2)
    except ValueError:
        return 0.0


def entry_rank(entry: Dict[str, Any]) -> Optional[int]:
    rank = _first(entry, "rank", "position")
    if rank is None:
        return None
    try:
        return int(rank)
    except (TypeError, ValueError):
        return None


def entry_prize(entry: Dict[str, Any]) -> float:
    return normalize_number(_first(entry, "prize", "reward"))


def entry_wager(entry: Dict[str, Any]) -> float:
    return normalize_number(_first(entry, "wager", "wagered"))


def entry_fingerprint(entry: Dict[str, Any]) -> str:
    return json.dumps(
        {
            "username": normalize_username(_first(entry, "username", "name") or ""),
            "wager": entry_wager(entry),
            "prize": entry_prize(entry),
            "rank": entry_rank(entry) or 0,
        },
        sort_keys=True,
    )


def leaderboards_of(result: Any) -> List[Dict[str, Any]]:
    """Leaderboard dicts from either ``{"results": [...]}`` or a bare list."""
    if isinstance(result, dict):
        result = result.get("results")
    if not isinstance(result, list):
        return []
    return [lb for lb in result if isinstance(lb, dict)]


def leaderboard_name(lb: Dict[str, Any]) -> str:
    return str(lb.get("name") or lb.get("leaderboard") or "unknown")


def leaderboard_entries(lb: Dict[str, Any]) -> List[Dict[str, Any]]:
    entries = lb.get("entries")
    if entries is None:
        entries = lb.get("data")
    return [e for e in entries or [] if isinstance(e, dict)]


def _sorted_by_rank(entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(entries, key=lambda e: entry_rank(e) or UNRANKED)


def _count_increases(values: Iterable[float]) -> int:
    increases = 0
    previous = None
    for value in values:
        if previous is not None and value > previous and value > 0:
            increases += 1
        previous = value
    return increases


def deduplicate_entries(entries: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], int]:
    """Drop repeated (username, rank) rows, keeping the first. Returns (entries, removed)."""
    seen = set()
    kept = []
    for entry in entries:
        key = (str(_first(entry, "username", "name") or "").lower(), entry_rank(entry))
        if key in seen:
            continue
        seen.add(key)
        kept.append(entry)
    return kept, len(entries) - len(kept)


class AnomalyDetector:
    def __init__(self, thresholds: Optional[AnomalyThresholds] = None):
        self.thresholds = thresholds or AnomalyThresholds()

    def detect_duplicate_entries(self, entries: List[Dict[str, Any]]) -> DuplicateReport:
        if not entries or len(entries) < 2:
            return DuplicateReport(has_duplicates=False, details="No duplicates detected")

        duplicates: List[DuplicatePair] = []
        flagged = set()
        seen: Dict[str, int] = {}
        for index, entry in enumerate(entries):
            fp = entry_fingerprint(entry)
            if fp in seen:
                duplicates.append(DuplicatePair(
                    original_index=seen[fp],
                    duplicate_index=index,
                    type="exact_duplicate",
                    entry=entry,
                ))
                flagged.add(index)
            else:
                seen[fp] = index

        by_rank: Dict[int, int] = {}
        for index, entry in enumerate(entries):
            rank = entry_rank(entry)
            if rank is None or index in flagged:
                continue
            if rank in by_rank:
                duplicates.append(DuplicatePair(
                    original_index=by_rank[rank],
                    duplicate_index=index,
                    type="duplicate_rank",
                    entry=entry,
                    details=f"Rank {rank} appears multiple times",
                ))
            else:
                by_rank[rank] = index

        return DuplicateReport(
            has_duplicates=bool(duplicates),
            duplicates=duplicates,
            details=f"Found {len(duplicates)} duplicate entries" if duplicates else "No duplicates detected",
        )

    def calculate_entry_similarity(self, entries_a: List[Dict[str, Any]], entries_b: List[Dict[str, Any]]) -> float:
        """Shared fingerprints over the union of fingerprints (0..1)."""
        if not entries_a or not entries_b:
            return 0.0
        fps_a = {entry_fingerprint(e) for e in entries_a}
        fps_b = {entry_fingerprint(e) for e in entries_b}
        return len(fps_a & fps_b) / len(fps_a | fps_b)

    def detect_identical_leaderboards(self, current: Any, previous: Any) -> IdenticalReport:
        matches: List[IdenticalMatch] = []
        previous_boards = leaderboards_of(previous)
        for cur in leaderboards_of(current):
            for prev in previous_boards:
                if leaderboard_name(cur) != leaderboard_name(prev):
                    continue
                similarity = self.calculate_entry_similarity(leaderboard_entries(cur), leaderboard_entries(prev))
                if similarity >= self.thresholds.duplicate_similarity_threshold:
                    matches.append(IdenticalMatch(
                        leaderboard=leaderboard_name(cur),
                        similarity=similarity,
                        issue=("EXACT_MATCH: data is identical, scraper might not be refreshing"
                               if similarity == 1.0 else "HIGH_SIMILARITY: data is suspiciously similar"),
                    ))
        return IdenticalReport(
            has_identical_leaderboards=bool(matches),
            matches=matches,
            details=(f"{len(matches)} leaderboard(s) have identical/similar data to previous scrape"
                     if matches else "No identical leaderboards detected"),
        )

    def detect_prize_anomalies(self, entries: List[Dict[str, Any]], name: str = "unknown") -> AnomalyReport:
        if not entries:
            return AnomalyReport(has_anomalies=False, summary="No entries")

        t = self.thresholds
        anomalies: List[Anomaly] = []
        suggestions: List[str] = []
        ordered = _sorted_by_rank(entries)

        for index, entry in enumerate(ordered):
            prize = entry_prize(entry)
            wager = entry_wager(entry)
            rank = entry_rank(entry) or index + 1

            if prize > t.max_reasonable_prize:
                anomalies.append(Anomaly(
                    code="ABNORMAL_PRIZE_HIGH",
                    severity=Severity.HIGH,
                    details=f"Prize ${prize:,.2f} for rank {rank} is unusually high (>{t.max_reasonable_prize:,.0f})",
                    suggested_fix="Verify the prize value on the page",
                    rank=rank,
                    value=prize,
                    threshold=t.max_reasonable_prize,
                ))
                suggestions.append(f"Verify prize for rank {rank} on {name} - might be parsing error")

            if wager > 0 and prize > wager * 2 and prize > t.swap_prize_floor:
                anomalies.append(Anomaly(
                    code="PRIZE_WAGER_SWAP",
                    severity=Severity.MEDIUM,
                    details=f"Prize (${prize:,.2f}) is much larger than wager (${wager:,.2f}) - possible swap",
                    suggested_fix="Swap prize and wager columns",
                    rank=rank,
                    value=prize,
                ))
                suggestions.append(f"Check if prize and wager columns are swapped for {name}")

            if rank == 1 and 0 < prize < t.min_expected_top_prize:
                anomalies.append(Anomaly(
                    code="ABNORMAL_PRIZE_LOW",
                    severity=Severity.MEDIUM,
                    details=f"First place prize ${prize:,.2f} seems too low",
                    rank=rank,
                    value=prize,
                    threshold=t.min_expected_top_prize,
                ))

        if _count_increases(entry_prize(e) for e in ordered) > len(ordered) / 2:
            anomalies.append(Anomaly(
                code="INVERTED_PRIZE_ORDER",
                severity=Severity.HIGH,
                details="Prize values increase with rank - data might be inverted or misaligned",
                suggested_fix="Reverse entry order",
            ))
            suggestions.append(f"Prize distribution is inverted for {name} - verify data structure")

        return AnomalyReport(
            has_anomalies=bool(anomalies),
            anomalies=anomalies,
            suggestions=suggestions,
            summary=(f"Found {len(anomalies)} anomaly/anomalies in prize data"
                     if anomalies else "Prize data looks normal"),
        )

    def detect_wager_anomalies(self, entries: List[Dict[str, Any]]) -> AnomalyReport:
        if not entries:
            return AnomalyReport(has_anomalies=False, summary="No entries")

        t = self.thresholds
        anomalies: List[Anomaly] = []
        wagers = [w for w in (entry_wager(e) for e in entries) if w > 0]

        if not wagers:
            anomalies.append(Anomaly(
                code="NO_WAGER_DATA",
                severity=Severity.HIGH,
                details="No valid wager data found in any entry",
            ))
            return AnomalyReport(has_anomalies=True, anomalies=anomalies, summary="No wager data")

        max_wager = max(wagers)
        min_wager = min(wagers)
        avg_wager = sum(wagers) / len(wagers)

        if max_wager > t.max_reasonable_wager:
            anomalies.append(Anomaly(
                code="ABNORMAL_WAGER_HIGH",
                severity=Severity.MEDIUM,
                details=f"Maximum wager ${max_wager:,.2f} exceeds threshold",
                value=max_wager,
                threshold=t.max_reasonable_wager,
            ))

        if max_wager == min_wager and len(entries) > 1:
            anomalies.append(Anomaly(
                code="IDENTICAL_WAGERS",
                severity=Severity.HIGH,
                details="All entries have identical wager values - likely parsing error",
                value=max_wager,
            ))

        ordered = _sorted_by_rank(entries)
        if _count_increases(entry_wager(e) for e in ordered) > len(ordered) / 2:
            anomalies.append(Anomaly(
                code="INVERTED_WAGER_ORDER",
                severity=Severity.HIGH,
                details="Wager values increase with rank - data order might be wrong",
                suggested_fix="Reverse entry order",
            ))

        return AnomalyReport(
            has_anomalies=bool(anomalies),
            anomalies=anomalies,
            summary=f"Wager analysis: avg=${avg_wager:,.2f}, max=${max_wager:,.2f}, min=${min_wager:,.2f}",
        )

    def validate_extraction_results(self, result: Any, previous: Any = None) -> ValidationReport:
        report = ValidationReport(timestamp=datetime.now(timezone.utc).isoformat())
        boards = leaderboards_of(result)
        if not boards:
            report.valid = False
            report.issues.append("No results to validate")
            return report

        for lb in boards:
            name = leaderboard_name(lb)
            entries = leaderboard_entries(lb)
            report.checks.entry_count[name] = len(entries)

            if len(entries) < self.thresholds.min_entries_expected:
                report.warnings.append(
                    f"{name}: Only {len(entries)} entries (expected >={self.thresholds.min_entries_expected})"
                )

            duplicates = self.detect_duplicate_entries(entries)
            if duplicates.has_duplicates:
                report.checks.duplicates[name] = duplicates
                report.issues.append(f"{name}: {duplicates.details}")
                report.requires_verification = True

            prizes = self.detect_prize_anomalies(entries, name)
            if prizes.has_anomalies:
                report.checks.prize_anomalies[name] = prizes
                if prizes.high_severity():
                    report.issues.append(f"{name}: {prizes.summary}")
                    report.requires_verification = True
                else:
                    report.warnings.append(f"{name}: {prizes.summary}")
                report.suggestions.extend(prizes.suggestions)

            wagers = self.detect_wager_anomalies(entries)
            if wagers.has_anomalies:
                report.checks.wager_anomalies[name] = wagers
                if wagers.high_severity():
                    report.issues.append(f"{name}: Wager data issues detected")
                    report.requires_learning = True

        if previous is not None:
            identical = self.detect_identical_leaderboards(boards, previous)
            if identical.has_identical_leaderboards:
                report.checks.identical_to_previous = identical
                report.warnings.append(identical.details)
                report.requires_verification = True

        report.valid = not report.issues
        if report.issues:
            logger.warning(f"Validation found {len(report.issues)} issue(s): {'; '.join(report.issues)}")
        elif report.warnings:
            logger.info(f"Validation warnings: {len(report.warnings)}")
        return report

    def generate_learning_instructions(self, report: ValidationReport, domain: str) -> Optional[LearningInstructions]:
        """Turn a validation report into actions for the next automated attempt."""
        if not report.requires_learning and not report.requires_verification:
            return None

        instructions = LearningInstructions(domain=domain, timestamp=datetime.now(timezone.utc).isoformat())
        adjustments = set()

        for name, prizes in report.checks.prize_anomalies.items():
            for anomaly in prizes.anomalies:
                if anomaly.code == "PRIZE_WAGER_SWAP" and "SWAP_PRIZE_WAGER_COLUMNS" not in adjustments:
                    adjustments.add("SWAP_PRIZE_WAGER_COLUMNS")
                    instructions.scraper_adjustments.append({
                        "type": "column_swap_check",
                        "leaderboard": name,
                        "description": "Prize and wager columns may be swapped - verify column order",
                        "action": "SWAP_PRIZE_WAGER_COLUMNS",
                    })
                elif anomaly.code == "INVERTED_PRIZE_ORDER" and "REVERSE_ENTRY_ORDER" not in adjustments:
                    adjustments.add("REVERSE_ENTRY_ORDER")
                    instructions.scraper_adjustments.append({
                        "type": "data_order_check",
                        "leaderboard": name,
                        "description": "Data appears inverted - check if parsing order is correct",
                        "action": "REVERSE_ENTRY_ORDER",
                    })
                elif anomaly.code == "ABNORMAL_PRIZE_HIGH":
                    instructions.verification_needed.append({
                        "type": "verify_prize_value",
                        "leaderboard": name,
                        "rank": anomaly.rank,
                        "current_value": anomaly.value,
                        "threshold": anomaly.threshold,
                        "action": "VISIT_PAGE_AND_VERIFY",
                    })

        for name, duplicates in report.checks.duplicates.items():
            instructions.corrections.append({
                "type": "remove_duplicates",
                "leaderboard": name,
                "duplicates": [
                    {"original_index": d.original_index, "duplicate_index": d.duplicate_index, "type": d.type}
                    for d in duplicates.duplicates
                ],
                "action": "DEDUPLICATE_ENTRIES",
            })

        identical = report.checks.identical_to_previous
        if identical and identical.has_identical_leaderboards:
            instructions.verification_needed.append({
                "type": "verify_data_refresh",
                "matches": [asdict(m) for m in identical.matches],
                "action": "VERIFY_DATA_IS_CURRENT",
            })

        return instructions
