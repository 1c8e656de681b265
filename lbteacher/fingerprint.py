"""
Layout fingerprinting.

A fingerprint is a small structural summary of a rendered leaderboard page
(switchers found, podium/table presence, entry count, large structural
containers) plus a 16-hex-digit digest of the parts that matter. When a
verified site's fingerprint changes significantly the site is sent back for
re-learning.

Usage:
    fingerprinter = LayoutFingerprinter()
    current = await fingerprinter.generate(page, keywords)
    comparison = fingerprinter.compare(stored, current)
    if fingerprinter.should_reverify(comparison):
        ...
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import Any, Dict, List, Optional

from .page import PageHandle

logger = logging.getLogger(__name__)

HASH_LENGTH = 16
MAX_STRUCTURAL_ELEMENTS = 10

# Switcher-sized clickables: bigger than an icon, smaller than a container
SWITCHER_MIN_SIZE = 20
SWITCHER_MAX_WIDTH = 400

LAYOUT_PODIUM_TABLE = "podium-table"
LAYOUT_PODIUM_ONLY = "podium-only"
LAYOUT_TABLE_ONLY = "table-only"
LAYOUT_LIST = "list"
LAYOUT_UNKNOWN = "unknown"

FINGERPRINT_SCRIPT = """
(args) => {
  const keywords = args.keywords.map(k => k.toLowerCase());
  const out = {
    switcherCount: 0, switcherNames: [], hasPodium: false, hasTable: false,
    entryCount: 0, structuralElements: []
  };

  const clickables = document.querySelectorAll(
    'button, [role="button"], [tabindex="0"], a, [class*="tab"], [class*="switch"]');
  for (const el of clickables) {
    const text = (el.textContent || '').toLowerCase();
    const html = el.outerHTML.toLowerCase();
    for (const keyword of keywords) {
      if (!text.includes(keyword) && !html.includes(keyword)) continue;
      const rect = el.getBoundingClientRect();
      if (rect.width > args.minSize && rect.height > args.minSize && rect.width < args.maxWidth) {
        out.switcherCount++;
        if (!out.switcherNames.includes(keyword)) out.switcherNames.push(keyword);
        break;
      }
    }
  }

  const podium = ['[class*="podium"]', '[class*="winner"]', '[class*="top-3"]', '[class*="top3"]',
                  '[class*="first-place"]', '[class*="card"][class*="rank"]'];
  out.hasPodium = podium.some(sel => {
    const n = document.querySelectorAll(sel).length;
    return n >= 2 && n <= 4;
  });

  const tables = ['table[class*="leaderboard"]', 'table[class*="ranking"]', '[class*="leaderboard"] table',
                  '[class*="entry-list"]', '[class*="entries"]'];
  out.hasTable = tables.some(sel => document.querySelectorAll(sel).length > 0);

  const entries = ['[class*="entry"]', '[class*="row"][class*="leader"]', '[class*="player"]', 'tr[class*="rank"]'];
  for (const sel of entries) {
    const n = document.querySelectorAll(sel).length;
    if (n >= 3) { out.entryCount = n; break; }
  }

  const structural = ['[class*="leaderboard"]', '[class*="container"]', '[class*="wrapper"]', 'main', '[role="main"]'];
  for (const sel of structural) {
    for (const el of document.querySelectorAll(sel)) {
      const rect = el.getBoundingClientRect();
      if (rect.width > 200 && rect.height > 100) {
        out.structuralElements.push({
          tag: el.tagName.toLowerCase(),
          classes: (typeof el.className === 'string' ? el.className : '').split(' ').slice(0, 3).join(' '),
          width: Math.round(rect.width),
          height: Math.round(rect.height)
        });
      }
    }
  }
  return out;
}
"""


class Significance(IntEnum):
    NONE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass
class LayoutFingerprint:
    hash: str
    switcher_count: int = 0
    switcher_names: List[str] = field(default_factory=list)
    layout_type: str = LAYOUT_UNKNOWN
    entry_count: int = 0
    has_podium: bool = False
    has_table: bool = False
    structural_elements: List[Dict[str, Any]] = field(default_factory=list)
    generated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hash": self.hash,
            "switcher_count": self.switcher_count,
            "switcher_names": list(self.switcher_names),
            "layout_type": self.layout_type,
            "entry_count": self.entry_count,
            "has_podium": self.has_podium,
            "has_table": self.has_table,
            "structural_elements": list(self.structural_elements),
            "generated_at": self.generated_at,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["LayoutFingerprint"]:
        if not data or not data.get("hash"):
            return None
        return cls(
            hash=data["hash"],
            switcher_count=int(data.get("switcher_count") or 0),
            switcher_names=list(data.get("switcher_names") or []),
            layout_type=data.get("layout_type") or LAYOUT_UNKNOWN,
            entry_count=int(data.get("entry_count") or 0),
            has_podium=bool(data.get("has_podium")),
            has_table=bool(data.get("has_table")),
            structural_elements=list(data.get("structural_elements") or []),
            generated_at=data.get("generated_at"),
        )


@dataclass
class LayoutChange:
    type: str
    significance: Significance
    old: Any = None
    new: Any = None


@dataclass
class LayoutComparison:
    changed: bool
    significance: Significance = Significance.NONE
    changes: List[LayoutChange] = field(default_factory=list)
    reason: str = ""

    def has_change(self, change_type: str) -> bool:
        return any(c.type == change_type for c in self.changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "changed": self.changed,
            "significance": self.significance.label,
            "reason": self.reason,
            "changes": [
                {"type": c.type, "significance": c.significance.label, "old": c.old, "new": c.new}
                for c in self.changes
            ],
        }


def classify_layout(has_podium: bool, has_table: bool, entry_count: int) -> str:
    if has_podium and has_table:
        return LAYOUT_PODIUM_TABLE
    if has_podium:
        return LAYOUT_PODIUM_ONLY
    if has_table:
        return LAYOUT_TABLE_ONLY
    if entry_count > 0:
        return LAYOUT_LIST
    return LAYOUT_UNKNOWN


def fingerprint_hash(switcher_count: int, switcher_names: List[str], layout_type: str,
                     structural_elements: List[Dict[str, Any]]) -> str:
    canonical = json.dumps(
        {
            "switcher_count": switcher_count,
            "switcher_names": sorted(switcher_names),
            "layout_type": layout_type,
            "structural_elements": structural_elements[:MAX_STRUCTURAL_ELEMENTS],
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:HASH_LENGTH]


def build_fingerprint(observed: Dict[str, Any], now: Optional[datetime] = None) -> LayoutFingerprint:
    """Turn raw page observations into a hashed LayoutFingerprint."""
    switcher_names = [str(n) for n in observed.get("switcherNames") or []]
    switcher_count = int(observed.get("switcherCount") or 0)
    has_podium = bool(observed.get("hasPodium"))
    has_table = bool(observed.get("hasTable"))
    entry_count = int(observed.get("entryCount") or 0)
    structural = list(observed.get("structuralElements") or [])[:MAX_STRUCTURAL_ELEMENTS]
    layout_type = classify_layout(has_podium, has_table, entry_count)

    return LayoutFingerprint(
        hash=fingerprint_hash(switcher_count, switcher_names, layout_type, structural),
        switcher_count=switcher_count,
        switcher_names=switcher_names,
        layout_type=layout_type,
        entry_count=entry_count,
        has_podium=has_podium,
        has_table=has_table,
        structural_elements=structural,
        generated_at=(now or datetime.now(timezone.utc)).isoformat(),
    )


def _name_signal(change_type: str, names: List[str]) -> LayoutChange:
    significance = Significance.HIGH if len(names) >= 2 else Significance.MEDIUM
    return LayoutChange(type=change_type, significance=significance, new=sorted(names))


def is_stale(fingerprint: Optional[LayoutFingerprint], max_age_days: int, now: Optional[datetime] = None) -> bool:
    """True when the fingerprint is missing, undated or older than ``max_age_days``."""
    if fingerprint is None or not fingerprint.generated_at:
        return True
    try:
        generated = datetime.fromisoformat(fingerprint.generated_at)
    except ValueError:
        return True
    if generated.tzinfo is None:
        generated = generated.replace(tzinfo=timezone.utc)
    return (now or datetime.now(timezone.utc)) - generated > timedelta(days=max_age_days)


class LayoutFingerprinter:
    def __init__(self, min_size: int = SWITCHER_MIN_SIZE, max_width: int = SWITCHER_MAX_WIDTH):
        self.min_size = min_size
        self.max_width = max_width

    async def generate(self, page: PageHandle, keywords: List[str]) -> LayoutFingerprint:
        observed = await page.evaluate(
            FINGERPRINT_SCRIPT,
            {"keywords": list(keywords), "minSize": self.min_size, "maxWidth": self.max_width},
        )
        fingerprint = build_fingerprint(observed or {})
        logger.info(
            f"Layout fingerprint {fingerprint.hash}: {fingerprint.layout_type}, "
            f"{fingerprint.switcher_count} switchers, {fingerprint.entry_count} entries"
        )
        return fingerprint

    def compare(self, stored: Optional[LayoutFingerprint], current: Optional[LayoutFingerprint]) -> LayoutComparison:
        if stored is None or current is None:
            return LayoutComparison(changed=False, reason="missing_fingerprint")
        if stored.hash == current.hash:
            return LayoutComparison(changed=False, reason="identical")

        changes: List[LayoutChange] = []

        delta = abs(stored.switcher_count - current.switcher_count)
        if delta:
            changes.append(LayoutChange(
                type="switcher_count",
                significance=Significance.HIGH if delta >= 2 else Significance.LOW,
                old=stored.switcher_count,
                new=current.switcher_count,
            ))

        if stored.layout_type != current.layout_type:
            changes.append(LayoutChange(
                type="layout_type",
                significance=Significance.HIGH,
                old=stored.layout_type,
                new=current.layout_type,
            ))

        old_names = set(stored.switcher_names)
        new_names = set(current.switcher_names)
        appeared = list(new_names - old_names)
        disappeared = list(old_names - new_names)
        if appeared:
            changes.append(_name_signal("new_switchers", appeared))
        if disappeared:
            changes.append(_name_signal("removed_switchers", disappeared))

        if not changes:
            return LayoutComparison(changed=False, reason="structural_noise")

        return LayoutComparison(
            changed=True,
            significance=max(c.significance for c in changes),
            changes=changes,
            reason=", ".join(c.type for c in changes),
        )

    def should_reverify(self, comparison: LayoutComparison) -> bool:
        if not comparison.changed:
            return False
        if comparison.significance == Significance.HIGH:
            return True
        if comparison.has_change("layout_type"):
            return True
        return any(c.type == "new_switchers" and len(c.new or []) >= 2 for c in comparison.changes)
