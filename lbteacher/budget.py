"""
Budget Ledger - oracle spend tracking and gating.

One usage document per calendar month. Every oracle call must be preceded
by an allowed ``check_budget`` and followed by ``track_usage``.

Usage:
    ledger = BudgetLedger(config)
    check = ledger.check_budget("example.com")
    if check.allowed:
        ...
        ledger.track_usage("example.com", 1200, 350, get_pricing(model))
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import TeacherConfig
from .llm_config import DEFAULT_PRICING, ModelPricing
from .storage import locked, read_json, update_json, write_json_atomic

logger = logging.getLogger(__name__)

MONTHLY_BUDGET_EXCEEDED = "monthly_budget_exceeded"
DAILY_LIMIT_EXCEEDED = "daily_limit_exceeded"
SITE_LIMIT_EXCEEDED = "site_limit_exceeded"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BudgetCheck:
    allowed: bool
    reason: Optional[str] = None
    remaining_budget: float = 0.0
    today_calls: int = 0
    site_calls: int = 0


@dataclass
class UsageRecord:
    cost: float
    total_cost: float
    call_count: int
    today_calls: int


@dataclass
class UsageLedger:
    """Persisted usage for one calendar month"""
    current_month: str
    total_tokens_input: int = 0
    total_tokens_output: int = 0
    total_cost_usd: float = 0.0
    call_count: int = 0
    calls_by_day: Dict[str, int] = field(default_factory=dict)
    calls_by_site: Dict[str, int] = field(default_factory=dict)
    last_updated: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_month": self.current_month,
            "total_tokens_input": self.total_tokens_input,
            "total_tokens_output": self.total_tokens_output,
            "total_cost_usd": self.total_cost_usd,
            "call_count": self.call_count,
            "calls_by_day": dict(self.calls_by_day),
            "calls_by_site": dict(self.calls_by_site),
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageLedger":
        return cls(
            current_month=str(data.get("current_month", "")),
            total_tokens_input=int(data.get("total_tokens_input", 0)),
            total_tokens_output=int(data.get("total_tokens_output", 0)),
            total_cost_usd=float(data.get("total_cost_usd", 0.0)),
            call_count=int(data.get("call_count", 0)),
            calls_by_day=dict(data.get("calls_by_day") or {}),
            calls_by_site=dict(data.get("calls_by_site") or {}),
            last_updated=data.get("last_updated"),
        )


class BudgetLedger:
    """File-backed usage ledger shared by all worker processes."""

    def __init__(
        self,
        config: TeacherConfig,
        path: Optional[Path] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config
        self.path = Path(path) if path else config.usage_file
        self._clock = clock

    def _month(self) -> str:
        return self._clock().strftime("%Y-%m")

    def _today(self) -> str:
        return self._clock().strftime("%Y-%m-%d")

    def _fresh(self) -> Dict[str, Any]:
        return UsageLedger(current_month=self._month()).to_dict()

    def _current(self, data: Dict[str, Any]) -> UsageLedger:
        ledger = UsageLedger.from_dict(data)
        if ledger.current_month != self._month():
            if ledger.current_month:
                logger.info(f"New month {self._month()}; resetting usage ledger from {ledger.current_month}")
            return UsageLedger(current_month=self._month())
        return ledger

    def load(self) -> UsageLedger:
        """Current month's ledger (fresh when the stored month has rolled over)."""
        return self._current(read_json(self.path, self._fresh))

    def check_budget(self, domain: Optional[str] = None) -> BudgetCheck:
        """Evaluate monthly, daily and per-site ceilings, in that order."""
        ledger = self.load()
        today_calls = ledger.calls_by_day.get(self._today(), 0)
        site_calls = ledger.calls_by_site.get(domain, 0) if domain else 0
        remaining = max(0.0, self.config.monthly_budget_usd - ledger.total_cost_usd)

        def result(allowed: bool, reason: Optional[str] = None) -> BudgetCheck:
            return BudgetCheck(
                allowed=allowed,
                reason=reason,
                remaining_budget=remaining,
                today_calls=today_calls,
                site_calls=site_calls,
            )

        if ledger.total_cost_usd >= self.config.monthly_budget_usd:
            logger.warning(
                f"Monthly budget exceeded: ${ledger.total_cost_usd:.2f} >= ${self.config.monthly_budget_usd:.2f}"
            )
            return result(False, MONTHLY_BUDGET_EXCEEDED)

        if today_calls >= self.config.max_calls_per_day:
            logger.warning(f"Daily call limit reached: {today_calls}/{self.config.max_calls_per_day}")
            return result(False, DAILY_LIMIT_EXCEEDED)

        if domain and site_calls >= self.config.max_calls_per_site:
            logger.warning(f"Site call limit reached for {domain}: {site_calls}/{self.config.max_calls_per_site}")
            return result(False, SITE_LIMIT_EXCEEDED)

        return result(True)

    def track_usage(
        self,
        domain: str,
        input_tokens: int,
        output_tokens: int,
        pricing: ModelPricing = DEFAULT_PRICING,
    ) -> UsageRecord:
        """Record one successful oracle call and return the running totals."""
        cost = pricing.cost(input_tokens, output_tokens)
        today = self._today()
        record: Dict[str, UsageRecord] = {}

        def mutate(data: Dict[str, Any]) -> Dict[str, Any]:
            ledger = self._current(data)
            ledger.total_tokens_input += input_tokens
            ledger.total_tokens_output += output_tokens
            ledger.total_cost_usd += cost
            ledger.call_count += 1
            ledger.calls_by_day[today] = ledger.calls_by_day.get(today, 0) + 1
            if domain:
                ledger.calls_by_site[domain] = ledger.calls_by_site.get(domain, 0) + 1
            ledger.last_updated = self._clock().isoformat()
            record["value"] = UsageRecord(
                cost=cost,
                total_cost=ledger.total_cost_usd,
                call_count=ledger.call_count,
                today_calls=ledger.calls_by_day[today],
            )
            return ledger.to_dict()

        update_json(self.path, mutate, self._fresh)
        usage = record["value"]
        logger.info(
            f"Oracle usage for {domain}: {input_tokens} in / {output_tokens} out, "
            f"${cost:.4f} (month total ${usage.total_cost:.2f})"
        )
        return usage

    def usage_summary(self) -> Dict[str, Any]:
        ledger = self.load()
        budget = self.config.monthly_budget_usd
        top_sites: List[Dict[str, Any]] = [
            {"domain": domain, "calls": calls}
            for domain, calls in sorted(ledger.calls_by_site.items(), key=lambda kv: kv[1], reverse=True)[:5]
        ]
        return {
            "month": ledger.current_month,
            "total_calls": ledger.call_count,
            "total_tokens_input": ledger.total_tokens_input,
            "total_tokens_output": ledger.total_tokens_output,
            "total_cost_usd": round(ledger.total_cost_usd, 4),
            "budget_usd": budget,
            "budget_remaining_usd": round(max(0.0, budget - ledger.total_cost_usd), 4),
            "budget_used_percent": round(ledger.total_cost_usd / budget * 100, 1) if budget else 0.0,
            "today_calls": ledger.calls_by_day.get(self._today(), 0),
            "top_sites": top_sites,
        }

    def reset(self) -> None:
        with locked(self.path):
            write_json_atomic(self.path, self._fresh())
        logger.info("Usage ledger reset")
