"""
Teacher Orchestrator.

Decides whether a site needs the oracle, runs the two-phase learning
protocol and writes what was learned back to the site profile.

    Phase 1  one oracle call with a screenshot and the scraper's findings
    Phase 2  bounded interactive exploration: execute the oracle's browser
             commands, capture the new page state, ask again

Every path returns a ``TeacherOutcome`` whose ``result`` is usable by the
caller; failures never escape as exceptions.

Usage:
    teacher = TeacherOrchestrator(config, profiles, ledger, oracle)
    profile = profiles.get(domain)
    decision = teacher.should_invoke(profile, extraction_result.get("confidence", 0))
    if decision.invoke:
        outcome = await teacher.evaluate(page, network_data, extraction_result, domain)
        extraction_result = outcome.result
"""

import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .anomaly_detector import (
    AnomalyDetector,
    ValidationReport,
    deduplicate_entries,
    leaderboard_entries,
    leaderboard_name,
    leaderboards_of,
)
from .browser_controller import BrowserController
from .budget import BudgetLedger
from .config import TeacherConfig
from .context_builder import ContextBuilder, to_message
from .errors import ErrorKind
from .fingerprint import LayoutComparison, LayoutFingerprinter, is_stale
from .llm_client import OracleClient, OracleResponse
from .page import PageHandle
from .response_parser import ParsedFields, parse_response, wants_to_continue
from .site_profiles import ProfileStatus, ProfileStore, SiteProfile, can_transition

logger = logging.getLogger(__name__)

# Consecutive unparseable Phase 2 replies before giving up
MAX_PARSE_FAILURES = 2


@dataclass
class Consensus:
    """Cross-source agreement reported by the extraction pipeline"""
    source_agreement: Optional[float] = None
    verified_count: Optional[int] = None
    single_source_count: Optional[int] = None
    total_unique: int = 0


@dataclass
class InvokeDecision:
    invoke: bool
    reason: str


@dataclass
class TeacherOutcome:
    improved: bool
    reason: Optional[str] = None
    phase: Optional[int] = None
    iterations: int = 0
    confidence: Optional[float] = None
    result: Any = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    validation: Optional[ValidationReport] = None


@dataclass
class LayoutCheck:
    changed: bool
    reason: str
    comparison: Optional[LayoutComparison] = None


def _as_result(result: Any) -> Dict[str, Any]:
    if isinstance(result, dict):
        return copy.deepcopy(result)
    return {"results": copy.deepcopy(result) if isinstance(result, list) else []}


def apply_corrections(original: Any, fields: ParsedFields) -> Dict[str, Any]:
    """Return a copy of ``original`` with the oracle's corrections applied.

    Corrected entry lists replace a leaderboard's entries only when the oracle
    says the data was wrong and names that leaderboard. The overall
    confidence is raised to the oracle's, never lowered.
    """
    corrected = _as_result(original)

    if not fields.is_correct:
        boards = {leaderboard_name(lb).lower(): lb for lb in leaderboards_of(corrected)}
        for issue in fields.issues:
            if not issue.leaderboard or not issue.corrected_data:
                continue
            board = boards.get(issue.leaderboard.lower())
            if board is None:
                logger.warning(f"Oracle corrected unknown leaderboard {issue.leaderboard}")
                continue
            logger.info(f"Applying correction to {issue.leaderboard}: {issue.problem}")
            board["entries"] = issue.corrected_data
            board["llm_corrected"] = True

    corrected["llm_verified"] = True
    corrected["llm_confidence"] = fields.confidence
    corrected["llm_observations"] = list(fields.observations)
    corrected["llm_warnings"] = list(fields.warnings)
    if fields.confidence:
        corrected["confidence"] = min(100, max(corrected.get("confidence") or 0, fields.confidence))
    return corrected


class TeacherOrchestrator:
    def __init__(
        self,
        config: TeacherConfig,
        profiles: ProfileStore,
        ledger: BudgetLedger,
        oracle: OracleClient,
        fingerprinter: Optional[LayoutFingerprinter] = None,
        detector: Optional[AnomalyDetector] = None,
        context_builder: Optional[ContextBuilder] = None,
    ):
        self.config = config
        self.profiles = profiles
        self.ledger = ledger
        self.oracle = oracle
        self.fingerprinter = fingerprinter or LayoutFingerprinter()
        self.detector = detector or AnomalyDetector()
        self.context_builder = context_builder or ContextBuilder()

    # ------------------------------------------------------------------
    # Invocation decision
    # ------------------------------------------------------------------

    def should_invoke(self, profile: Optional[SiteProfile], confidence: float,
                      consensus: Optional[Consensus] = None) -> InvokeDecision:
        if not self.config.is_enabled():
            return InvokeDecision(False, "disabled")

        if not self.oracle.is_available():
            logger.info("Oracle not available (API key missing)")
            return InvokeDecision(False, "llm_unavailable")

        # A disabled profile must never reach the oracle, even while still new
        if profile is not None and profile.llm_disabled:
            logger.info(f"{profile.domain}: oracle disabled for this site")
            return InvokeDecision(False, "flagged_or_disabled")

        if profile is None or profile.status == ProfileStatus.NEW:
            logger.info("New site - verification required")
            return InvokeDecision(True, "new_site")

        if profile.status == ProfileStatus.FLAGGED_FOR_REVIEW:
            logger.info(f"{profile.domain}: flagged for review")
            return InvokeDecision(False, "flagged_or_disabled")

        if consensus is not None:
            decision = self._consensus_decision(consensus)
            if decision is not None:
                return decision

        if profile.status == ProfileStatus.VERIFIED and confidence >= self.config.verified_confidence:
            logger.info(f"{profile.domain}: verified with high confidence - running on stored rules")
            return InvokeDecision(False, "verified_high_confidence")

        if profile.status == ProfileStatus.LAYOUT_CHANGED:
            logger.info(f"{profile.domain}: layout changed - re-verification required")
            return InvokeDecision(True, "layout_changed")

        if profile.status == ProfileStatus.LEARNING or confidence < self.config.min_confidence:
            logger.info(f"{profile.domain}: confidence {confidence} - assistance needed")
            return InvokeDecision(True, "low_confidence")

        return InvokeDecision(False, "none")

    def _consensus_decision(self, consensus: Consensus) -> Optional[InvokeDecision]:
        c = self.config
        if consensus.source_agreement is not None and consensus.source_agreement < c.consensus_min_agreement:
            logger.info(f"Low consensus agreement ({consensus.source_agreement:.0%}) - verification needed")
            return InvokeDecision(True, "low_consensus")

        verified = consensus.verified_count
        single = consensus.single_source_count
        if verified is not None and single is not None and single > verified * c.single_source_ratio:
            logger.info(f"Single-source entries ({single}) dominate over verified ({verified}) - verification needed")
            return InvokeDecision(True, "single_source_dominant")

        if (verified is not None and verified < c.min_verified_entries
                and consensus.total_unique >= c.min_unique_for_verified_check):
            logger.info(f"Only {verified} verified entries out of {consensus.total_unique} - verification needed")
            return InvokeDecision(True, "insufficient_verified")
        return None

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate(
        self,
        page: PageHandle,
        network_data: Optional[Dict[str, Any]],
        extraction_result: Any,
        domain: str,
        previous_result: Any = None,
        keywords: Optional[List[str]] = None,
    ) -> TeacherOutcome:
        if not self.config.is_enabled():
            return TeacherOutcome(improved=False, reason="disabled", result=extraction_result)

        try:
            profile = self.profiles.get(domain)
            logger.info(f"Teacher mode for {domain}: status={profile.status.value}, "
                        f"attempts={profile.attempts}/{profile.max_attempts}")

            if profile.llm_disabled:
                return TeacherOutcome(improved=False, reason="llm_disabled", result=extraction_result)

            if profile.attempts >= profile.max_attempts:
                self.profiles.flag_for_review(domain, "max_attempts_reached")
                return TeacherOutcome(improved=False, reason="flagged", result=extraction_result,
                                      error_kind=ErrorKind.EXHAUSTION)

            budget = self.ledger.check_budget(domain)
            if not budget.allowed:
                logger.info(f"Skipping oracle for {domain}: {budget.reason}")
                return TeacherOutcome(improved=False, reason=budget.reason, result=extraction_result,
                                      error_kind=ErrorKind.BUDGET)

            working, report = self._pre_validate(extraction_result, previous_result, domain)
            outcome = await self._learn(page, network_data, working, domain, keywords or self.context_builder.keywords)
            outcome.validation = report
            return outcome
        except Exception as e:
            logger.exception(f"Teacher fatal error for {domain}: {e}")
            try:
                self.profiles.increment_attempts(domain)
            except Exception as count_error:
                logger.error(f"Could not count failed attempt for {domain}: {count_error}")
            return TeacherOutcome(improved=False, reason="error", error=str(e),
                                  error_kind=ErrorKind.INTERNAL, result=extraction_result)

    def _pre_validate(self, result: Any, previous: Any, domain: str):
        """Run data-quality checks; auto-deduplicate and persist issues for learning."""
        working = _as_result(result)
        report = self.detector.validate_extraction_results(working, previous)
        if report.valid:
            logger.info("Data validation passed - no anomalies detected")
            return working, report

        for lb in leaderboards_of(working):
            name = leaderboard_name(lb)
            if name in report.checks.duplicates:
                entries, removed = deduplicate_entries(leaderboard_entries(lb))
                lb["entries"] = entries
                lb["deduplication_applied"] = True
                logger.info(f"Removed {removed} duplicate entries from {name}")

        now = datetime.now(timezone.utc).isoformat()
        changes: Dict[str, Any] = {"last_validation_issues": report.issues, "last_validation_at": now}
        if report.requires_learning:
            instructions = self.detector.generate_learning_instructions(report, domain)
            if instructions is not None:
                changes["learning_instructions"] = instructions.to_dict()
                if can_transition(self.profiles.get(domain).status, ProfileStatus.LEARNING):
                    changes["status"] = ProfileStatus.LEARNING
                logger.info(f"Generated {len(instructions.scraper_adjustments)} scraper adjustments for {domain}")
        self.profiles.update(domain, changes)
        return working, report

    def _record_cost(self, domain: str, response: OracleResponse) -> None:
        if response.usage is not None and response.usage.cost:
            self.profiles.add_llm_cost(domain, response.usage.cost)

    async def _learn(self, page: PageHandle, network_data: Optional[Dict[str, Any]],
                     working: Any, domain: str, keywords: List[str]) -> TeacherOutcome:
        threshold = self.config.min_confidence
        profile = self.profiles.get(domain)

        logger.info(f"Phase 1: quick analysis for {domain}")
        screenshot = await page.screenshot()
        url = await page.current_url()
        context = self.context_builder.build_quick_context(url, network_data, working, profile)
        response = await self.oracle.call(
            system_prompt=self.context_builder.system_prompt(),
            user_message=to_message(context),
            domain=domain,
            image=screenshot,
            max_tokens=self.config.default_max_tokens,
        )
        if not response.success:
            logger.error(f"Phase 1 failed for {domain}: {response.error}")
            return TeacherOutcome(improved=False, reason="llm_error", phase=1, error=response.error,
                                  error_kind=response.error_kind, result=working)
        self._record_cost(domain, response)

        parsed = parse_response(response.content)
        if not parsed.success:
            logger.error(f"Phase 1 parse error for {domain}: {parsed.error}")
            self._count_failed_attempt(domain, "parse_error")
            return TeacherOutcome(improved=False, reason="parse_error", phase=1, error=parsed.error,
                                  error_kind=ErrorKind.PARSE, result=working)

        fields = parsed.fields
        logger.info(f"Phase 1 confidence: {fields.confidence}")
        if fields.confidence >= threshold:
            return await self._succeed(page, domain, working, fields, keywords, phase=1, iterations=0)

        logger.info(f"Phase 2: confidence {fields.confidence} < {threshold} - interactive exploration")
        controller = BrowserController(page, network_data)
        last = fields
        pending = list(fields.browser_commands)
        parse_failures = 0
        iterations = 0

        while iterations < self.config.max_iterations:
            iterations += 1
            logger.info(f"Phase 2 iteration {iterations}/{self.config.max_iterations}")

            if not self.ledger.check_budget(domain).allowed:
                logger.info("Budget limit hit during iteration")
                break

            if pending:
                logger.info(f"Executing {len(pending)} browser commands")
                await controller.execute_commands(pending)
                pending = []

            state = await controller.capture_state()
            message = self.context_builder.build_interactive_context(
                context, state, iterations, self.config.max_iterations)
            response = await self.oracle.call(
                system_prompt=self.context_builder.system_prompt(interactive=True),
                user_message=to_message(message),
                domain=domain,
                image=state.screenshot,
                max_tokens=self.config.default_max_tokens,
            )
            if not response.success:
                logger.error(f"Iteration {iterations} failed for {domain}: {response.error}")
                break
            self._record_cost(domain, response)

            parsed = parse_response(response.content)
            if not parsed.success:
                parse_failures += 1
                logger.warning(f"Iteration {iterations} parse error: {parsed.error}")
                if parse_failures >= MAX_PARSE_FAILURES:
                    break
                continue

            parse_failures = 0
            last = parsed.fields
            pending = list(last.browser_commands)
            logger.info(f"Iteration {iterations} confidence: {last.confidence}")

            if last.confidence >= threshold:
                return await self._succeed(page, domain, working, last, keywords, phase=2, iterations=iterations)

            if not wants_to_continue(last, threshold):
                logger.info("Oracle finished without reaching the confidence threshold")
                break

        logger.info(f"Phase 2 exhausted after {iterations} iterations for {domain}")
        flagged = self._count_failed_attempt(domain, "max_llm_iterations")
        if not flagged:
            # Partial rules only; verification needs a successful phase
            self.profiles.update_from_oracle(domain, last, verified_threshold=float("inf"))
        return TeacherOutcome(
            improved=False,
            reason="max_iterations",
            phase=2,
            iterations=iterations,
            confidence=last.confidence,
            result=apply_corrections(working, last),
            error_kind=ErrorKind.EXHAUSTION,
        )

    def _count_failed_attempt(self, domain: str, reason: str) -> bool:
        """Count an attempt; flag the site once the ceiling is hit. Returns True when flagged."""
        attempt = self.profiles.increment_attempts(domain)
        if attempt.max_reached:
            self.profiles.flag_for_review(domain, reason)
        return attempt.max_reached

    async def _succeed(self, page: PageHandle, domain: str, working: Any, fields: ParsedFields,
                       keywords: List[str], phase: int, iterations: int) -> TeacherOutcome:
        logger.info(f"Phase {phase} success for {domain} with confidence {fields.confidence}")
        corrected = apply_corrections(working, fields)
        if phase == 2:
            corrected["llm_iterations"] = iterations

        self.profiles.update_from_oracle(domain, fields, self.config.verified_confidence)
        try:
            fingerprint = await self.fingerprinter.generate(page, keywords)
            self.profiles.update(domain, {"layout_fingerprint": fingerprint.to_dict()})
        except Exception as e:
            logger.warning(f"Could not fingerprint {domain} after learning: {e}")

        return TeacherOutcome(
            improved=True,
            phase=phase,
            iterations=iterations,
            confidence=fields.confidence,
            result=corrected,
        )

    # ------------------------------------------------------------------
    # Layout change detection
    # ------------------------------------------------------------------

    async def check_layout_change(self, page: PageHandle, domain: str,
                                  keywords: Optional[List[str]] = None) -> LayoutCheck:
        profile = self.profiles.get(domain)
        stored = profile.fingerprint
        current = await self.fingerprinter.generate(page, keywords or self.context_builder.keywords)

        if stored is None:
            self.profiles.update(domain, {"layout_fingerprint": current.to_dict()})
            return LayoutCheck(changed=False, reason="no_previous_fingerprint")

        comparison = self.fingerprinter.compare(stored, current)
        if self.fingerprinter.should_reverify(comparison):
            logger.info(f"Layout change detected on {domain}: {comparison.reason}")
            if can_transition(profile.status, ProfileStatus.LAYOUT_CHANGED):
                self.profiles.update(domain, {"status": ProfileStatus.LAYOUT_CHANGED, "attempts": 0})
            return LayoutCheck(changed=True, reason=comparison.reason, comparison=comparison)

        if is_stale(stored, self.config.fingerprint_max_age_days):
            logger.info(f"Refreshing stale layout fingerprint for {domain}")
            self.profiles.update(domain, {"layout_fingerprint": current.to_dict()})
        return LayoutCheck(changed=False, reason="no_significant_changes", comparison=comparison)
