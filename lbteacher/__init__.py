"""
lbteacher package: the adaptive learning core of the leaderboard scraper

Learn once, run forever: a site's extraction rules are learned from the
oracle once, persisted in its profile, and reused until a layout change or a
data-quality alarm proves them stale.

Usage:
    from lbteacher import TeacherConfig, build_teacher

    config = TeacherConfig.from_env()
    teacher = build_teacher(config)
    profile = teacher.profiles.get(domain)
    if teacher.should_invoke(profile, confidence).invoke:
        outcome = await teacher.evaluate(page, network_data, result, domain)
"""
from typing import Optional

from .anomaly_detector import AnomalyDetector, AnomalyThresholds
from .budget import BudgetLedger
from .config import TeacherConfig, get_logger
from .context_builder import ContextBuilder, load_keywords
from .errors import ErrorKind, TeacherError
from .fingerprint import LayoutFingerprint, LayoutFingerprinter
from .llm_client import AnthropicTransport, OracleClient, OracleTransport
from .page import PageHandle, PlaywrightPage, open_page
from .response_parser import extract_json, parse_response, validate, wants_to_continue
from .site_profiles import ProfileStatus, ProfileStore, SiteProfile
from .source_preference import compare_data_sources
from .teacher import Consensus, TeacherOrchestrator, TeacherOutcome, apply_corrections
from .visual_verifier import VisualVerifier


def build_teacher(config: TeacherConfig, transport: Optional[OracleTransport] = None) -> TeacherOrchestrator:
    """Wire the default collaborators for one worker process."""
    log = get_logger(__name__)
    ledger = BudgetLedger(config)
    teacher = TeacherOrchestrator(
        config=config,
        profiles=ProfileStore(config),
        ledger=ledger,
        oracle=OracleClient(config, ledger, transport=transport),
        context_builder=ContextBuilder(load_keywords(config.keywords_file)),
    )
    log.info(f"Teacher ready (model={config.model}, enabled={config.enabled}, data_dir={config.data_dir})")
    return teacher


__all__ = [
    # Core
    "TeacherConfig",
    "get_logger",
    "build_teacher",
    "TeacherOrchestrator",
    "TeacherOutcome",
    "Consensus",
    "apply_corrections",
    # Collaborators
    "ProfileStore",
    "SiteProfile",
    "ProfileStatus",
    "BudgetLedger",
    "OracleClient",
    "OracleTransport",
    "AnthropicTransport",
    "AnomalyDetector",
    "AnomalyThresholds",
    "LayoutFingerprinter",
    "LayoutFingerprint",
    "ContextBuilder",
    "VisualVerifier",
    "compare_data_sources",
    # Parsing
    "extract_json",
    "validate",
    "parse_response",
    "wants_to_continue",
    # Browser surface
    "PageHandle",
    "PlaywrightPage",
    "open_page",
    # Errors
    "ErrorKind",
    "TeacherError",
]
