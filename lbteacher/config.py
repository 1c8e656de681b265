#!/usr/bin/env python3
"""
Teacher configuration.

Every knob of the learning core is read from the environment (optionally via
a ``.env`` file). Components never read the environment themselves; they are
handed a ``TeacherConfig`` instance.

Usage:
    from lbteacher.config import TeacherConfig

    config = TeacherConfig.from_env()
    if config.is_enabled() and config.is_available():
        ...
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

load_dotenv()

_LOGGER_CACHE: Dict[str, logging.Logger] = {}

_TRUE_VALUES = ("true", "1", "yes")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUE_VALUES


def get_logger(name: str) -> logging.Logger:
    """Return a configured logger.

    Respects LBTEACHER_DEBUG env var to set DEBUG/INFO level.
    Ensures we don't duplicate handlers across multiple calls.
    """
    lg = _LOGGER_CACHE.get(name)
    if lg:
        return lg
    lg = logging.getLogger(name)
    if not lg.handlers:
        level = logging.DEBUG if _env_bool("LBTEACHER_DEBUG", "false") else logging.INFO
        lg.setLevel(level)
        handler = logging.StreamHandler()
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        lg.addHandler(handler)
        lg.propagate = False
    _LOGGER_CACHE[name] = lg
    return lg


@dataclass
class TeacherConfig:
    """Learning core configuration"""
    enabled: bool = False
    api_key: Optional[str] = None
    model: str = "claude-sonnet-4-20250514"
    data_dir: Path = Path("./data")

    # Oracle call limits
    max_tokens_per_call: int = 8000
    default_max_tokens: int = 4000
    max_calls_per_site: int = 5
    max_calls_per_day: int = 100
    monthly_budget_usd: float = 50.0
    max_retries: int = 3
    retry_delay: float = 2.0
    request_timeout: int = 120

    # Learning thresholds
    min_confidence: int = 80
    verified_confidence: int = 80
    max_attempts: int = 3
    max_iterations: int = 5

    # Cooldowns
    visual_verify_cooldown_hours: float = 24.0
    inactive_retry_hours: float = 24.0
    fingerprint_max_age_days: int = 30

    # Consensus escalation
    consensus_min_agreement: float = 0.3
    single_source_ratio: float = 2.0
    min_verified_entries: int = 3
    min_unique_for_verified_check: int = 5

    keywords_file: Path = Path("./keywords.txt")

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        self.keywords_file = Path(self.keywords_file)

    @property
    def profiles_dir(self) -> Path:
        return self.data_dir / "site-profiles"

    @property
    def flagged_sites_file(self) -> Path:
        return self.data_dir / "flagged-sites.json"

    @property
    def usage_file(self) -> Path:
        return self.data_dir / "llm-usage.json"

    def is_enabled(self) -> bool:
        return self.enabled

    def is_available(self) -> bool:
        """Whether credentials for the oracle are present."""
        return bool(self.api_key)

    @classmethod
    def from_env(cls) -> "TeacherConfig":
        """Build configuration from LBTEACHER_* environment variables."""
        return cls(
            enabled=_env_bool("LBTEACHER_ENABLED", "false"),
            api_key=os.getenv("ANTHROPIC_API_KEY") or None,
            model=os.getenv("LBTEACHER_MODEL", "claude-sonnet-4-20250514"),
            data_dir=Path(os.getenv("LBTEACHER_DATA_DIR", "./data")),
            max_tokens_per_call=int(os.getenv("LBTEACHER_MAX_TOKENS_PER_CALL", "8000")),
            default_max_tokens=int(os.getenv("LBTEACHER_DEFAULT_MAX_TOKENS", "4000")),
            max_calls_per_site=int(os.getenv("LBTEACHER_MAX_CALLS_PER_SITE", "5")),
            max_calls_per_day=int(os.getenv("LBTEACHER_MAX_CALLS_PER_DAY", "100")),
            monthly_budget_usd=float(os.getenv("LBTEACHER_MONTHLY_BUDGET_USD", "50")),
            max_retries=int(os.getenv("LBTEACHER_MAX_RETRIES", "3")),
            retry_delay=float(os.getenv("LBTEACHER_RETRY_DELAY", "2.0")),
            request_timeout=int(os.getenv("LBTEACHER_REQUEST_TIMEOUT", "120")),
            min_confidence=int(os.getenv("LBTEACHER_MIN_CONFIDENCE", "80")),
            verified_confidence=int(os.getenv("LBTEACHER_VERIFIED_CONFIDENCE", "80")),
            max_attempts=int(os.getenv("LBTEACHER_MAX_ATTEMPTS", "3")),
            max_iterations=int(os.getenv("LBTEACHER_MAX_ITERATIONS", "5")),
            visual_verify_cooldown_hours=float(os.getenv("LBTEACHER_VISUAL_VERIFY_COOLDOWN_HOURS", "24")),
            inactive_retry_hours=float(os.getenv("LBTEACHER_INACTIVE_RETRY_HOURS", "24")),
            fingerprint_max_age_days=int(os.getenv("LBTEACHER_FINGERPRINT_MAX_AGE_DAYS", "30")),
            consensus_min_agreement=float(os.getenv("LBTEACHER_CONSENSUS_MIN_AGREEMENT", "0.3")),
            single_source_ratio=float(os.getenv("LBTEACHER_SINGLE_SOURCE_RATIO", "2.0")),
            min_verified_entries=int(os.getenv("LBTEACHER_MIN_VERIFIED_ENTRIES", "3")),
            min_unique_for_verified_check=int(os.getenv("LBTEACHER_MIN_UNIQUE_ENTRIES", "5")),
            keywords_file=Path(os.getenv("LBTEACHER_KEYWORDS_FILE", "./keywords.txt")),
        )
