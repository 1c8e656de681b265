"""Tests for the profile store."""

import json
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from conftest import FIXED_NOW, FakePage
from lbteacher.errors import InvalidStatusError, InvalidTransitionError
from lbteacher.response_parser import ParsedFields
from lbteacher.site_profiles import (
    SWITCHER_PRESENCE_SCRIPT,
    ProfileStatus,
    ProfileStore,
    SourcePreference,
    can_transition,
    deep_merge,
    parse_time,
)
from lbteacher.storage import sanitize_domain


@pytest.fixture
def store(config, clock):
    return ProfileStore(config, clock=clock)


class MovableClock:
    def __init__(self, now=FIXED_NOW):
        self.now = now

    def __call__(self):
        return self.now


class TestTimeHelpers:
    def test_parse_time(self):
        assert parse_time(None) is None
        assert parse_time("not a date") is None
        assert parse_time(FIXED_NOW.isoformat()) == FIXED_NOW
        assert parse_time("2025-06-15T12:00:00").tzinfo is not None

    def test_now_follows_clock(self, config):
        clock = MovableClock()
        store = ProfileStore(config, clock=clock)
        clock.now = FIXED_NOW + timedelta(hours=3)
        assert store.now() == FIXED_NOW + timedelta(hours=3)


class TestDeepMerge:
    def test_nested_records_merge(self):
        merged = deep_merge({"a": {"x": 1, "y": 2}}, {"a": {"y": 3}})
        assert merged == {"a": {"x": 1, "y": 3}}

    def test_lists_replace(self):
        assert deep_merge({"a": [1, 2]}, {"a": [3]}) == {"a": [3]}

    def test_target_untouched(self):
        target = {"a": {"x": 1}}
        deep_merge(target, {"a": {"x": 2}})
        assert target == {"a": {"x": 1}}


class TestStatusTransitions:
    def test_forward_allowed(self):
        assert can_transition(ProfileStatus.NEW, ProfileStatus.VERIFIED) is True
        assert can_transition(ProfileStatus.LEARNING, ProfileStatus.VERIFIED) is True

    def test_backward_needs_reset(self):
        assert can_transition(ProfileStatus.VERIFIED, ProfileStatus.LEARNING) is False

    def test_flag_and_layout_change_from_anywhere(self):
        assert can_transition(ProfileStatus.VERIFIED, ProfileStatus.FLAGGED_FOR_REVIEW) is True
        assert can_transition(ProfileStatus.VERIFIED, ProfileStatus.LAYOUT_CHANGED) is True

    def test_flagged_is_sticky(self):
        assert can_transition(ProfileStatus.FLAGGED_FOR_REVIEW, ProfileStatus.LEARNING) is False


class TestProfileStore:
    """Test the core get/update contract."""

    def test_get_creates_new_profile(self, store):
        profile = store.get("example.com")
        assert profile.status == ProfileStatus.NEW
        assert profile.attempts == 0
        assert profile.max_attempts == 3
        assert profile.created_at == FIXED_NOW.isoformat()
        assert store.path_for("example.com").exists()

    def test_empty_update_is_idempotent(self, store):
        """update(d, {}) leaves everything but updated_at unchanged."""
        before = store.get("example.com").to_dict()
        after = store.update("example.com", {}).to_dict()
        assert after == before

    def test_partial_update_preserves_siblings(self, store):
        store.update("example.com", {"navigation": {"leaderboard_path": "/lb"}})
        profile = store.update("example.com", {"navigation": {"auth_required": True}})
        assert profile.navigation.leaderboard_path == "/lb"
        assert profile.navigation.auth_required is True

    def test_nested_endpoints_merge(self, store):
        store.update_extraction_api_endpoints("example.com", {"providers": "/api/providers"})
        profile = store.update_extraction_api_endpoints("example.com", {"historical": "/api/history"})
        endpoints = profile.extraction_config.api_config.endpoints
        assert endpoints["providers"] == "/api/providers"
        assert endpoints["historical"] == "/api/history"
        assert endpoints["leaderboard_list"] is None

    def test_unknown_keys_survive(self, store):
        store.update("example.com", {"custom_note": "keep me"})
        profile = store.get("example.com")
        assert profile.extra["custom_note"] == "keep me"
        assert profile.to_dict()["custom_note"] == "keep me"

    def test_backward_status_rejected(self, store):
        store.set_status("example.com", "verified")
        with pytest.raises(InvalidTransitionError):
            store.set_status("example.com", ProfileStatus.LEARNING)
        assert store.set_status("example.com", "learning", reset=True).status == ProfileStatus.LEARNING

    def test_invalid_status_rejected(self, store):
        with pytest.raises(InvalidStatusError):
            store.set_status("example.com", "archived")

    def test_corrupt_file_moved_aside(self, store):
        path = store.path_for("example.com")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("{not json", encoding="utf-8")

        profile = store.get("example.com")

        assert profile.status == ProfileStatus.NEW
        assert list(path.parent.glob("example.com.json.corrupt-*"))

    def test_domain_sanitized(self, store):
        assert sanitize_domain("https://a.com/x") == "https___a.com_x"
        assert sanitize_domain("") == "default"
        assert store.path_for("a b.com").name == "a_b.com.json"


class TestAttemptsAndFlagging:
    """Test attempt counting and the flagged registry."""

    def test_increment_sets_learning(self, store):
        result = store.increment_attempts("example.com")
        assert result.attempts == 1
        assert result.max_reached is False
        assert store.get("example.com").status == ProfileStatus.LEARNING

    def test_max_reached(self, store):
        for _ in range(2):
            store.increment_attempts("example.com")
        assert store.increment_attempts("example.com").max_reached is True

    def test_increment_keeps_verified_status(self, store):
        store.mark_verified("example.com", 90)
        store.increment_attempts("example.com")
        assert store.get("example.com").status == ProfileStatus.VERIFIED

    def test_concurrent_increments_not_lost(self, store):
        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(lambda _: store.increment_attempts("example.com"), range(8)))
        assert store.get("example.com").attempts == 8

    def test_flag_and_reset(self, store):
        store.flag_for_review("example.com", "max_attempts_reached")
        store.flag_for_review("example.com", "still broken")

        profile = store.get("example.com")
        assert profile.status == ProfileStatus.FLAGGED_FOR_REVIEW
        assert profile.llm_disabled is True
        flagged = store.flagged_sites()
        assert [f["reason"] for f in flagged] == ["still broken"]

        with pytest.raises(InvalidTransitionError):
            store.set_status("example.com", "learning")

        profile = store.reset_for_relearning("example.com")
        assert profile.status == ProfileStatus.LEARNING
        assert profile.attempts == 0
        assert profile.llm_disabled is False
        assert profile.flagged_reason is None
        assert store.flagged_sites() == []

    def test_llm_cost_accumulates(self, store):
        store.add_llm_cost("example.com", 0.01)
        assert store.add_llm_cost("example.com", 0.02).llm_cost_total == pytest.approx(0.03)


class TestUpdateFromOracle:
    """Test persisting oracle discoveries."""

    def test_confident_answer_verifies(self, store):
        fields = ParsedFields(
            confidence=85,
            switchers=[{"name": "stake", "selector": ".stake"}],
            layout_fingerprint={"type": "podium-table"},
            observations=["podium plus table"],
        )

        profile = store.update_from_oracle("example.com", fields, verified_threshold=80)

        assert profile.status == ProfileStatus.VERIFIED
        assert profile.confidence == 85
        assert profile.verification.verified_by_llm is True
        assert profile.switchers == [{"name": "stake", "selector": ".stake"}]
        assert profile.oracle_layout["type"] == "podium-table"
        assert profile.layout_fingerprint == {}
        assert profile.observations[0]["text"] == "podium plus table"

    def test_unconfident_answer_keeps_rules_only(self, store):
        fields = ParsedFields(confidence=60, extraction={"container_selector": ".lb"})
        profile = store.update_from_oracle("example.com", fields, verified_threshold=80)
        assert profile.status == ProfileStatus.NEW
        assert profile.extraction == {"container_selector": ".lb"}

    def test_first_verified_at_kept(self, store, config):
        clock = MovableClock()
        store = ProfileStore(config, clock=clock)
        store.mark_verified("example.com", 80)
        clock.now = FIXED_NOW + timedelta(days=1)
        profile = store.mark_verified("example.com", 95)
        assert profile.verification.first_verified_at == FIXED_NOW.isoformat()
        assert profile.verification.last_verified_at == clock.now.isoformat()


class TestInactiveLeaderboards:
    def test_mark_and_retry(self, config):
        clock = MovableClock()
        store = ProfileStore(config, clock=clock)

        store.mark_leaderboard_inactive("example.com", "Stake", "no entries")
        again = store.mark_leaderboard_inactive("example.com", "stake", "still empty")

        assert again.fail_count == 2
        assert again.reason == "still empty"
        assert store.get_inactive_leaderboard("example.com", "STAKE").first_marked_at == FIXED_NOW.isoformat()
        assert store.should_retry_inactive_leaderboard("example.com", "stake") is False

        clock.now = FIXED_NOW + timedelta(hours=25)
        assert store.should_retry_inactive_leaderboard("example.com", "stake") is True
        assert store.should_retry_inactive_leaderboard("example.com", "gamdom") is True

    def test_reactivate(self, store):
        store.mark_leaderboard_inactive("example.com", "stake", "no entries")
        assert store.reactivate_leaderboard("example.com", "Stake") is True
        assert store.reactivate_leaderboard("example.com", "stake") is False
        assert store.get_inactive_leaderboards("example.com") == []


class TestExtractionConfig:
    def test_save_and_get(self, store):
        assert store.has_extraction_config("example.com") is False

        store.save_extraction_config("example.com", {"method": "api", "known_providers": ["stake"]}, "llm")

        config = store.get_extraction_config("example.com")
        assert config.method == "api"
        assert config.discovered_by == "llm"
        assert config.known_providers == ["stake"]

    def test_known_providers_deduplicated(self, store):
        store.add_known_providers("example.com", ["Stake", "gamdom"])
        profile = store.add_known_providers("example.com", ["stake ", "Packdraw"])
        assert profile.extraction_config.known_providers == ["stake", "gamdom", "packdraw"]

    def test_historical_config(self, store):
        profile = store.set_historical_config("example.com", {"supported": True, "method": "api"})
        assert profile.extraction_config.historical_config.supported is True
        assert profile.extraction_config.historical_config.min_year == 2025


class TestSwitchers:
    """Test switcher persistence and revalidation."""

    SWITCHERS = [
        {"keyword": "stake", "selector": ".stake"},
        {"keyword": "gamdom", "coordinates": {"x": 10, "y": 20}},
        {"keyword": "packdraw", "type": "href-relative", "href": "/packdraw"},
    ]

    def test_save_builds_click_sequence(self, store):
        profile = store.save_switcher_config("example.com", self.SWITCHERS, "/leaderboard")

        sequence = profile.extraction_config.click_sequence
        assert [s["keyword"] for s in sequence] == ["stake", "gamdom"]
        assert sequence[1]["selector"] == '[data-site="gamdom"]'

        config = store.get_switcher_config("example.com")
        assert config["main_leaderboard_url"] == "/leaderboard"
        assert store.is_switcher_config_valid(config) is True

    def test_fallback_to_profile_switchers(self, store):
        store.update("example.com", {"switchers": [{"name": "stake"}]})
        config = store.get_switcher_config("example.com")
        assert config["all_switchers"] == [{"name": "stake"}]
        assert store.get_switcher_config("other.com") is None

    def test_stale_config_invalid(self, store):
        old = (FIXED_NOW - timedelta(days=31)).isoformat()
        assert store.is_switcher_config_valid({"all_switchers": [{}], "discovered_at": old}) is False
        assert store.is_switcher_config_valid(None) is False

    @pytest.mark.asyncio
    async def test_validate_saved_switchers(self, store):
        page = FakePage()
        page.scripts[SWITCHER_PRESENCE_SCRIPT] = 2
        result = await store.validate_saved_switchers(page, self.SWITCHERS)
        assert (result.valid, result.valid_count, result.total_count) == (False, 2, 3)

        page.scripts[SWITCHER_PRESENCE_SCRIPT] = 3
        assert (await store.validate_saved_switchers(page, self.SWITCHERS)).valid is True

    @pytest.mark.asyncio
    async def test_validate_empty(self, store):
        result = await store.validate_saved_switchers(FakePage(), [])
        assert result.valid is False


class TestSourcePreference:
    def test_record_and_get(self, store):
        store.record_source_preference("example.com", "Stake", SourcePreference(source="dom", confidence=90))
        preference = store.get_source_preference("example.com", "stake")
        assert preference.source == "dom"
        assert store.get_source_preference("example.com", "gamdom") is None

        data = json.loads(store.path_for("example.com").read_text(encoding="utf-8"))
        assert data["data_source_preference"]["stake"]["confidence"] == 90


class TestQueries:
    def test_profiles_by_status(self, store):
        store.get("a.com")
        store.mark_verified("b.com", 90)
        assert [p.domain for p in store.profiles_by_status("verified")] == ["b.com"]
        assert len(store.all_profiles()) == 2
