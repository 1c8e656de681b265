"""Tests for screenshot-based switcher verification."""

from datetime import timedelta

import pytest

from conftest import FIXED_NOW
from lbteacher.site_profiles import ProfileStore
from lbteacher.visual_verifier import VISUAL_MAX_TOKENS, VisualVerifier

DETECTED = [
    {"keyword": "stake", "type": "button"},
    {"keyword": "gamdom", "type": "tab"},
]


@pytest.fixture
def store(config, clock):
    return ProfileStore(config, clock=clock)


@pytest.fixture
def verifier(config, store, oracle):
    return VisualVerifier(config, store, oracle)


class TestNeedsVisualVerification:
    """Test the cooldown gate."""

    def test_never_verified(self, verifier):
        assert verifier.needs_visual_verification("example.com") is True

    def test_within_cooldown(self, verifier, store):
        store.update("example.com", {"last_screenshot_verify_at": (FIXED_NOW - timedelta(hours=2)).isoformat()})
        assert verifier.needs_visual_verification("example.com") is False

    def test_after_cooldown(self, verifier, store):
        store.update("example.com", {"last_screenshot_verify_at": (FIXED_NOW - timedelta(hours=25)).isoformat()})
        assert verifier.needs_visual_verification("example.com") is True

    def test_disabled_site(self, verifier, store):
        store.flag_for_review("example.com", "manual")
        assert verifier.needs_visual_verification("example.com") is False


class TestVerify:
    """Test VisualVerifier.verify."""

    @pytest.mark.asyncio
    async def test_additional_and_missing(self, verifier, store, transport, page):
        transport.replies = [{
            "site_switchers_found": ["Stake", "Packdraw"],
            "switcher_count": 2,
            "switcher_type": "tabs",
            "confidence": 85,
            "notes": "two tabs",
        }]

        result = await verifier.verify(page, DETECTED, "example.com")

        assert result.error is None
        assert result.should_update is True
        assert [s["keyword"] for s in result.additional_switchers] == ["Packdraw"]
        assert result.additional_switchers[0]["requires_coordinate_detection"] is True
        assert result.missing_from_oracle == ["gamdom"]
        assert transport.requests[0].max_tokens == VISUAL_MAX_TOKENS
        assert transport.requests[0].image_base64

        profile = store.get("example.com")
        assert profile.last_screenshot_verify_at == FIXED_NOW.isoformat()
        assert profile.last_visual_verification["additional_found"] == 1
        assert profile.last_visual_verification["dom_switcher_count"] == 2
        assert verifier.needs_visual_verification("example.com") is False

    @pytest.mark.asyncio
    async def test_low_confidence_reports_no_missing(self, verifier, transport, page):
        transport.replies = [{"site_switchers_found": ["stake"], "confidence": 50}]
        result = await verifier.verify(page, DETECTED, "example.com")
        assert result.missing_from_oracle == []
        assert result.should_update is False

    @pytest.mark.asyncio
    async def test_unparseable_answer(self, verifier, store, transport, page):
        transport.replies = ["I see some tabs."]
        result = await verifier.verify(page, DETECTED, "example.com")
        assert result.error
        assert store.get("example.com").last_screenshot_verify_at is None

    @pytest.mark.asyncio
    async def test_disabled_site_not_called(self, verifier, store, transport, page):
        store.flag_for_review("example.com", "manual")
        result = await verifier.verify(page, DETECTED, "example.com")
        assert result.error == "disabled"
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_feature_off(self, verifier, config, transport, page):
        config.enabled = False
        result = await verifier.verify(page, DETECTED, "example.com")
        assert result.error == "disabled"
        assert page.performed("screenshot") == []
