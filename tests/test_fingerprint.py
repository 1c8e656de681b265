"""Tests for layout fingerprinting."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakePage
from lbteacher.fingerprint import (
    FINGERPRINT_SCRIPT,
    HASH_LENGTH,
    LayoutFingerprint,
    LayoutFingerprinter,
    Significance,
    build_fingerprint,
    classify_layout,
    is_stale,
)

OBSERVED = {
    "switcherCount": 3,
    "switcherNames": ["stake", "gamdom", "packdraw"],
    "hasPodium": True,
    "hasTable": True,
    "entryCount": 10,
    "structuralElements": [{"tag": "main", "classes": "lb", "width": 1200, "height": 800}],
}


def fingerprint(**overrides) -> LayoutFingerprint:
    return build_fingerprint({**OBSERVED, **overrides})


class TestBuildFingerprint:
    """Test hashing and classification."""

    def test_layout_types(self):
        assert classify_layout(True, True, 10) == "podium-table"
        assert classify_layout(True, False, 0) == "podium-only"
        assert classify_layout(False, True, 0) == "table-only"
        assert classify_layout(False, False, 5) == "list"
        assert classify_layout(False, False, 0) == "unknown"

    def test_hash_is_fixed_length(self):
        assert len(fingerprint().hash) == HASH_LENGTH

    def test_hash_ignores_switcher_name_order(self):
        reordered = fingerprint(switcherNames=["packdraw", "stake", "gamdom"])
        assert reordered.hash == fingerprint().hash

    def test_hash_ignores_entry_count(self):
        assert fingerprint(entryCount=4).hash == fingerprint().hash

    def test_hash_changes_with_layout(self):
        assert fingerprint(hasPodium=False).hash != fingerprint().hash

    def test_structural_elements_capped(self):
        many = [{"tag": "div", "classes": str(i), "width": 300, "height": 200} for i in range(25)]
        assert len(fingerprint(structuralElements=many).structural_elements) == 10

    def test_dict_round_trip(self):
        fp = fingerprint()
        assert LayoutFingerprint.from_dict(fp.to_dict()) == fp
        assert LayoutFingerprint.from_dict({}) is None


class TestCompare:
    """Test change significance classification."""

    def setup_method(self):
        self.fingerprinter = LayoutFingerprinter()

    def test_identical_is_unchanged(self):
        fp = fingerprint()
        comparison = self.fingerprinter.compare(fp, fp)
        assert comparison.changed is False
        assert comparison.significance == Significance.NONE

    def test_missing_fingerprint(self):
        assert self.fingerprinter.compare(None, fingerprint()).changed is False

    def test_one_new_switcher_is_medium(self):
        current = fingerprint(switcherCount=4, switcherNames=OBSERVED["switcherNames"] + ["roobet"])
        comparison = self.fingerprinter.compare(fingerprint(), current)

        assert comparison.changed is True
        assert comparison.significance == Significance.MEDIUM
        assert comparison.has_change("switcher_count")
        assert comparison.has_change("new_switchers")
        assert self.fingerprinter.should_reverify(comparison) is False

    def test_two_new_switchers_force_reverify(self):
        names = OBSERVED["switcherNames"] + ["roobet", "rainbet"]
        comparison = self.fingerprinter.compare(fingerprint(), fingerprint(switcherCount=5, switcherNames=names))
        assert comparison.significance == Significance.HIGH
        assert self.fingerprinter.should_reverify(comparison) is True

    def test_removed_switchers(self):
        current = fingerprint(switcherCount=1, switcherNames=["stake"])
        comparison = self.fingerprinter.compare(fingerprint(), current)
        removed = [c for c in comparison.changes if c.type == "removed_switchers"][0]
        assert removed.new == ["gamdom", "packdraw"]
        assert comparison.significance == Significance.HIGH

    def test_layout_type_change_always_high(self):
        comparison = self.fingerprinter.compare(fingerprint(), fingerprint(hasTable=False))
        assert comparison.has_change("layout_type")
        assert comparison.significance == Significance.HIGH
        assert self.fingerprinter.should_reverify(comparison) is True

    def test_structural_noise_is_not_a_change(self):
        noisy = fingerprint(structuralElements=[{"tag": "div", "classes": "x", "width": 300, "height": 300}])
        comparison = self.fingerprinter.compare(fingerprint(), noisy)
        assert comparison.changed is False
        assert comparison.reason == "structural_noise"

    def test_single_count_delta_is_low(self):
        stored = fingerprint()
        current = replace(stored, hash="different", switcher_count=4)
        comparison = self.fingerprinter.compare(stored, current)
        assert comparison.significance == Significance.LOW
        assert comparison.to_dict()["significance"] == "low"


class TestGenerate:
    @pytest.mark.asyncio
    async def test_generate_passes_keywords(self):
        page = FakePage()
        seen = {}

        def observe(arg):
            seen.update(arg)
            return OBSERVED

        page.scripts[FINGERPRINT_SCRIPT] = observe
        fp = await LayoutFingerprinter().generate(page, ["stake", "gamdom"])

        assert seen["keywords"] == ["stake", "gamdom"]
        assert seen["minSize"] == 20 and seen["maxWidth"] == 400
        assert fp.layout_type == "podium-table"
        assert fp.switcher_count == 3


class TestStaleness:
    def test_is_stale(self):
        now = datetime(2025, 6, 15, tzinfo=timezone.utc)
        fresh = build_fingerprint(OBSERVED, now=now - timedelta(days=5))
        old = build_fingerprint(OBSERVED, now=now - timedelta(days=31))
        assert is_stale(fresh, 30, now=now) is False
        assert is_stale(old, 30, now=now) is True
        assert is_stale(None, 30, now=now) is True
