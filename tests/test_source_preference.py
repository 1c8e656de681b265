"""Tests for API vs DOM source arbitration."""

import pytest

from lbteacher.source_preference import (
    COMPARISON_MAX_TOKENS,
    SOURCE_API,
    SOURCE_DOM,
    compare_data_sources,
    get_data_source_preference,
    heuristic_comparison,
    looks_like_website_name,
    save_data_source_preference,
    source_issues,
)


def clean_entries(count=5):
    return [
        {"rank": i, "username": f"pl***{i}", "wager": 50000 - i * 1000, "prize": 500 - i * 50}
        for i in range(1, count + 1)
    ]


class TestWebsiteNames:
    def test_known_names(self):
        assert looks_like_website_name("Gamdom") is True
        assert looks_like_website_name("stake.com") is True
        assert looks_like_website_name("https://foo") is True

    def test_real_usernames(self):
        assert looks_like_website_name("J***n") is False
        assert looks_like_website_name("jo***@gmail.com") is False
        assert looks_like_website_name(None) is False


class TestSourceIssues:
    def test_clean(self):
        assert source_issues(clean_entries()) == []

    def test_site_names_and_zero_prizes(self):
        entries = clean_entries()
        entries[0]["username"] = "Gamdom.com"
        entries[1]["prize"] = 0
        issues = source_issues(entries)
        assert any("website names" in i for i in issues)
        assert any("1 of top 3" in i for i in issues)

    def test_low_wagers(self):
        entries = [{"rank": 1, "username": "a", "wager": 5, "prize": 1}]
        assert "Suspiciously low average wager" in source_issues(entries)


class TestHeuristicComparison:
    """Test the oracle-free decision."""

    def test_missing_sides(self):
        assert heuristic_comparison([], clean_entries()).reason == "no_api_data"
        no_dom = heuristic_comparison(clean_entries(), [])
        assert (no_dom.winner, no_dom.confidence) == (SOURCE_API, 100)

    def test_api_with_issues_loses(self):
        api = clean_entries()
        api[0]["username"] = "Stake"
        comparison = heuristic_comparison(api, clean_entries())
        assert comparison.winner == SOURCE_DOM
        assert comparison.confidence == 90
        assert comparison.api_issues

    def test_more_api_entries_wins(self):
        comparison = heuristic_comparison(clean_entries(10), clean_entries(5))
        assert (comparison.winner, comparison.confidence) == (SOURCE_API, 60)

    def test_equal_counts_prefer_dom(self):
        comparison = heuristic_comparison(clean_entries(5), clean_entries(5))
        assert (comparison.winner, comparison.confidence) == (SOURCE_DOM, 60)


class TestCompareDataSources:
    """Test escalation to the oracle."""

    @pytest.mark.asyncio
    async def test_decisive_heuristics_skip_oracle(self, oracle, transport):
        comparison = await compare_data_sources([], clean_entries(), "stake", oracle=oracle, domain="example.com")
        assert comparison.winner == SOURCE_DOM
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_oracle_decides_close_call(self, oracle, transport):
        transport.replies = ['{"winner": "api", "reason": "dom misses prizes", "confidence": 88, "issues_found": ["x"]}']

        comparison = await compare_data_sources(
            clean_entries(5), clean_entries(5), "stake", oracle=oracle, domain="example.com",
        )

        assert comparison.winner == SOURCE_API
        assert comparison.llm_decision is True
        assert comparison.confidence == 88
        assert comparison.issues_found == ["x"]
        assert transport.requests[0].max_tokens == COMPARISON_MAX_TOKENS

    @pytest.mark.asyncio
    async def test_bad_oracle_answer_falls_back(self, oracle, transport):
        transport.replies = ['{"winner": "both"}']
        comparison = await compare_data_sources(clean_entries(5), clean_entries(5), "stake", oracle=oracle)
        assert comparison.winner == SOURCE_DOM
        assert comparison.llm_decision is False

    @pytest.mark.asyncio
    async def test_without_oracle(self):
        comparison = await compare_data_sources(clean_entries(10), clean_entries(5), "stake")
        assert comparison.winner == SOURCE_API


class TestPersistence:
    def test_save_and_get(self, profiles):
        comparison = heuristic_comparison([], clean_entries())
        save_data_source_preference(profiles, "example.com", "Stake", comparison)

        preference = get_data_source_preference(profiles, "example.com", "stake")

        assert preference.source == SOURCE_DOM
        assert preference.reason == "no_api_data"
        assert preference.decided_at
        assert get_data_source_preference(profiles, "example.com", "gamdom") is None
