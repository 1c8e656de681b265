"""Shared fixtures: scripted oracle transport, scripted page, tmp-path config."""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
from unittest.mock import AsyncMock

from lbteacher.budget import BudgetLedger
from lbteacher.config import TeacherConfig
from lbteacher.llm_client import OracleClient, OracleReply
from lbteacher.site_profiles import ProfileStore

FIXED_NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


class FakeTransport:
    """Oracle transport that replays scripted replies or raises scripted errors."""

    def __init__(self, replies: Optional[List[Any]] = None, input_tokens: int = 1000, output_tokens: int = 500):
        self.replies = list(replies or [])
        self.requests = []
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens

    async def create_message(self, request):
        self.requests.append(request)
        if not self.replies:
            raise AssertionError("FakeTransport ran out of scripted replies")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, dict):
            reply = json.dumps(reply)
        if isinstance(reply, str):
            return OracleReply(text=reply, input_tokens=self.input_tokens, output_tokens=self.output_tokens)
        return reply


class FakePage:
    """Scripted PageHandle that records every interaction."""

    def __init__(self, url: str = "https://example.com/leaderboard", fail_on: Optional[set] = None):
        self.url = url
        self.actions: List[Dict[str, Any]] = []
        self.scripts: Dict[str, Any] = {}
        self.fail_on = fail_on or set()

    def _record(self, action: str, **details):
        self.actions.append({"action": action, **details})
        if action in self.fail_on:
            raise RuntimeError(f"{action} failed")

    async def screenshot(self) -> bytes:
        self._record("screenshot")
        return b"\x89PNG fake"

    async def current_url(self) -> str:
        return self.url

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        self._record("evaluate")
        value = self.scripts.get(script)
        return value(arg) if callable(value) else value

    async def click(self, selector=None, coordinates=None, timeout=5000):
        self._record("click", selector=selector, coordinates=coordinates, timeout=timeout)

    async def hover(self, selector=None, coordinates=None, timeout=5000):
        self._record("hover", selector=selector, coordinates=coordinates, timeout=timeout)

    async def scroll(self, direction: str, amount: int):
        self._record("scroll", direction=direction, amount=amount)

    async def wait_for_selector(self, selector: str, timeout: int):
        self._record("wait_for_selector", selector=selector, timeout=timeout)

    async def wait(self, ms: int):
        self._record("wait", ms=ms)

    def performed(self, action: str) -> List[Dict[str, Any]]:
        return [a for a in self.actions if a["action"] == action]


def oracle_answer(confidence: float, **extra) -> Dict[str, Any]:
    answer = {
        "data_verification": {"is_correct": True, "issues": []},
        "switchers": [{"name": "stake", "selector": "button.stake"}],
        "extraction": {"container_selector": ".leaderboard"},
        "notes": {"confidence": confidence, "observations": ["podium plus table"], "warnings": []},
    }
    answer.update(extra)
    return answer


def leaderboard_result(name: str = "stake", count: int = 5, confidence: float = 60) -> Dict[str, Any]:
    entries = [
        {"rank": i, "username": f"player{i}", "wager": 100000 - i * 5000, "prize": 1000 - i * 100}
        for i in range(1, count + 1)
    ]
    return {"results": [{"name": name, "entries": entries}], "confidence": confidence}


@pytest.fixture
def config(tmp_path):
    return TeacherConfig(
        enabled=True,
        api_key="test-key",
        data_dir=tmp_path / "data",
        retry_delay=0,
        keywords_file=tmp_path / "keywords.txt",
    )


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def ledger(config, clock):
    return BudgetLedger(config, clock=clock)


@pytest.fixture
def profiles(config):
    return ProfileStore(config)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def oracle(config, ledger, transport):
    return OracleClient(config, ledger, transport=transport, sleep=AsyncMock())


@pytest.fixture
def page():
    return FakePage()
