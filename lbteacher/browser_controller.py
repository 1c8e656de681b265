"""
Executes oracle-requested browser commands on a page and captures the
resulting page state for the next interactive round.

Commands are already typed and allow-listed (see ``commands``); this module
only clamps their durations, fixes up selector dialects the oracle likes to
produce, and records what was done.
"""

import base64
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .commands import BrowserCommand, Click, Hover, Scroll, Wait, WaitForSelector, command_to_dict
from .page import PageHandle

logger = logging.getLogger(__name__)

MAX_WAIT_MS = 10000
MAX_WAIT_FOR_SELECTOR_MS = 15000
CLICK_TIMEOUT_MS = 5000
CLICK_SETTLE_MS = 1000
SCROLL_SETTLE_MS = 500
BETWEEN_COMMANDS_MS = 300
API_RESPONSES_IN_STATE = 10

_CONTAINS = re.compile(r":contains\(['\"](.+?)['\"]\)")

DOM_SUMMARY_SCRIPT = """
() => {
  const summarize = (el, depth) => {
    if (depth > 3 || !el || !el.tagName) return null;
    const rect = el.getBoundingClientRect();
    if (rect.width === 0 || rect.height === 0) return null;
    const style = window.getComputedStyle(el);
    if (style.display === 'none' || style.visibility === 'hidden') return null;

    const node = {
      tag: el.tagName.toLowerCase(),
      rect: {x: Math.round(rect.x), y: Math.round(rect.y), w: Math.round(rect.width), h: Math.round(rect.height)}
    };
    if (el.id) node.id = el.id;
    if (typeof el.className === 'string') {
      const classes = el.className.split(' ').filter(c => c).slice(0, 3);
      if (classes.length) node.classes = classes;
    }
    const text = (el.innerText || '').trim();
    if (text && text.length <= 100 && !el.children.length) node.text = text;
    if (['A', 'BUTTON'].includes(el.tagName) || el.getAttribute('role') === 'button'
        || el.getAttribute('tabindex') === '0') {
      node.clickable = true;
    }
    const children = Array.from(el.children).slice(0, 5)
      .map(child => summarize(child, depth + 1))
      .filter(Boolean);
    if (children.length) node.children = children;
    return node;
  };
  return summarize(document.body, 0);
}
"""


def sanitize_selector(selector: Optional[str]) -> Optional[str]:
    """Rewrite jQuery ``:contains('x')`` into Playwright ``:has-text("x")``."""
    if not selector:
        return selector
    return _CONTAINS.sub(lambda m: f':has-text("{m.group(1)}")', selector)


@dataclass
class CommandResult:
    success: bool
    action: str
    error: Optional[str] = None
    duration_ms: int = 0


@dataclass
class PageState:
    url: str
    screenshot: Optional[str] = None
    dom_summary: Optional[Dict[str, Any]] = None
    api_responses: List[Dict[str, Any]] = field(default_factory=list)
    captured_at: str = ""
    error: Optional[str] = None

    def to_context(self) -> Dict[str, Any]:
        """State as sent to the oracle (the screenshot travels as an image block)."""
        return {
            "url": self.url,
            "dom_summary": self.dom_summary,
            "api_responses": self.api_responses,
            "captured_at": self.captured_at,
        }


def recent_api_responses(network_data: Optional[Dict[str, Any]], limit: int) -> List[Dict[str, Any]]:
    responses = (network_data or {}).get("raw_json_responses") or []
    return [
        {"url": r.get("url"), "timestamp": r.get("timestamp"), "data": r.get("data")}
        for r in responses[-limit:]
        if isinstance(r, dict)
    ]


class BrowserController:
    """Runs typed browser commands against a PageHandle."""

    def __init__(self, page: PageHandle, network_data: Optional[Dict[str, Any]] = None):
        self.page = page
        self.network_data = network_data or {}
        self.action_log: List[Dict[str, Any]] = []
        self._started = time.monotonic()

    async def capture_state(self) -> PageState:
        url = ""
        try:
            url = await self.page.current_url()
            screenshot = await self.page.screenshot()
            dom_summary = await self.page.evaluate(DOM_SUMMARY_SCRIPT)
        except Exception as e:
            logger.error(f"Failed to capture page state: {e}")
            return PageState(
                url=url,
                captured_at=datetime.now(timezone.utc).isoformat(),
                error=str(e),
            )

        return PageState(
            url=url,
            screenshot=base64.b64encode(screenshot).decode("ascii"),
            dom_summary=dom_summary,
            api_responses=recent_api_responses(self.network_data, API_RESPONSES_IN_STATE),
            captured_at=datetime.now(timezone.utc).isoformat(),
        )

    async def execute_command(self, command: BrowserCommand) -> CommandResult:
        started = time.monotonic()
        action = command.kind.value
        entry = command_to_dict(command)
        entry["elapsed_ms"] = int((started - self._started) * 1000)
        self.action_log.append(entry)
        logger.debug(f"Executing browser command: {entry}")

        try:
            if isinstance(command, Click):
                await self.page.click(
                    selector=sanitize_selector(command.selector),
                    coordinates=command.coordinates,
                    timeout=CLICK_TIMEOUT_MS,
                )
                await self.page.wait(CLICK_SETTLE_MS)
            elif isinstance(command, Hover):
                await self.page.hover(
                    selector=sanitize_selector(command.selector),
                    coordinates=command.coordinates,
                    timeout=CLICK_TIMEOUT_MS,
                )
            elif isinstance(command, Scroll):
                await self.page.scroll(command.direction, command.amount)
                await self.page.wait(SCROLL_SETTLE_MS)
            elif isinstance(command, Wait):
                await self.page.wait(min(command.ms, MAX_WAIT_MS))
            elif isinstance(command, WaitForSelector):
                await self.page.wait_for_selector(
                    sanitize_selector(command.selector),
                    min(command.timeout, MAX_WAIT_FOR_SELECTOR_MS),
                )
        except Exception as e:
            logger.warning(f"Browser command {action} failed: {e}")
            return CommandResult(
                success=False,
                action=action,
                error=str(e),
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        return CommandResult(success=True, action=action, duration_ms=int((time.monotonic() - started) * 1000))

    async def execute_commands(self, commands: List[BrowserCommand]) -> List[CommandResult]:
        results = []
        for command in commands:
            results.append(await self.execute_command(command))
            await self.page.wait(BETWEEN_COMMANDS_MS)
        return results

    def summary(self) -> Dict[str, Any]:
        return {
            "total_actions": len(self.action_log),
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "actions": list(self.action_log),
        }
