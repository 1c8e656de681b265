"""
Browser commands requested by the oracle.

The oracle may ask for a handful of page interactions during interactive
exploration. They arrive as JSON and are turned into one of five frozen
command types here; anything outside the allow-list is rejected before it
can reach a page.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

from .errors import InvalidCommandError


class CommandKind(str, Enum):
    CLICK = "click"
    SCROLL = "scroll"
    WAIT = "wait"
    WAIT_FOR_SELECTOR = "waitForSelector"
    HOVER = "hover"


VALID_BROWSER_COMMANDS = tuple(kind.value for kind in CommandKind)


@dataclass(frozen=True)
class Coordinates:
    x: float
    y: float


@dataclass(frozen=True)
class Click:
    kind: ClassVar[CommandKind] = CommandKind.CLICK
    selector: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    reason: str = ""


@dataclass(frozen=True)
class Scroll:
    kind: ClassVar[CommandKind] = CommandKind.SCROLL
    direction: str = "down"
    amount: int = 300
    reason: str = ""


@dataclass(frozen=True)
class Wait:
    kind: ClassVar[CommandKind] = CommandKind.WAIT
    ms: int = 1000
    reason: str = ""


@dataclass(frozen=True)
class WaitForSelector:
    kind: ClassVar[CommandKind] = CommandKind.WAIT_FOR_SELECTOR
    selector: str = ""
    timeout: int = 5000
    reason: str = ""


@dataclass(frozen=True)
class Hover:
    kind: ClassVar[CommandKind] = CommandKind.HOVER
    selector: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    reason: str = ""


BrowserCommand = Union[Click, Scroll, Wait, WaitForSelector, Hover]


def _coordinates(raw: Any) -> Optional[Coordinates]:
    if not isinstance(raw, dict):
        return None
    x, y = raw.get("x"), raw.get("y")
    if isinstance(x, bool) or isinstance(y, bool):
        return None
    if not isinstance(x, (int, float)) or not isinstance(y, (int, float)):
        return None
    return Coordinates(x=float(x), y=float(y))


def _selector(raw: Dict[str, Any]) -> Optional[str]:
    value = raw.get("selector")
    if isinstance(value, str) and value.strip():
        return value
    return None


def command_problems(raw: Any, index: int = 0) -> Tuple[List[str], List[str]]:
    """Errors and warnings for one raw command, without constructing it."""
    errors: List[str] = []
    warnings: List[str] = []
    if not isinstance(raw, dict):
        return [f"browser_commands[{index}] is not an object"], warnings

    action = raw.get("action")
    if not action:
        return [f"browser_commands[{index}] missing action"], warnings
    if action not in VALID_BROWSER_COMMANDS:
        return [f"browser_commands[{index}] has invalid action: {action}"], warnings

    has_locator = _selector(raw) is not None or _coordinates(raw.get("coordinates")) is not None
    if action == CommandKind.CLICK.value and not has_locator:
        errors.append(f"browser_commands[{index}] click requires selector or coordinates")
    elif action == CommandKind.WAIT_FOR_SELECTOR.value and _selector(raw) is None:
        errors.append(f"browser_commands[{index}] waitForSelector requires selector")
    elif action == CommandKind.HOVER.value and not has_locator:
        warnings.append(f"browser_commands[{index}] hover has no selector or coordinates")
    return errors, warnings


def parse_command(raw: Any) -> BrowserCommand:
    """Build a typed command, raising InvalidCommandError when it is not allowed."""
    errors, warnings = command_problems(raw)
    if errors or warnings:
        raise InvalidCommandError((errors + warnings)[0])

    action = raw["action"]
    reason = str(raw.get("reason") or "")
    if action == CommandKind.CLICK.value:
        return Click(selector=_selector(raw), coordinates=_coordinates(raw.get("coordinates")), reason=reason)
    if action == CommandKind.HOVER.value:
        return Hover(selector=_selector(raw), coordinates=_coordinates(raw.get("coordinates")), reason=reason)
    if action == CommandKind.SCROLL.value:
        direction = raw.get("direction") if raw.get("direction") in ("up", "down") else "down"
        return Scroll(direction=direction, amount=int(raw.get("amount") or 300), reason=reason)
    if action == CommandKind.WAIT.value:
        return Wait(ms=int(raw.get("ms") or 1000), reason=reason)
    return WaitForSelector(selector=raw["selector"], timeout=int(raw.get("timeout") or 5000), reason=reason)


def command_to_dict(command: BrowserCommand) -> Dict[str, Any]:
    data: Dict[str, Any] = {"action": command.kind.value}
    if isinstance(command, (Click, Hover)):
        if command.selector:
            data["selector"] = command.selector
        if command.coordinates:
            data["coordinates"] = {"x": command.coordinates.x, "y": command.coordinates.y}
    elif isinstance(command, Scroll):
        data.update(direction=command.direction, amount=command.amount)
    elif isinstance(command, Wait):
        data["ms"] = command.ms
    elif isinstance(command, WaitForSelector):
        data.update(selector=command.selector, timeout=command.timeout)
    if command.reason:
        data["reason"] = command.reason
    return data
