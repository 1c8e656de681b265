"""
Oracle response parsing and validation.

The oracle answers in free-form text that should contain one JSON object.
Parsing is two-stage (fenced code block first, then the first balanced
bracket span) and returns a discriminated result instead of raising.

Usage:
    from lbteacher.response_parser import parse_response

    parsed = parse_response(reply_text)
    if parsed.success:
        fields = parsed.fields
        if wants_to_continue(fields, threshold=80):
            ...
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .commands import BrowserCommand, command_problems, parse_command
from .errors import InvalidCommandError

logger = logging.getLogger(__name__)

DEFAULT_SUCCESS_THRESHOLD = 80

_FENCE_PATTERNS = (
    re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE),
    re.compile(r"```[a-zA-Z]*\s*([\s\S]*?)```"),
)


@dataclass
class JSONExtraction:
    success: bool
    value: Any = None
    error: Optional[str] = None


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class CorrectionIssue:
    leaderboard: Optional[str] = None
    problem: str = ""
    corrected_data: Optional[List[Dict[str, Any]]] = None


@dataclass
class ParsedFields:
    """Oracle answer with every field defaulted"""
    confidence: float = 0
    is_correct: bool = True
    issues: List[CorrectionIssue] = field(default_factory=list)
    switchers: List[Dict[str, Any]] = field(default_factory=list)
    extraction: Dict[str, Any] = field(default_factory=dict)
    api_patterns: Dict[str, Any] = field(default_factory=dict)
    extraction_config: Dict[str, Any] = field(default_factory=dict)
    layout_fingerprint: Dict[str, Any] = field(default_factory=dict)
    observations: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    browser_commands: List[BrowserCommand] = field(default_factory=list)
    finished: bool = False
    missed_leaderboards: List[Any] = field(default_factory=list)


@dataclass
class ParsedResponse:
    success: bool
    fields: Optional[ParsedFields] = None
    raw: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _fenced_candidate(text: str) -> Optional[str]:
    for pattern in _FENCE_PATTERNS:
        for match in pattern.finditer(text):
            candidate = match.group(1).strip()
            if candidate.startswith("{") or candidate.startswith("["):
                return candidate
    return None


def _balanced_span(text: str) -> Optional[str]:
    """First ``{...}`` or ``[...]`` span, counting bracket depth outside strings."""
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        return None
    start = min(starts)

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    # Unbalanced: hand back the remainder and let the parser report it
    return text[start:]


def extract_json(text: Any) -> JSONExtraction:
    if not isinstance(text, str) or not text.strip():
        return JSONExtraction(success=False, error="Empty or non-string response")

    fenced = _fenced_candidate(text)
    if fenced is not None:
        try:
            return JSONExtraction(success=True, value=json.loads(fenced))
        except json.JSONDecodeError as e:
            logger.debug(f"Fenced block is not valid JSON ({e}); scanning for brackets")

    candidate = _balanced_span(text)
    if candidate is None:
        return JSONExtraction(success=False, error="No JSON object or array found in response")
    try:
        return JSONExtraction(success=True, value=json.loads(candidate))
    except json.JSONDecodeError as e:
        return JSONExtraction(success=False, error=f"Invalid JSON: {e}")


def _confidence(value: Dict[str, Any]) -> Any:
    notes = value.get("notes")
    if isinstance(notes, dict) and "confidence" in notes:
        return notes.get("confidence")
    return value.get("confidence")


def validate(value: Any) -> ValidationResult:
    """Check an extracted oracle answer against the expected schema."""
    errors: List[str] = []
    warnings: List[str] = []

    if not isinstance(value, dict):
        return ValidationResult(valid=False, errors=["Response is not a JSON object"])

    confidence = _confidence(value)
    if confidence is None:
        errors.append("Missing notes.confidence")
    elif not _is_number(confidence):
        errors.append("notes.confidence must be a number")
    elif confidence < 0 or confidence > 100:
        errors.append(f"notes.confidence out of range: {confidence}")

    notes = value.get("notes")
    if isinstance(notes, dict) and "observations" in notes and not isinstance(notes["observations"], list):
        warnings.append("notes.observations should be an array")

    verification = value.get("data_verification")
    if isinstance(verification, dict) and "is_correct" in verification:
        if not isinstance(verification["is_correct"], bool):
            warnings.append("data_verification.is_correct should be a boolean")

    switchers = value.get("switchers")
    if switchers is not None:
        if not isinstance(switchers, list):
            warnings.append("switchers should be an array")
        else:
            for i, switcher in enumerate(switchers):
                if not isinstance(switcher, dict):
                    warnings.append(f"switchers[{i}] is not an object")
                    continue
                if not switcher.get("name"):
                    warnings.append(f"switchers[{i}] missing name")
                if not switcher.get("selector") and not isinstance(switcher.get("coordinates"), dict):
                    warnings.append(f"switchers[{i}] has no selector or coordinates")

    if "extraction" in value and not isinstance(value["extraction"], dict):
        warnings.append("extraction should be an object")

    fingerprint = value.get("layout_fingerprint")
    if isinstance(fingerprint, dict) and "switcher_count" in fingerprint:
        if not _is_number(fingerprint["switcher_count"]):
            warnings.append("layout_fingerprint.switcher_count should be a number")

    commands = value.get("browser_commands")
    if commands is not None:
        if not isinstance(commands, list):
            errors.append("browser_commands must be an array")
        else:
            for i, raw in enumerate(commands):
                cmd_errors, cmd_warnings = command_problems(raw, i)
                errors.extend(cmd_errors)
                warnings.extend(cmd_warnings)

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def _as_list(value: Any) -> list:
    return list(value) if isinstance(value, list) else []


def _as_dict(value: Any) -> dict:
    return dict(value) if isinstance(value, dict) else {}


def extract_fields(value: Any) -> ParsedFields:
    """Normalize an oracle answer into ParsedFields; missing keys get defaults."""
    if not isinstance(value, dict):
        return ParsedFields()

    verification = _as_dict(value.get("data_verification"))
    notes = _as_dict(value.get("notes"))

    issues = []
    for raw in _as_list(verification.get("issues")):
        if not isinstance(raw, dict):
            continue
        corrected = raw.get("corrected_data")
        issues.append(CorrectionIssue(
            leaderboard=raw.get("leaderboard"),
            problem=str(raw.get("problem") or ""),
            corrected_data=corrected if isinstance(corrected, list) else None,
        ))

    commands: List[BrowserCommand] = []
    for raw in _as_list(value.get("browser_commands")):
        try:
            commands.append(parse_command(raw))
        except InvalidCommandError as e:
            logger.warning(f"Dropping browser command: {e}")

    confidence = _confidence(value)
    is_correct = verification.get("is_correct")

    return ParsedFields(
        confidence=confidence if _is_number(confidence) else 0,
        is_correct=is_correct if isinstance(is_correct, bool) else True,
        issues=issues,
        switchers=[s for s in _as_list(value.get("switchers")) if isinstance(s, dict)],
        extraction=_as_dict(value.get("extraction")),
        api_patterns=_as_dict(value.get("api_patterns")),
        extraction_config=_as_dict(value.get("extraction_config")),
        layout_fingerprint=_as_dict(value.get("layout_fingerprint")),
        observations=[str(o) for o in _as_list(notes.get("observations"))],
        warnings=[str(w) for w in _as_list(notes.get("warnings"))],
        browser_commands=commands,
        finished=value.get("finished") is True,
        missed_leaderboards=_as_list(value.get("missed_leaderboards")),
    )


def wants_to_continue(value: Union[ParsedFields, Dict[str, Any]], threshold: float = DEFAULT_SUCCESS_THRESHOLD) -> bool:
    """Whether the oracle needs another interactive round."""
    fields = value if isinstance(value, ParsedFields) else extract_fields(value)
    if fields.finished:
        return False
    if fields.browser_commands:
        return True
    return fields.confidence < threshold


def parse_response(text: str) -> ParsedResponse:
    """extract_json + validate + extract_fields in one step."""
    extracted = extract_json(text)
    if not extracted.success:
        return ParsedResponse(success=False, error=extracted.error)

    validation = validate(extracted.value)
    if not validation.valid:
        return ParsedResponse(
            success=False,
            raw=extracted.value if isinstance(extracted.value, dict) else None,
            error=f"Validation failed: {'; '.join(validation.errors)}",
            errors=validation.errors,
            warnings=validation.warnings,
        )

    for warning in validation.warnings:
        logger.debug(f"Oracle response warning: {warning}")

    return ParsedResponse(
        success=True,
        fields=extract_fields(extracted.value),
        raw=extracted.value,
        warnings=validation.warnings,
    )
