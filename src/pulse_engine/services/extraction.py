"""Best-effort JSON extraction from free-form agent output.

The coding agent has no output contract: it narrates, echoes tool calls and
may print scratch JSON before its final answer. The extractor collects every
balanced ``{...}`` span, then walks them from last to first and keeps the
first one that parses and looks like an analysis. Key-name drift between
runs is folded into one canonical shape by ``normalize_analysis``.
"""

import json
import logging
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

MARKER_KEYS = ("architecture", "codeQuality", "code_quality", "recommendations")
DEFAULT_SCORE = 75
EXCERPT_LENGTH = 500


class ExtractionError(ValueError):
    """Agent output could not be turned into an analysis object."""


class NoJsonFound(ExtractionError):
    """No balanced JSON object candidate in the text."""


class MalformedJson(ExtractionError):
    """Candidates were found but none of them parsed."""

    def __init__(self, message: str, excerpt: str = ""):
        super().__init__(message)
        self.excerpt = excerpt


def find_json_candidates(text: str) -> List[str]:
    """Return every maximal balanced-brace span, in order of appearance.

    One pass over the text with a stack of open-brace positions. Braces
    inside JSON string literals do not count towards nesting; a string
    also ends at a newline, since JSON strings cannot contain one. An
    opening brace that is never closed is left on the stack and does not
    hide the spans that follow it.
    """
    spans = []  # (start, end) in closing order
    open_braces: List[int] = []
    in_string = False
    escaped = False

    for i, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"' or char == "\n":
                in_string = False
            continue

        if char == "{":
            open_braces.append(i)
        elif char == "}":
            if open_braces:
                spans.append((open_braces.pop(), i))
        elif char == '"' and open_braces:
            in_string = True

    # Spans nest or are disjoint; walking back from the last one closed,
    # a span ending before the last kept start is a new outermost span
    candidates = []
    boundary = len(text)
    for start, end in reversed(spans):
        if end < boundary:
            candidates.append(text[start:end + 1])
            boundary = start

    candidates.reverse()
    return candidates


def _looks_like_analysis(parsed: Any) -> bool:
    return isinstance(parsed, dict) and any(parsed.get(key) is not None for key in MARKER_KEYS)


def extract_json(text: str) -> Dict[str, Any]:
    """Pick the most plausible analysis object out of agent output."""
    candidates = find_json_candidates(text or "")
    if not candidates:
        raise NoJsonFound("No JSON object found in agent output")

    logger.debug("Found %d potential JSON objects", len(candidates))

    for index in range(len(candidates) - 1, -1, -1):
        try:
            parsed = json.loads(candidates[index])
        except json.JSONDecodeError as e:
            logger.debug("JSON candidate %d/%d failed to parse: %s", index + 1, len(candidates), e)
            continue

        if _looks_like_analysis(parsed):
            logger.info("Valid JSON found at position %d/%d", index + 1, len(candidates))
            return parsed

    last = candidates[-1]
    try:
        parsed = json.loads(last)
    except json.JSONDecodeError as e:
        raise MalformedJson(
            f"Extracted JSON is not valid: {e}",
            excerpt=last[:EXCERPT_LENGTH],
        ) from e

    if not isinstance(parsed, dict):
        raise MalformedJson("Extracted JSON is not an object", excerpt=last[:EXCERPT_LENGTH])
    return parsed


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _coerce_score(value: Any, default: int) -> int:
    if isinstance(value, bool) or value is None:
        return default
    try:
        score = float(value)
    except (TypeError, ValueError):
        return default
    return int(round(min(max(score, 0), 100)))


def _normalize_architecture(value: Any) -> Dict[str, Any]:
    if isinstance(value, str):
        return {"pattern": value, "strengths": [], "weaknesses": []}
    if not isinstance(value, dict):
        return {"pattern": "Unknown", "strengths": [], "weaknesses": []}
    return {
        "pattern": value.get("pattern") or "Unknown",
        "strengths": _as_list(value.get("strengths")),
        "weaknesses": _as_list(value.get("weaknesses")),
    }


def _normalize_code_quality(data: Dict[str, Any], default_score: int) -> Dict[str, Any]:
    for key in ("codeQuality", "code_quality"):
        value = data.get(key)
        if isinstance(value, dict):
            return {
                "score": _coerce_score(value.get("score"), default_score),
                "issues": _as_list(value.get("issues")),
            }
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return {"score": _coerce_score(value, default_score), "issues": []}

    for key in ("code_quality_score", "codeQualityScore", "score"):
        if key in data:
            return {"score": _coerce_score(data[key], default_score), "issues": []}

    return {"score": default_score, "issues": []}


def _normalize_security(data: Dict[str, Any]) -> List[Any]:
    security = data.get("security")
    if isinstance(security, list):
        return security
    if isinstance(security, dict) and isinstance(security.get("vulnerabilities"), list):
        return security["vulnerabilities"]

    assessment = data.get("security_assessment") or data.get("securityAssessment")
    if isinstance(assessment, dict) and isinstance(assessment.get("vulnerabilities"), list):
        return assessment["vulnerabilities"]
    if isinstance(assessment, list):
        return assessment

    return []


def normalize_analysis(data: Dict[str, Any], default_score: int = DEFAULT_SCORE) -> Dict[str, Any]:
    """Coerce an extracted object into the canonical analysis shape."""
    return {
        "architecture": _normalize_architecture(data.get("architecture")),
        "codeQuality": _normalize_code_quality(data, default_score),
        "bugs": _as_list(data.get("bugs", data.get("potential_bugs"))),
        "security": _normalize_security(data),
        "recommendations": _as_list(data.get("recommendations")),
    }


def parse_analysis_output(text: str, default_score: int = DEFAULT_SCORE) -> Dict[str, Any]:
    """extract_json followed by normalize_analysis."""
    return normalize_analysis(extract_json(text), default_score=default_score)
