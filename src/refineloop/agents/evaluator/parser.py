"""Response interpreter for evaluator replies.

Evaluator output is free text that often deviates from the strict JSON it
was asked for. Recovery is layered, first success wins:

1. The whole trimmed reply as one JSON object
2. A ```json fenced block, then any fenced block
3. The first balanced {...} span found by depth counting

If every layer fails the fixed fallback feedback is returned. The
interpreter never raises.
"""

import json
import re
from typing import Any

import structlog
from pydantic import ValidationError

from ...schemas.feedback import Feedback, fallback_feedback

logger = structlog.get_logger(__name__)

_LABELED_FENCE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_GENERIC_FENCE = re.compile(r"```\s*([\s\S]*?)```")


def _validate(candidate: str) -> Feedback | None:
    """Parse and validate one candidate substring."""
    try:
        data: Any = json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    try:
        return Feedback.model_validate(data)
    except ValidationError as e:
        logger.debug("Feedback failed validation", errors=e.error_count())
        return None


def _fenced_candidates(text: str) -> list[str]:
    candidates = []
    for pattern in (_LABELED_FENCE, _GENERIC_FENCE):
        match = pattern.search(text)
        if match:
            candidates.append(match.group(1).strip())
    return candidates


def _balanced_object(text: str) -> str | None:
    """Substring from the first "{" to its matching "}".

    Braces inside JSON string literals are ignored.
    """
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def parse_feedback(text: str) -> Feedback:
    """Turn an evaluator reply into Feedback.

    Args:
        text: Raw evaluator reply

    Returns:
        Validated Feedback, or the fallback when nothing parses
    """
    trimmed = (text or "").strip()

    feedback = _validate(trimmed)
    if feedback is not None:
        return feedback

    for candidate in _fenced_candidates(trimmed):
        feedback = _validate(candidate)
        if feedback is not None:
            logger.debug("Feedback recovered from fenced block")
            return feedback

    span = _balanced_object(trimmed)
    if span is not None:
        feedback = _validate(span)
        if feedback is not None:
            logger.debug("Feedback recovered from embedded object")
            return feedback

    logger.warning(
        "Evaluator reply could not be parsed, using fallback feedback",
        reply_length=len(trimmed),
        reply_preview=trimmed[:200],
    )
    return fallback_feedback()
