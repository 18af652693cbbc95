"""Prompt-injection screening for submitted task and criteria text.

Inputs are matched against a fixed table of phrases commonly used to
hijack a model (instruction overrides, role changes, prompt extraction,
credential fishing, code execution, chat-template delimiters). Matches are
reported as threats and, when redacting, replaced with a marker before the
text reaches any prompt.
"""

import re
from dataclasses import dataclass, field
from enum import Enum

REDACTION_MARKER = "[REDACTED]"


class ThreatType(str, Enum):
    INSTRUCTION_OVERRIDE = "instruction_override"
    ROLE_MANIPULATION = "role_manipulation"
    INSTRUCTION_INJECTION = "instruction_injection"
    PROMPT_EXTRACTION = "prompt_extraction"
    CREDENTIAL_EXTRACTION = "credential_extraction"
    CODE_EXECUTION = "code_execution"
    DELIMITER_MANIPULATION = "delimiter_manipulation"


def _rule(pattern: str, threat: ThreatType, description: str) -> tuple[re.Pattern[str], ThreatType, str]:
    return re.compile(pattern, re.IGNORECASE), threat, description


THREAT_PATTERNS: tuple[tuple[re.Pattern[str], ThreatType, str], ...] = (
    _rule(r"ignore\s+(all\s+)?(previous|prior|above)\s+instructions",
          ThreatType.INSTRUCTION_OVERRIDE, "Attempt to ignore previous instructions"),
    _rule(r"disregard\s+(all\s+)?(previous|prior|above)",
          ThreatType.INSTRUCTION_OVERRIDE, "Attempt to disregard previous context"),
    _rule(r"forget\s+(all\s+)?(previous|prior|above)",
          ThreatType.INSTRUCTION_OVERRIDE, "Attempt to forget previous context"),
    _rule(r"override\s+(all\s+)?(previous|prior|above)",
          ThreatType.INSTRUCTION_OVERRIDE, "Attempt to override previous instructions"),
    _rule(r"you\s+are\s+now\s+",
          ThreatType.ROLE_MANIPULATION, "Attempt to change the model's role"),
    _rule(r"pretend\s+(to\s+be|you\s+are)",
          ThreatType.ROLE_MANIPULATION, "Attempt to make the model pretend"),
    _rule(r"act\s+as\s+(if\s+you\s+are|a)\b",
          ThreatType.ROLE_MANIPULATION, "Attempt to make the model act as something else"),
    _rule(r"roleplay\s+as",
          ThreatType.ROLE_MANIPULATION, "Roleplay injection attempt"),
    _rule(r"(new|updated|revised|actual)\s+instructions?:",
          ThreatType.INSTRUCTION_INJECTION, "Attempt to inject replacement instructions"),
    _rule(r"system\s*prompt",
          ThreatType.PROMPT_EXTRACTION, "Reference to the system prompt"),
    _rule(r"reveal\s+(your|the)\s+(instructions|prompt|system)",
          ThreatType.PROMPT_EXTRACTION, "Attempt to extract instructions"),
    _rule(r"show\s+(me\s+)?(your|the)\s+(instructions|prompt)",
          ThreatType.PROMPT_EXTRACTION, "Attempt to view instructions"),
    _rule(r"what\s+(are|is)\s+your\s+(instructions|prompt|system)",
          ThreatType.PROMPT_EXTRACTION, "Attempt to query system instructions"),
    _rule(r"api[_\s-]?key",
          ThreatType.CREDENTIAL_EXTRACTION, "Possible API key extraction"),
    _rule(r"secret[_\s-]?key",
          ThreatType.CREDENTIAL_EXTRACTION, "Possible secret key extraction"),
    _rule(r"access[_\s-]?token",
          ThreatType.CREDENTIAL_EXTRACTION, "Possible access token extraction"),
    _rule(r"\b(exec|eval|system)\s*\(",
          ThreatType.CODE_EXECUTION, "Possible code execution call"),
    _rule(r"subprocess|child_process",
          ThreatType.CODE_EXECUTION, "Process spawning reference"),
    _rule(r"```\s*system",
          ThreatType.DELIMITER_MANIPULATION, "System code block"),
    _rule(r"</?system>",
          ThreatType.DELIMITER_MANIPULATION, "System XML tag"),
    _rule(r"\[/?INST\]",
          ThreatType.DELIMITER_MANIPULATION, "Instruction delimiter"),
)


@dataclass(frozen=True)
class DetectedThreat:
    type: ThreatType
    match: str
    position: int
    description: str


@dataclass
class SanitizationResult:
    """Outcome of screening one piece of text."""

    original: str
    sanitized: str
    threats: list[DetectedThreat] = field(default_factory=list)

    @property
    def is_safe(self) -> bool:
        return not self.threats

    @property
    def threat_types(self) -> list[str]:
        return sorted({threat.type.value for threat in self.threats})


def detect_threats(text: str) -> list[DetectedThreat]:
    """All pattern matches in `text`, ordered by position."""
    threats = [
        DetectedThreat(type=threat, match=match.group(0), position=match.start(), description=description)
        for pattern, threat, description in THREAT_PATTERNS
        for match in pattern.finditer(text)
    ]
    return sorted(threats, key=lambda t: t.position)


def sanitize(text: str, redact: bool = True) -> SanitizationResult:
    """Screen `text` and optionally replace every match with REDACTION_MARKER.

    Args:
        text: Input to screen
        redact: Replace matches; when False the text is returned unchanged

    Returns:
        SanitizationResult with the (possibly) redacted text and threats found
    """
    threats = detect_threats(text)
    sanitized = text
    if redact and threats:
        for pattern, _, _ in THREAT_PATTERNS:
            sanitized = pattern.sub(REDACTION_MARKER, sanitized)
    return SanitizationResult(original=text, sanitized=sanitized, threats=threats)


def sanitize_criteria(criteria: list[str], redact: bool = True) -> list[SanitizationResult]:
    return [sanitize(criterion, redact=redact) for criterion in criteria]


def threat_summary(threats: list[DetectedThreat]) -> str:
    """Human-readable count of threats per type."""
    if not threats:
        return "No threats detected"

    counts: dict[str, int] = {}
    for threat in threats:
        counts[threat.type.value] = counts.get(threat.type.value, 0) + 1
    parts = ", ".join(f"{name}: {count}" for name, count in counts.items())
    return f"Detected {len(threats)} threat(s): {parts}"
