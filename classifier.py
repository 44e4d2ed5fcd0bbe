"""Maps raw generation failures onto a small, stable set of user-facing errors.

Rules are checked in order and the first match wins; ``Unknown`` always
matches, so every failure gets exactly one classification.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Callable


class ErrorKind(str, Enum):
    QUOTA_EXCEEDED = "quota_exceeded"
    MODEL_NOT_FOUND = "model_not_found"
    TRANSPORT_FAILURE = "transport_failure"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    user_message: str
    status_code: int


Matcher = Callable[[str, int | None], bool]


@dataclass(frozen=True)
class Rule:
    kind: ErrorKind
    status_code: int
    user_message: str
    matches: Matcher


def _contains(*needles: str, code: int | None = None) -> Matcher:
    def match(raw_message: str, raw_code: int | None) -> bool:
        if code is not None and raw_code == code:
            return True
        return any(n in raw_message for n in needles)

    return match


RULES: tuple[Rule, ...] = (
    Rule(
        ErrorKind.QUOTA_EXCEEDED,
        429,
        "The assistant is under heavy load right now. Please pause for a moment and try again later.",
        _contains("429", "Quota exceeded", code=429),
    ),
    Rule(
        ErrorKind.MODEL_NOT_FOUND,
        500,
        "The assistant is misconfigured (model not available). Please contact the administrator.",
        _contains("404", code=404),
    ),
    Rule(
        ErrorKind.TRANSPORT_FAILURE,
        500,
        "Could not reach the AI service. Check the server's network or firewall connectivity.",
        _contains("fetch failed"),
    ),
    Rule(
        ErrorKind.UNKNOWN,
        500,
        "Internal error while generating a response. Please try again.",
        lambda raw_message, raw_code: True,
    ),
)


def classify(raw_message: str | None, raw_code: int | None = None) -> ClassifiedError:
    text = raw_message or ""
    for rule in RULES:
        if rule.matches(text, raw_code):
            return ClassifiedError(rule.kind, rule.user_message, rule.status_code)
    raise AssertionError("classification table has no catch-all rule")
