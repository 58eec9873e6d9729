from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

# Confidence scores below this threshold are reported as uncertain to the user.
LOW_CONFIDENCE_THRESHOLD: float = 0.6


class TestType(str, Enum):
    COVID_19 = "COVID_19"
    PREGNANCY = "PREGNANCY"
    INFLUENZA_A = "INFLUENZA_A"
    INFLUENZA_B = "INFLUENZA_B"
    STREP_A = "STREP_A"
    OTHER = "OTHER"


class TestResult(str, Enum):
    POSITIVE = "POSITIVE"
    NEGATIVE = "NEGATIVE"
    INVALID = "INVALID"
    INCONCLUSIVE = "INCONCLUSIVE"


@dataclass(frozen=True)
class LineSignal:
    detected: bool
    intensity: float


@dataclass(frozen=True)
class SubSignals:
    control_line: LineSignal
    test_line: LineSignal

    def to_dict(self) -> dict[str, Any]:
        return {
            "control_line": {
                "detected": self.control_line.detected,
                "intensity": self.control_line.intensity,
            },
            "test_line": {
                "detected": self.test_line.detected,
                "intensity": self.test_line.intensity,
            },
        }


@dataclass(frozen=True)
class ClassificationResult:
    result: TestResult
    confidence: float
    sub_signals: SubSignals
    metadata: dict[str, Any] = field(default_factory=dict)


class Classifier(Protocol):
    def classify(self, image_bytes: bytes, test_type: TestType) -> ClassificationResult: ...


def check_contract(classification: Any) -> ClassificationResult:
    """Return the classification if it honours the adapter contract, else raise ValueError."""
    if not isinstance(classification, ClassificationResult):
        raise ValueError(
            f"classifier returned {type(classification).__name__}, expected ClassificationResult"
        )
    if not isinstance(classification.result, TestResult):
        raise ValueError(f"unknown result label {classification.result!r}")
    confidence = classification.confidence
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise ValueError(f"confidence must be a number, got {confidence!r}")
    if not 0.0 <= float(confidence) <= 1.0:
        raise ValueError(f"confidence {confidence} outside [0, 1]")
    if not isinstance(classification.sub_signals, SubSignals):
        raise ValueError("classifier did not report control/test line signals")
    return classification


def recommendation_for(classification: ClassificationResult) -> str:
    """Human-readable next step for the person who took the test."""
    signals = classification.sub_signals
    if not signals.control_line.detected:
        return (
            "No control line was detected, so this test cannot be read. "
            "Repeat the test with a new kit."
        )
    if classification.result is TestResult.INVALID:
        return "The test strip could not be read reliably. Repeat the test with a new kit."
    if classification.result is TestResult.INCONCLUSIVE:
        return (
            "The test line is too faint to call. Retake the photo in good light "
            "or repeat the test."
        )
    if classification.result is TestResult.POSITIVE:
        text = (
            "Control and test lines are both visible. Follow local health guidance "
            "and contact a healthcare provider."
        )
    else:
        text = "Only the control line is visible. The test reads negative."
    if classification.confidence < LOW_CONFIDENCE_THRESHOLD:
        text += " Confidence is low; consider retaking the photo."
    return text


__all__ = [
    "Classifier",
    "ClassificationResult",
    "LineSignal",
    "SubSignals",
    "TestType",
    "TestResult",
    "LOW_CONFIDENCE_THRESHOLD",
    "check_contract",
    "recommendation_for",
]
