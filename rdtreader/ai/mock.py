from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .types import ClassificationResult, LineSignal, SubSignals, TestResult, TestType

_DEMO_OUTCOMES: tuple[tuple[TestResult, float], ...] = (
    (TestResult.POSITIVE, 0.92),
    (TestResult.NEGATIVE, 0.88),
    (TestResult.INVALID, 0.95),
    (TestResult.INCONCLUSIVE, 0.45),
)


@dataclass
class RandomDemoClassifier:
    """Demo backend that picks a canned outcome at random.

    Only for demos: pass a seed for repeatable runs. Never use it where results matter.
    """

    seed: int | None = None
    delay_seconds: float = 0.0
    model_name: str = "rdt-analyzer-demo"
    _rng: random.Random = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._rng = random.Random(self.seed)

    def classify(self, image_bytes: bytes, test_type: TestType) -> ClassificationResult:
        if self.delay_seconds > 0:
            time.sleep(self.delay_seconds)
        result, confidence = self._rng.choice(_DEMO_OUTCOMES)
        control_seen = result is not TestResult.INVALID
        test_seen = result is TestResult.POSITIVE
        return ClassificationResult(
            result=result,
            confidence=confidence,
            sub_signals=SubSignals(
                control_line=LineSignal(control_seen, 0.8 if control_seen else 0.0),
                test_line=LineSignal(
                    test_seen, 0.7 if test_seen else (0.08 if result is TestResult.INCONCLUSIVE else 0.0)
                ),
            ),
            metadata={
                "model": self.model_name,
                "test_type": test_type.value,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )


__all__ = ["RandomDemoClassifier"]
