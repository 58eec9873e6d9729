from __future__ import annotations

import io
from dataclasses import dataclass
from statistics import median

from PIL import Image

from ..intake.quality import to_eight_bit
from .types import ClassificationResult, LineSignal, SubSignals, TestResult, TestType


@dataclass
class LineIntensityModel:
    """Rule-based reader for a strip photographed with its lines running horizontally.

    Rows are averaged into a darkness profile; the control line is searched for in
    the upper half and the test line in the lower half.
    """

    line_threshold: float = 0.12
    faint_threshold: float = 0.05
    profile_rows: int = 256
    model_name: str = "rdt-line-intensity-v1"

    def classify(self, image_bytes: bytes, test_type: TestType) -> ClassificationResult:
        with Image.open(io.BytesIO(image_bytes)) as img:
            gray = to_eight_bit(img).convert("L")
            column = gray.resize((1, self.profile_rows), Image.Resampling.BOX)
            profile = [255 - value for value in column.getdata()]

        baseline = median(profile)
        half = len(profile) // 2
        control = _line_intensity(profile[:half], baseline)
        test = _line_intensity(profile[half:], baseline)

        control_seen = control >= self.line_threshold
        test_seen = test >= self.line_threshold
        signals = SubSignals(
            control_line=LineSignal(detected=control_seen, intensity=round(control, 4)),
            test_line=LineSignal(detected=test_seen, intensity=round(test, 4)),
        )

        if not control_seen:
            result = TestResult.INVALID
            confidence = 0.5 + (self.line_threshold - control) / (2 * self.line_threshold)
        elif test_seen:
            result = TestResult.POSITIVE
            confidence = 0.5 + (test - self.line_threshold) / (2 * self.line_threshold)
        elif test >= self.faint_threshold:
            result = TestResult.INCONCLUSIVE
            confidence = 0.45
        else:
            result = TestResult.NEGATIVE
            confidence = 0.5 + (self.faint_threshold - test) / (2 * self.faint_threshold)

        return ClassificationResult(
            result=result,
            confidence=round(max(0.0, min(0.99, confidence)), 4),
            sub_signals=signals,
            metadata={
                "model": self.model_name,
                "test_type": test_type.value,
                "baseline_darkness": round(baseline / 255.0, 4),
            },
        )


def _line_intensity(profile: list[float], baseline: float) -> float:
    if not profile:
        return 0.0
    return max(0.0, max(profile) - baseline) / 255.0


__all__ = ["LineIntensityModel"]
