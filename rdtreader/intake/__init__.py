from __future__ import annotations

from .quality import IntakeReport, QualityIssue, QualityPolicy, validate_submission

__all__ = ["IntakeReport", "QualityIssue", "QualityPolicy", "validate_submission"]
