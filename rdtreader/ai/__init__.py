from __future__ import annotations

from .types import ClassificationResult, Classifier, TestResult, TestType

__all__ = [
    "ClassificationResult",
    "Classifier",
    "TestResult",
    "TestType",
    "LineIntensityModel",
    "RandomDemoClassifier",
    "RemoteRDTClassifier",
]


def __getattr__(name: str):
    if name == "LineIntensityModel":
        from .simple import LineIntensityModel

        return LineIntensityModel
    if name == "RandomDemoClassifier":
        from .mock import RandomDemoClassifier

        return RandomDemoClassifier
    if name == "RemoteRDTClassifier":
        from .remote import RemoteRDTClassifier

        return RemoteRDTClassifier
    raise AttributeError(f"module 'rdtreader.ai' has no attribute {name!r}")
