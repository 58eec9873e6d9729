from __future__ import annotations

import io
import unittest
from unittest import mock

import pytest
import requests
from PIL import Image, ImageDraw

from rdtreader.ai import LineIntensityModel, RandomDemoClassifier, RemoteRDTClassifier
from rdtreader.ai.types import (
    ClassificationResult,
    LineSignal,
    SubSignals,
    TestResult,
    TestType,
    check_contract,
    recommendation_for,
)


def _strip(control: int | None = 40, test: int | None = None, background: int = 220) -> bytes:
    """Synthetic strip with horizontal bands: control in the upper half, test in the lower."""
    img = Image.new("L", (300, 300), color=background)
    draw = ImageDraw.Draw(img)
    if control is not None:
        draw.rectangle((0, 60, 299, 75), fill=control)
    if test is not None:
        draw.rectangle((0, 210, 299, 225), fill=test)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def _classification(result=TestResult.NEGATIVE, confidence=0.9, control=True, test=False):
    return ClassificationResult(
        result=result,
        confidence=confidence,
        sub_signals=SubSignals(
            control_line=LineSignal(control, 0.8 if control else 0.0),
            test_line=LineSignal(test, 0.7 if test else 0.0),
        ),
    )


class LineIntensityModelTests(unittest.TestCase):
    def setUp(self) -> None:
        self.model = LineIntensityModel()

    def test_control_and_test_lines_read_positive(self) -> None:
        result = self.model.classify(_strip(control=40, test=40), TestType.COVID_19)
        self.assertIs(result.result, TestResult.POSITIVE)
        self.assertTrue(result.sub_signals.control_line.detected)
        self.assertTrue(result.sub_signals.test_line.detected)
        self.assertLessEqual(result.confidence, 0.99)
        self.assertEqual(result.metadata["test_type"], "COVID_19")

    def test_control_line_only_reads_negative(self) -> None:
        result = self.model.classify(_strip(control=40), TestType.PREGNANCY)
        self.assertIs(result.result, TestResult.NEGATIVE)
        self.assertFalse(result.sub_signals.test_line.detected)

    def test_missing_control_line_is_invalid(self) -> None:
        result = self.model.classify(_strip(control=None, test=40), TestType.STREP_A)
        self.assertIs(result.result, TestResult.INVALID)
        self.assertFalse(result.sub_signals.control_line.detected)

    def test_faint_test_line_is_inconclusive(self) -> None:
        result = self.model.classify(_strip(control=40, test=200), TestType.INFLUENZA_A)
        self.assertIs(result.result, TestResult.INCONCLUSIVE)
        self.assertAlmostEqual(result.confidence, 0.45)

    def test_same_image_gives_same_result(self) -> None:
        data = _strip(control=40, test=40)
        first = self.model.classify(data, TestType.COVID_19)
        second = self.model.classify(data, TestType.COVID_19)
        self.assertEqual(first, second)
        check_contract(first)


class RemoteClassifierTests(unittest.TestCase):
    def _client(self, response=None, side_effect=None) -> tuple[RemoteRDTClassifier, mock.Mock]:
        session = mock.Mock(spec=requests.Session)
        if side_effect is not None:
            session.post.side_effect = side_effect
        else:
            session.post.return_value = response
        client = RemoteRDTClassifier(
            base_url="http://model.local/", api_key="secret", model="rdt-test", session=session
        )
        return client, session

    def _response(self, payload) -> mock.Mock:
        response = mock.Mock()
        response.raise_for_status.return_value = None
        response.json.return_value = payload
        return response

    def test_parses_successful_response(self) -> None:
        client, session = self._client(
            self._response(
                {
                    "result": "positive",
                    "confidence": 0.87,
                    "control_line": {"detected": True, "intensity": 0.9},
                    "test_line": {"detected": True, "intensity": 0.6},
                }
            )
        )
        result = client.classify(b"image-bytes", TestType.COVID_19)

        self.assertIs(result.result, TestResult.POSITIVE)
        self.assertAlmostEqual(result.confidence, 0.87)
        self.assertEqual(result.metadata["model"], "rdt-test")
        url = session.post.call_args.args[0]
        self.assertEqual(url, "http://model.local/v1/classify")
        kwargs = session.post.call_args.kwargs
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer secret")
        self.assertEqual(kwargs["json"]["test_type"], "COVID_19")

    def test_timeout_is_reported_as_timeout_error(self) -> None:
        client, _ = self._client(side_effect=requests.Timeout("slow"))
        with self.assertRaises(TimeoutError):
            client.classify(b"image", TestType.COVID_19)

    def test_connection_failure_raises(self) -> None:
        client, _ = self._client(side_effect=requests.ConnectionError("down"))
        with self.assertRaises(RuntimeError):
            client.classify(b"image", TestType.COVID_19)

    def test_unknown_result_is_not_substituted(self) -> None:
        client, _ = self._client(
            self._response(
                {
                    "result": "maybe",
                    "confidence": 0.5,
                    "control_line": {"detected": True, "intensity": 0.5},
                    "test_line": {"detected": False, "intensity": 0.0},
                }
            )
        )
        with self.assertRaises(RuntimeError):
            client.classify(b"image", TestType.COVID_19)

    def test_out_of_range_confidence_is_rejected(self) -> None:
        client, _ = self._client(
            self._response(
                {
                    "result": "NEGATIVE",
                    "confidence": 1.4,
                    "control_line": {"detected": True, "intensity": 0.5},
                    "test_line": {"detected": False, "intensity": 0.0},
                }
            )
        )
        with self.assertRaises(RuntimeError):
            client.classify(b"image", TestType.COVID_19)


def test_seeded_demo_classifier_is_repeatable() -> None:
    first = RandomDemoClassifier(seed=7)
    second = RandomDemoClassifier(seed=7)
    results_a = [first.classify(b"x", TestType.OTHER).result for _ in range(10)]
    results_b = [second.classify(b"x", TestType.OTHER).result for _ in range(10)]
    assert results_a == results_b
    for _ in range(10):
        check_contract(first.classify(b"x", TestType.OTHER))


def test_contract_rejects_out_of_range_confidence() -> None:
    with pytest.raises(ValueError):
        check_contract(_classification(confidence=1.5))
    with pytest.raises(ValueError):
        check_contract({"result": "POSITIVE", "confidence": 0.5})


def test_recommendation_reflects_line_signals() -> None:
    assert "No control line" in recommendation_for(
        _classification(TestResult.INVALID, 0.9, control=False)
    )
    positive = recommendation_for(_classification(TestResult.POSITIVE, 0.9, test=True))
    assert "healthcare provider" in positive
    low = recommendation_for(_classification(TestResult.NEGATIVE, 0.4))
    assert "Confidence is low" in low
