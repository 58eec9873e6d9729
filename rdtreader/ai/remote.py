from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any

import requests

from .types import ClassificationResult, LineSignal, SubSignals, TestResult, TestType


@dataclass
class RemoteRDTClassifier:
    """Classify strips by delegating to an HTTP model server.

    The server receives ``{"model", "test_type", "image_base64"}`` on ``POST {base_url}/v1/classify``
    and answers with ``result``, ``confidence``, ``control_line`` and ``test_line``.
    """

    base_url: str
    api_key: str | None = None
    model: str = "rdt-analyzer-v1.0"
    timeout: float = 30.0
    session: requests.Session = field(default_factory=requests.Session)

    def classify(self, image_bytes: bytes, test_type: TestType) -> ClassificationResult:
        payload = {
            "model": self.model,
            "test_type": test_type.value,
            "image_base64": base64.b64encode(image_bytes).decode("ascii"),
        }
        data = self._send_request(f"{self.base_url.rstrip('/')}/v1/classify", payload)
        return self._parse_response(data)

    def _send_request(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = self.session.post(url, json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.Timeout as exc:
            raise TimeoutError("Timed out waiting for the classification server") from exc
        except requests.RequestException as exc:
            raise RuntimeError(f"Failed to reach classification server: {exc}") from exc
        except ValueError as exc:
            raise RuntimeError("Classification server response was not valid JSON") from exc

    def _parse_response(self, data: dict[str, Any]) -> ClassificationResult:
        raw_result = data.get("result") or data.get("label")
        if not raw_result:
            raise RuntimeError("Classification server response did not include a result")
        try:
            result = TestResult(str(raw_result).strip().upper())
        except ValueError as exc:
            raise RuntimeError(f"Classification server returned unknown result {raw_result!r}") from exc

        try:
            confidence = float(data.get("confidence", data.get("score")))
        except (TypeError, ValueError) as exc:
            raise RuntimeError("Classification server response did not include a confidence") from exc
        if not 0.0 <= confidence <= 1.0:
            raise RuntimeError(f"Classification server returned confidence {confidence} outside [0, 1]")

        return ClassificationResult(
            result=result,
            confidence=confidence,
            sub_signals=SubSignals(
                control_line=_parse_line(data.get("control_line")),
                test_line=_parse_line(data.get("test_line")),
            ),
            metadata={"model": str(data.get("model") or self.model), **dict(data.get("metadata") or {})},
        )


def _parse_line(value: Any) -> LineSignal:
    if not isinstance(value, dict):
        raise RuntimeError("Classification server response did not include line signals")
    try:
        intensity = float(value.get("intensity", 0.0))
    except (TypeError, ValueError):
        intensity = 0.0
    return LineSignal(detected=bool(value.get("detected")), intensity=max(0.0, min(1.0, intensity)))


__all__ = ["RemoteRDTClassifier"]
