"""Service configuration loaded from JSON with environment overrides.

The file is optional; every setting has a default. Environment variables
(typically supplied through ``.env``) take precedence over the file:

- ``RDT_HOST`` / ``RDT_PORT``: listen address
- ``RDT_DATA_ROOT``: base directory for records and images
- ``RDT_UPLOAD_MAX_SIZE``: maximum upload size in bytes
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from ..intake.quality import (
    DEFAULT_ALLOWED_MIME_TYPES,
    DEFAULT_MAX_UPLOAD_BYTES,
    QualityPolicy,
)

logger = logging.getLogger(__name__)


@dataclass
class ServerSettings:
    host: str = "0.0.0.0"
    port: int = 8000


@dataclass
class StorageSettings:
    records_root: str = "data/records"
    images_root: str = "data/images"


@dataclass
class IntakeSettings:
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    allowed_mime_types: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_MIME_TYPES))
    min_width: int = 200
    min_height: int = 200
    brightness_min: float = 30.0
    brightness_max: float = 225.0
    blur_threshold: float = 10.0
    advisory_issues: list[str] = field(default_factory=list)

    def to_policy(self) -> QualityPolicy:
        return QualityPolicy(
            max_upload_bytes=self.max_upload_bytes,
            allowed_mime_types=tuple(self.allowed_mime_types),
            min_width=self.min_width,
            min_height=self.min_height,
            brightness_min=self.brightness_min,
            brightness_max=self.brightness_max,
            blur_threshold=self.blur_threshold,
            advisory_issues=frozenset(code.upper() for code in self.advisory_issues),
        )


@dataclass
class RemoteClassifierSettings:
    url: str = ""
    model: str = "rdt-analyzer-v1.0"
    api_key_env: str = "RDT_CLASSIFIER_API_KEY"


@dataclass
class ClassifierSettings:
    backend: str = "simple"
    timeout_seconds: float = 30.0
    demo_seed: int | None = None
    remote: RemoteClassifierSettings = field(default_factory=RemoteClassifierSettings)


@dataclass
class StatsSettings:
    trend_window_days: int = 30
    recent_tests: int = 5
    admin_recent_tests: int = 10


@dataclass
class ImagePruningSettings:
    enabled: bool = False
    retention_days: int = 30
    run_on_startup: bool = False
    run_interval_hours: float = 24.0


@dataclass
class FeatureSettings:
    image_pruning: ImagePruningSettings = field(default_factory=ImagePruningSettings)


@dataclass
class AppConfig:
    server: ServerSettings = field(default_factory=ServerSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    intake: IntakeSettings = field(default_factory=IntakeSettings)
    classifier: ClassifierSettings = field(default_factory=ClassifierSettings)
    stats: StatsSettings = field(default_factory=StatsSettings)
    features: FeatureSettings = field(default_factory=FeatureSettings)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AppConfig":
        classifier_data = _section(data, "classifier")
        features_data = _section(data, "features")
        return cls(
            server=_build(ServerSettings, _section(data, "server")),
            storage=_build(StorageSettings, _section(data, "storage")),
            intake=_build(IntakeSettings, _section(data, "intake")),
            classifier=_build(
                ClassifierSettings,
                {k: v for k, v in classifier_data.items() if k != "remote"},
                remote=_build(RemoteClassifierSettings, _section(classifier_data, "remote")),
            ),
            stats=_build(StatsSettings, _section(data, "stats")),
            features=FeatureSettings(
                image_pruning=_build(ImagePruningSettings, _section(features_data, "image_pruning"))
            ),
        )


def load_config(path: str | Path | None, environ: Mapping[str, str] | None = None) -> AppConfig:
    """Load configuration from ``path`` (or defaults when None) and apply env overrides.

    Raises:
        FileNotFoundError: If ``path`` is given but does not exist
        ValueError: If the file is not valid JSON or has invalid values
    """
    if path is None:
        config = AppConfig()
    else:
        config_path = Path(path)
        text = config_path.read_text(encoding="utf-8")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON in {config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"Configuration root in {config_path} must be an object")
        config = AppConfig.from_dict(data)
        logger.info("Loaded configuration from %s", config_path)
    apply_env_overrides(config, os.environ if environ is None else environ)
    _validate(config)
    return config


def apply_env_overrides(config: AppConfig, environ: Mapping[str, str]) -> None:
    if environ.get("RDT_HOST"):
        config.server.host = environ["RDT_HOST"]
    if environ.get("RDT_PORT"):
        config.server.port = _as_int(environ["RDT_PORT"], "RDT_PORT")
    if environ.get("RDT_DATA_ROOT"):
        root = Path(environ["RDT_DATA_ROOT"])
        config.storage.records_root = str(root / "records")
        config.storage.images_root = str(root / "images")
    if environ.get("RDT_UPLOAD_MAX_SIZE"):
        config.intake.max_upload_bytes = _as_int(
            environ["RDT_UPLOAD_MAX_SIZE"], "RDT_UPLOAD_MAX_SIZE"
        )


def _validate(config: AppConfig) -> None:
    if config.intake.max_upload_bytes <= 0:
        raise ValueError("intake.max_upload_bytes must be positive")
    if config.classifier.backend not in {"simple", "mock", "remote"}:
        raise ValueError(
            f"classifier.backend must be one of simple, mock, remote; got {config.classifier.backend!r}"
        )
    if config.classifier.backend == "remote" and not config.classifier.remote.url:
        raise ValueError("classifier.remote.url is required for the remote backend")
    if config.stats.trend_window_days < 1:
        raise ValueError("stats.trend_window_days must be >= 1")


def _section(data: Mapping[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name) if isinstance(data, Mapping) else None
    return dict(value) if isinstance(value, Mapping) else {}


def _build(cls, values: Mapping[str, Any], **extra: Any):
    known = set(cls.__dataclass_fields__)
    unknown = sorted(set(values) - known)
    if unknown:
        logger.warning("Ignoring unknown %s settings: %s", cls.__name__, ", ".join(unknown))
    return cls(**{k: v for k, v in values.items() if k in known}, **extra)


def _as_int(value: str, name: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


__all__ = [
    "AppConfig",
    "ClassifierSettings",
    "FeatureSettings",
    "ImagePruningSettings",
    "IntakeSettings",
    "RemoteClassifierSettings",
    "ServerSettings",
    "StatsSettings",
    "StorageSettings",
    "apply_env_overrides",
    "load_config",
]
