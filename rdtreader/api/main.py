from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from .config_loader import AppConfig, load_config
from .image_pruner import prune_images
from .server import create_app
from ..ai import Classifier, LineIntensityModel, RandomDemoClassifier, RemoteRDTClassifier

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build argument parser with minimal CLI flags.

    Most configuration is loaded from config/rdtreader.json.
    CLI flags are only for quick overrides.
    """
    parser = argparse.ArgumentParser(
        description="Run the RDT Reader API server",
        epilog="Configuration is loaded from config/rdtreader.json. "
               "CLI arguments override config file settings."
    )
    parser.add_argument(
        "--config",
        type=str,
        default="config/rdtreader.json",
        help="Path to JSON configuration file (default: config/rdtreader.json)"
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Override server host (default: from config file)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Override server port (default: from config file)"
    )
    return parser


def build_classifier(cfg: AppConfig) -> Classifier:
    backend = cfg.classifier.backend
    if backend == "simple":
        return LineIntensityModel()
    if backend == "mock":
        logger.warning("Using the random demo classifier; results are not real readings")
        return RandomDemoClassifier(seed=cfg.classifier.demo_seed)
    if backend == "remote":
        remote = cfg.classifier.remote
        key = os.environ.get(remote.api_key_env)
        if not key:
            logger.warning(
                "Environment variable %s is not set; calling %s without an API key",
                remote.api_key_env,
                remote.url,
            )
        return RemoteRDTClassifier(
            base_url=remote.url,
            api_key=key,
            model=remote.model,
            timeout=cfg.classifier.timeout_seconds,
        )
    logger.error("Unsupported classifier backend '%s'", backend)
    sys.exit(1)


def main() -> None:
    load_dotenv()
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.INFO, format="%(levelname)s [%(name)s] %(message)s"
        )
    parser = build_parser()
    args = parser.parse_args()

    config_path = Path(args.config)
    try:
        if config_path.exists():
            cfg = load_config(config_path)
        else:
            logger.info(
                "Configuration file %s not found; using defaults. "
                "Copy config/rdtreader.example.json to config/rdtreader.json",
                config_path,
            )
            cfg = load_config(None)
    except (OSError, ValueError) as exc:
        logger.error("Failed to load configuration: %s", exc)
        sys.exit(1)

    if args.host:
        cfg.server.host = args.host
    if args.port:
        cfg.server.port = args.port

    logger.info("Server configuration: %s:%s", cfg.server.host, cfg.server.port)
    logger.info("Records root: %s", cfg.storage.records_root)
    logger.info("Images root: %s", cfg.storage.images_root)
    logger.info("Classifier backend: %s", cfg.classifier.backend)

    app = create_app(classifier=build_classifier(cfg), config=cfg)
    pruning = cfg.features.image_pruning

    def _run_pruning(label: str) -> None:
        try:
            stats = prune_images(app.state.store, app.state.images, pruning.retention_days)
        except (OSError, ValueError) as exc:
            logger.error("%s image pruning failed: %s", label, exc)
            return
        logger.info(
            "%s pruning complete: deleted=%d freed=%d bytes errors=%d",
            label,
            stats.images_deleted,
            stats.bytes_freed,
            stats.errors,
        )

    if pruning.enabled and pruning.run_on_startup:
        logger.info("Running image pruning on startup...")
        _run_pruning("Startup")

    config = uvicorn.Config(
        app,
        host=cfg.server.host,
        port=cfg.server.port,
        log_level="info",
    )
    server = uvicorn.Server(config)

    async def _periodic_pruning() -> None:
        interval_seconds = max(60.0, pruning.run_interval_hours * 3600)
        while True:
            await asyncio.sleep(interval_seconds)
            logger.info("Running periodic image pruning...")
            await asyncio.to_thread(_run_pruning, "Periodic")

    async def _serve() -> None:
        pruning_task = None
        if pruning.enabled:
            pruning_task = asyncio.get_running_loop().create_task(_periodic_pruning())
        try:
            await server.serve()
        finally:
            if pruning_task is not None:
                pruning_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await pruning_task

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received during shutdown")


if __name__ == "__main__":
    main()
