"""agentbridge — main application entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


def _log_runtime_versions() -> None:
    """Log the SDK version the structured backend will run against."""
    logger = logging.getLogger(__name__)
    from importlib.metadata import PackageNotFoundError, version

    try:
        sdk_version = version("claude-agent-sdk")
    except PackageNotFoundError:
        sdk_version = "not installed"
    logger.info("Runtime versions: claude-agent-sdk=%s python=%s", sdk_version, sys.version.split()[0])


def configure_logging(level: str, log_file: str | Path | None = None) -> Path:
    """Rotating file log plus stderr; returns the log file path."""
    if log_file:
        log_path = Path(log_file).expanduser()
    else:
        log_path = Path.home() / ".agentbridge" / "logs" / "agentbridge.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_path, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_path


def main(argv: list[str] | None = None) -> None:
    import argparse

    from agentbridge.engine.config import BridgeConfig

    parser = argparse.ArgumentParser(
        prog="agentbridge",
        description="agentbridge — drive Claude and Codex sessions over HTTP + SSE",
    )
    parser.add_argument(
        "--host",
        help="Interface to bind (default 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (workspaces, agent CLIs, timeouts)",
    )
    parser.add_argument(
        "--log-level",
        help="Logging level (default INFO, or BRIDGE_LOG_LEVEL)",
    )
    parser.add_argument(
        "--log-file", metavar="PATH",
        help="Log file (default ~/.agentbridge/logs/agentbridge.log)",
    )
    args = parser.parse_args(argv)

    config_path = args.config or os.getenv("BRIDGE_CONFIG")
    if config_path:
        config = BridgeConfig.from_yaml(config_path)
    else:
        config = BridgeConfig.from_env()
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.log_level:
        config.log_level = args.log_level
    if args.log_file:
        config.log_file = args.log_file

    log_path = configure_logging(config.log_level, config.log_file)
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting agentbridge host=%s port=%s config=%s workspaces=%d log=%s",
        config.host,
        config.port,
        config_path or "<none>",
        len(config.workspaces),
        log_path,
    )
    _log_runtime_versions()

    from agentbridge.server.server import BridgeServer

    server = BridgeServer(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
