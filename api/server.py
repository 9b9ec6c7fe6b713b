#!/usr/bin/env python3
"""
Integration Bridge: process entry point.

Usage:
    # Defaults: https://0.0.0.0:5000/iot/integration, certs under /u01/ssl/
    integration-bridge

    # Verbose logging, four delivery lanes, 3s timeout:
    integration-bridge -v --concurrency 4 --timeout 3000

    # Local testing without TLS:
    integration-bridge --insecure --port 8080

Precedence: command line > BRIDGE_* environment > YAML file > defaults.
"""
from __future__ import annotations

import argparse
import signal
import sys
from pathlib import Path
from typing import Optional, Sequence

import structlog
import uvicorn
from dotenv import load_dotenv

from api.main import create_app
from config.log_setup import configure_logging
from config.settings import ConfigError, Settings, load_settings, validate_settings

logger = structlog.get_logger()

EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="integration-bridge",
        description="IoTCS Integration Bridge: forwards messages to their target",
    )
    parser.add_argument("--config", help="Path to a YAML settings file")
    parser.add_argument("--host", help="Listen address")
    parser.add_argument("--port", type=int, help="Listen port")
    parser.add_argument("--path", help="Ingress path")
    parser.add_argument("--header", dest="target_header", help="Header carrying the target URI")
    parser.add_argument("--concurrency", type=int, help="Number of delivery lanes")
    parser.add_argument("--timeout", dest="timeout_ms", type=int,
                        help="Outbound timeout in milliseconds")
    parser.add_argument("--cert", dest="cert_file", help="TLS certificate chain file")
    parser.add_argument("--key", dest="key_file", help="TLS private key file")
    parser.add_argument("--insecure", action="store_true", help="Serve plain HTTP")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--json-logs", dest="log_json", action="store_true",
                        help="Write one JSON object per log line")
    return parser


def apply_cli_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    for attr in ("host", "port", "path", "target_header", "concurrency", "timeout_ms"):
        value = getattr(args, attr, None)
        if value is not None:
            setattr(settings.relay, attr, value)
    if args.cert_file:
        settings.tls.cert_file = args.cert_file
    if args.key_file:
        settings.tls.key_file = args.key_file
    if args.insecure:
        settings.tls.enabled = False
    if args.verbose:
        settings.verbose = True
    if args.log_json:
        settings.log_json = True
    return validate_settings(settings)


def check_tls_files(settings: Settings) -> None:
    if not settings.tls.enabled:
        return
    for label, path in (("certificate", settings.tls.cert_file), ("key", settings.tls.key_file)):
        if not Path(path).is_file():
            raise ConfigError(f"TLS {label} file not found: {path}")


class BridgeServer(uvicorn.Server):
    """uvicorn server that logs the signal that stops it."""

    def handle_exit(self, sig: int, frame) -> None:
        logger.info("relay_interrupted", signal=signal.Signals(sig).name)
        super().handle_exit(sig, frame)


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        settings = apply_cli_overrides(load_settings(args.config), args)
        configure_logging(settings.verbose, settings.log_json)
        check_tls_files(settings)
    except ConfigError as e:
        configure_logging()
        logger.error("configuration_invalid", error=str(e))
        return EXIT_CONFIG_ERROR

    app = create_app(settings)
    scheme = "https" if settings.tls.enabled else "http"
    logger.info("bridge_listening",
                url=f"{scheme}://{settings.relay.host}:{settings.relay.port}{settings.relay.path}")

    config = uvicorn.Config(
        app,
        host=settings.relay.host,
        port=settings.relay.port,
        ssl_certfile=settings.tls.cert_file if settings.tls.enabled else None,
        ssl_keyfile=settings.tls.key_file if settings.tls.enabled else None,
        log_config=None,
        timeout_graceful_shutdown=1,
    )
    BridgeServer(config).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
