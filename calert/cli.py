"""Command entry point: load config, set up providers and serve HTTP."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Sequence

from .config import ConfigError, as_bool, init_providers, load_config, lookup, parse_duration
from .metrics import MetricsManager
from .notifier import Notifier
from .server import App, make_server

BUILD_STRING = "unknown"
DEFAULT_CONFIG = "config.sample.toml"
ENV_PREFIX = "CALERT_"

log = logging.getLogger(__name__)

_LEVEL_NAMES = {"WARNING": "WARN", "CRITICAL": "ERROR"}


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": _LEVEL_NAMES.get(record.levelname, record.levelname),
            "source": {
                "function": record.funcName,
                "file": record.pathname,
                "line": record.lineno,
            },
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(verbose: bool) -> logging.Logger:
    """Send package logs to stdout as JSON lines, at debug level if ``verbose``."""
    logger = logging.getLogger("calert")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JsonFormatter())
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False
    return logger


def _server_settings(config: dict) -> tuple[str, timedelta]:
    address = str(lookup(config, "app.address") or "")
    if not address:
        raise ConfigError("missing config value: app.address")
    raw_timeout = lookup(config, "app.server_timeout")
    timeout = timedelta(0) if raw_timeout is None else parse_duration(raw_timeout)
    if timeout == timedelta(0):
        raise ConfigError("missing config value: app.server_timeout")
    return address, timeout


def main(argv: Sequence[str] | None = None) -> int:
    """Run the alert receiver; returns the process exit code."""
    try:
        config = load_config(argv, DEFAULT_CONFIG, ENV_PREFIX)
    except ConfigError as exc:
        print(f"error loading config: {exc}", file=sys.stderr)
        return 1

    verbose = str(lookup(config, "app.log") or "") == "debug"
    setup_logging(verbose)
    metrics = MetricsManager("calert")

    try:
        providers = init_providers(config, metrics)
    except ConfigError as exc:
        log.error("error initialising providers error=%s", exc)
        return 1

    try:
        app = App(Notifier(providers), metrics)
        log.info("starting calert version=%s verbose=%s", BUILD_STRING, verbose)
        try:
            address, timeout = _server_settings(config)
        except ConfigError as exc:
            log.error("invalid server config error=%s", exc)
            return 1

        log.info("starting http server address=%s", address)
        try:
            server = make_server(
                app, address, timeout, as_bool(lookup(config, "app.enable_request_logs"))
            )
        except (OSError, ValueError) as exc:
            log.error("couldn't start server error=%s", exc)
            return 1
        with server:
            try:
                server.serve_forever()
            except KeyboardInterrupt:
                log.info("shutting down")
        return 0
    finally:
        for provider in providers:
            close = getattr(provider, "close", None)
            if close is not None:
                close()


if __name__ == "__main__":
    sys.exit(main())