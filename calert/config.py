"""Configuration loading from a TOML file and environment, and provider setup."""

from __future__ import annotations

import argparse
import logging
import os
import re
import sys
import tomllib
from datetime import timedelta
from typing import Any, Mapping, Sequence

from .alerts import Provider
from .google_chat import GoogleChatError, GoogleChatOptions, GoogleChatProvider
from .metrics import MetricsManager

log = logging.getLogger(__name__)

_DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_NANOSECONDS = {"ns": 1.0, "us": 1e3, "µs": 1e3, "μs": 1e3, "ms": 1e6, "s": 1e9, "m": 60e9, "h": 3600e9}
_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}


class ConfigError(Exception):
    """The configuration is missing, unreadable or invalid."""


def parse_duration(value: Any) -> timedelta:
    """Parse a duration such as ``"1h30m"`` or ``"500ms"``; bare numbers are nanoseconds."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return timedelta(microseconds=value / 1000)
    if not isinstance(value, str):
        raise ConfigError(f"invalid duration {value!r}")
    text = value.strip()
    if text and not any(char in "nsuµμmh" for char in text):
        text += "ns"
    original = text
    sign = -1.0 if text.startswith("-") else 1.0
    text = text.lstrip("+-") if text[:1] in "+-" and text else text
    if text == "0":
        return timedelta(0)
    if not text:
        raise ConfigError(f"invalid duration {original!r}")
    total, pos = 0.0, 0
    while pos < len(text):
        match = _DURATION_RE.match(text, pos)
        if match is None:
            raise ConfigError(f"invalid duration {original!r}")
        total += float(match.group(1)) * _NANOSECONDS[match.group(2)]
        pos = match.end()
    return timedelta(microseconds=sign * total / 1000)


def lookup(config: Mapping[str, Any], key: str) -> Any:
    """Return the value at the dotted ``key``, or None if any part is missing."""
    node: Any = config
    for part in key.split("."):
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]
    return node


def as_bool(value: Any) -> bool:
    """Interpret a configuration value as a boolean."""
    if isinstance(value, str):
        return value.strip() in _TRUE_WORDS
    return bool(value) if isinstance(value, (bool, int, float)) else False


def _string(config: Mapping[str, Any], key: str) -> str:
    value = lookup(config, key)
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


def _must_string(config: Mapping[str, Any], key: str) -> str:
    value = _string(config, key)
    if not value:
        raise ConfigError(f"missing config value: {key}")
    return value


def _must_int(config: Mapping[str, Any], key: str) -> int:
    value = lookup(config, key)
    try:
        number = 0 if value is None or isinstance(value, bool) else int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid integer for {key}: {value!r}") from exc
    if number == 0:
        raise ConfigError(f"missing config value: {key}")
    return number


def _must_duration(config: Mapping[str, Any], key: str) -> timedelta:
    value = lookup(config, key)
    duration = timedelta(0) if value is None else parse_duration(value)
    if not duration:
        raise ConfigError(f"missing config value: {key}")
    return duration


def _assign(config: dict[str, Any], key: str, value: Any) -> None:
    *parents, last = [part for part in key.split(".") if part] or [None]
    if last is None:
        return
    node = config
    for part in parents:
        if not isinstance(node.get(part), dict):
            node[part] = {}
        node = node[part]
    node[last] = value


def load_config(
    argv: Sequence[str] | None = None,
    default_path: str = "config.sample.toml",
    env_prefix: str = "CALERT_",
) -> dict[str, Any]:
    """Read ``--config`` (or the default file) and merge ``env_prefix`` variables over it."""
    parser = argparse.ArgumentParser(prog="calert", allow_abbrev=False, exit_on_error=False)
    parser.add_argument("--config", default=default_path, help="Path to a config file to load.")
    try:
        args, extras = parser.parse_known_args(list(sys.argv[1:] if argv is None else argv))
    except argparse.ArgumentError as exc:
        raise ConfigError(str(exc)) from exc
    unknown = [arg for arg in extras if arg.startswith("-")]
    if unknown:
        raise ConfigError(f"unknown flag: {unknown[0]}")

    path = args.config
    log.info("attempting to load config from file: %s", path)
    config: dict[str, Any] = {}
    try:
        with open(path, "rb") as handle:
            config = tomllib.load(handle)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        if path != default_path:
            raise ConfigError(f"error loading config file {path}: {exc}") from exc
        log.warning("unable to open config file: %s falling back to env vars", exc)

    log.info("attempting to read config from env vars")
    if env_prefix:
        for name, value in os.environ.items():
            if name.startswith(env_prefix):
                _assign(config, name[len(env_prefix):].lower().replace("__", "."), value)
    return config


def _google_chat(config: Mapping[str, Any], name: str, metrics: MetricsManager) -> GoogleChatProvider:
    prefix = f"providers.{name}"
    options = GoogleChatOptions(
        endpoint=_must_string(config, f"{prefix}.endpoint"),
        room=name,
        template=_must_string(config, f"{prefix}.template"),
        metrics=metrics,
        timeout=_must_duration(config, f"{prefix}.timeout"),
        max_idle_conns=_must_int(config, f"{prefix}.max_idle_conns"),
        proxy_url=_string(config, f"{prefix}.proxy_url"),
        thread_ttl=_must_duration(config, f"{prefix}.thread_ttl"),
        threaded_replies=as_bool(lookup(config, f"{prefix}.threaded_replies")),
        dry_run=as_bool(lookup(config, f"{prefix}.dry_run")),
    )
    try:
        return GoogleChatProvider(options)
    except GoogleChatError as exc:
        raise ConfigError(f"error initialising google chat provider: {exc}") from exc


def init_providers(config: Mapping[str, Any], metrics: MetricsManager) -> list[Provider]:
    """Create a provider for every entry under ``providers`` in the config."""
    section = lookup(config, "providers")
    providers: list[Provider] = []
    try:
        for name in sorted(section) if isinstance(section, Mapping) else []:
            if _string(config, f"providers.{name}.type") == "google_chat":
                provider = _google_chat(config, name, metrics)
                log.info("initialised provider room=%s", provider.room())
                providers.append(provider)
    except ConfigError:
        for provider in providers:
            provider.close()
        raise
    if not providers:
        raise ConfigError("no providers listed in config")
    return providers