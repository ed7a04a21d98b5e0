"""Alertmanager payloads, the active-alert registry and the provider interface."""

from __future__ import annotations

import logging
import re
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping

from .metrics import MetricsManager

log = logging.getLogger(__name__)

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def _parse_time(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError(f"invalid timestamp: {value!r}")
    text = _FRACTION_RE.sub(r"\1", value.strip())
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"invalid timestamp: {value!r}") from exc
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


def _str_map(value: Any, key: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in value.items()
    ):
        raise ValueError(f"{key} must be an object of strings")
    return dict(value)


def _str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key) or ""
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value


def _check_mapping(data: Any, what: str) -> None:
    if not isinstance(data, Mapping):
        raise ValueError(f"{what} must be a JSON object")


@dataclass
class Alert:
    """A single alert as sent by Alertmanager."""

    status: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    generator_url: str = ""
    fingerprint: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Alert:
        _check_mapping(data, "alert")
        return cls(
            status=_str(data, "status"),
            labels=_str_map(data.get("labels"), "labels"),
            annotations=_str_map(data.get("annotations"), "annotations"),
            starts_at=_parse_time(data.get("startsAt")),
            ends_at=_parse_time(data.get("endsAt")),
            generator_url=_str(data, "generatorURL"),
            fingerprint=_str(data, "fingerprint"),
        )


@dataclass
class AlertPayload:
    """The webhook body Alertmanager posts for a group of alerts."""

    receiver: str = ""
    status: str = ""
    alerts: list[Alert] = field(default_factory=list)
    group_labels: dict[str, str] = field(default_factory=dict)
    common_labels: dict[str, str] = field(default_factory=dict)
    common_annotations: dict[str, str] = field(default_factory=dict)
    external_url: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AlertPayload:
        _check_mapping(data, "payload")
        raw_alerts = data.get("alerts") or []
        if not isinstance(raw_alerts, list):
            raise ValueError("alerts must be a list")
        return cls(
            receiver=_str(data, "receiver"),
            status=_str(data, "status"),
            alerts=[Alert.from_dict(item) for item in raw_alerts],
            group_labels=_str_map(data.get("groupLabels"), "groupLabels"),
            common_labels=_str_map(data.get("commonLabels"), "commonLabels"),
            common_annotations=_str_map(data.get("commonAnnotations"), "commonAnnotations"),
            external_url=_str(data, "externalURL"),
        )


@dataclass(frozen=True)
class AlertDetails:
    """Bookkeeping for an active alert: when it started and its thread key."""

    starts_at: datetime | None
    uuid: uuid.UUID


class ActiveAlerts:
    """Thread-safe map of alert fingerprints to their details, pruned by TTL."""

    def __init__(self, metrics: MetricsManager) -> None:
        self._metrics = metrics
        self._lock = threading.RLock()
        self._alerts: dict[str, AlertDetails] = {}
        self._stop_event = threading.Event()
        self._worker: threading.Thread | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._alerts)

    def __contains__(self, fingerprint: object) -> bool:
        with self._lock:
            return fingerprint in self._alerts

    def add(self, alert: Alert) -> str:
        """Register ``alert`` under a fresh UUID and return that UUID as text."""
        details = AlertDetails(starts_at=alert.starts_at, uuid=uuid.uuid4())
        with self._lock:
            self._alerts[alert.fingerprint] = details
        return str(details.uuid)

    def lookup(self, fingerprint: str) -> str | None:
        """Return the UUID text for ``fingerprint``, or None if it is not active."""
        with self._lock:
            details = self._alerts.get(fingerprint)
        return None if details is None else str(details.uuid)

    def prune(self, ttl: timedelta) -> None:
        """Drop every alert that started more than ``ttl`` ago."""
        started = time.monotonic()
        expired = datetime.now(timezone.utc) - ttl
        with self._lock:
            for fingerprint, details in list(self._alerts.items()):
                starts = details.starts_at
                if starts is not None and starts.tzinfo is None:
                    starts = starts.replace(tzinfo=timezone.utc)
                if starts is None or starts < expired:
                    log.debug(
                        "removing alert from active alerts fingerprint=%s created=%s expired=%s",
                        fingerprint, details.starts_at, expired,
                    )
                    del self._alerts[fingerprint]
        self._metrics.duration("alerts_prune_duration_seconds", started)

    def start_prune_worker(self, prune_interval: timedelta, ttl: timedelta) -> None:
        """Prune in a background thread every ``prune_interval`` until stopped."""
        if self._worker is not None and self._worker.is_alive():
            raise RuntimeError("prune worker already running")
        stop_event = self._stop_event = threading.Event()
        interval = prune_interval.total_seconds()

        def run() -> None:
            while not stop_event.wait(interval):
                log.debug("pruning active alerts based on ttl")
                self.prune(ttl)

        self._worker = threading.Thread(target=run, name="alert-pruner", daemon=True)
        self._worker.start()

    def stop(self) -> None:
        """Stop the background prune worker, if one is running."""
        self._stop_event.set()
        if self._worker is not None:
            self._worker.join()
            self._worker = None


class Provider(ABC):
    """An upstream destination that alerts for one room are pushed to."""

    @abstractmethod
    def id(self) -> str:
        """Name of the provider type."""

    @abstractmethod
    def room(self) -> str:
        """Room this provider is configured for."""

    @abstractmethod
    def push(self, alerts: Iterable[Alert]) -> None:
        """Send ``alerts`` upstream."""