"""Google Chat webhook provider: renders alerts through a template and posts them."""

from __future__ import annotations

import json
import logging
import math
import os
import re
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta
from typing import Any, Iterable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import jinja2
import requests
from requests.adapters import HTTPAdapter

from .alerts import ActiveAlerts, Alert, Provider
from .metrics import MetricsManager

log = logging.getLogger(__name__)

MAX_MESSAGE_SIZE = 4096
PRUNE_INTERVAL = timedelta(hours=1)

_WORD_RE = re.compile(r"[^\W_]+(?:['\u2019][^\W_]+)*")
_GROUP_REF_RE = re.compile(r"\$(?:\$|\{(\w+)\}|(\w+))")


class GoogleChatError(Exception):
    """Raised when a message cannot be prepared or delivered."""


def title(text: str) -> str:
    """Capitalise the first letter of every word and lower-case the rest."""
    return _WORD_RE.sub(lambda m: m.group(0)[:1].upper() + m.group(0)[1:].lower(), text)


def _load_zone(location: str) -> ZoneInfo:
    try:
        return ZoneInfo(location)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"unknown time zone {location}") from exc


def _human_time(moment: datetime) -> str:
    hour = moment.hour % 12 or 12
    return f"{moment:%a, %d %b %Y} {hour}:{moment:%M:%S %p %Z}"


def current_time(location: str = "") -> str:
    """Return the current time, in ``location`` if one is given."""
    if not location:
        now = datetime.now().astimezone()
        millis = now.microsecond // 1000
        return f"{now:%Y-%m-%d %H:%M:%S}.{millis:03d} {now:%z %Z}"
    try:
        zone = _load_zone(location)
    except ValueError as exc:
        return f"Error loading timezone: {exc}"
    return _human_time(datetime.now(zone))


def convert_tz(moment: datetime | None, location: str) -> str:
    """Render ``moment`` in the time zone ``location``."""
    if moment is None:
        raise ValueError("no time to convert")
    zone = _load_zone(location)
    return _human_time(moment.astimezone(zone))


def duration_since(past: datetime | None) -> str:
    """Return the time elapsed since ``past`` as ``<h>h <m>m <s>s``."""
    if past is None:
        raise ValueError("no time to measure from")
    now = datetime.now(past.tzinfo) if past.tzinfo is not None else datetime.now()
    total = (now - past).total_seconds()
    hours = int(total / 3600)
    minutes = int(math.fmod(int(total / 60), 60))
    seconds = int(math.fmod(int(total), 60))
    return f"{hours}h {minutes}m {seconds}s"


def re_replace_all(pattern: str, repl: str, text: str) -> str:
    """Replace every match of ``pattern`` in ``text``; ``$1`` and ``${name}`` refer to groups."""
    regex = re.compile(pattern)

    def expand(match: re.Match[str]) -> str:
        def group(ref: re.Match[str]) -> str:
            name = ref.group(1) or ref.group(2)
            if name is None:
                return "$"
            if name.isdigit():
                index = int(name)
                return (match.group(index) or "") if index <= regex.groups else ""
            if name in regex.groupindex:
                return match.group(name) or ""
            return ""

        return _GROUP_REF_RE.sub(group, repl)

    return regex.sub(expand, text)


@dataclass
class ChatMessage:
    """A plain text message for the Google Chat webhook."""

    text: str

    def to_json(self) -> str:
        return json.dumps(asdict(self))


@dataclass
class GoogleChatOptions:
    """Settings for one Google Chat room."""

    endpoint: str
    room: str
    template: str
    metrics: MetricsManager = field(default_factory=MetricsManager)
    timeout: timedelta = timedelta(0)
    max_idle_conns: int = 0
    proxy_url: str = ""
    thread_ttl: timedelta = timedelta(0)
    threaded_replies: bool = False
    dry_run: bool = False


def _template_environment(directory: str) -> jinja2.Environment:
    env = jinja2.Environment(
        loader=jinja2.FileSystemLoader(directory),
        keep_trailing_newline=True,
        autoescape=False,
    )
    env.globals.update(
        Title=title,
        toUpper=str.upper,
        Contains=lambda s, sub: sub in s,
        reReplaceAll=re_replace_all,
        CurrentTime=current_time,
        ConvertTZ=convert_tz,
        DurationSince=duration_since,
    )
    env.filters["title"] = title
    return env


class GoogleChatProvider(Provider):
    """Pushes alerts for one room to a Google Chat webhook."""

    def __init__(self, options: GoogleChatOptions) -> None:
        self.options = options
        self._metrics = options.metrics
        self._session = requests.Session()
        if options.max_idle_conns > 0:
            adapter = HTTPAdapter(pool_maxsize=options.max_idle_conns)
            self._session.mount("http://", adapter)
            self._session.mount("https://", adapter)
        if options.proxy_url:
            try:
                urlsplit(options.proxy_url)
            except ValueError as exc:
                raise GoogleChatError(f"error parsing proxy URL: {exc}") from exc
            self._session.proxies = {"http": options.proxy_url, "https": options.proxy_url}
        seconds = options.timeout.total_seconds()
        self._timeout = seconds if seconds > 0 else None

        directory = os.path.dirname(os.path.abspath(options.template))
        env = _template_environment(directory)
        try:
            self.template = env.get_template(os.path.basename(options.template))
        except (jinja2.TemplateError, OSError) as exc:
            raise GoogleChatError(f"error loading template {options.template}: {exc}") from exc

        self.active_alerts = ActiveAlerts(self._metrics)
        self.active_alerts.start_prune_worker(PRUNE_INTERVAL, options.thread_ttl)

    def __enter__(self) -> GoogleChatProvider:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def id(self) -> str:
        return "google_chat"

    def room(self) -> str:
        return self.options.room

    def _labels(self) -> str:
        return f'{{provider="{self.id()}", room="{self.room()}"}}'

    def push(self, alerts: Iterable[Alert]) -> None:
        alerts = list(alerts)
        log.info("dispatching alerts to google chat count=%d", len(alerts))
        for alert in alerts:
            thread_key = self.active_alerts.lookup(alert.fingerprint)
            if thread_key is None:
                thread_key = self.active_alerts.add(alert)

            try:
                messages = self.prepare_message(alert)
            except GoogleChatError as exc:
                log.error("error preparing message error=%s", exc)
                continue

            for message in messages:
                started = time.monotonic()
                self._metrics.increment(f"alerts_dispatched_total{self._labels()}")
                if self.options.dry_run:
                    log.info(
                        "dry_run is enabled for this room. skipping pushing notification room=%s",
                        self.room(),
                    )
                else:
                    try:
                        self.send_message(message, thread_key)
                    except GoogleChatError as exc:
                        self._metrics.increment(
                            f"alerts_dispatched_errors_total{self._labels()}"
                        )
                        log.error("error sending message error=%s", exc)
                        continue
                self._metrics.duration(
                    f"alerts_dispatched_duration_seconds{self._labels()}", started
                )

    def prepare_message(self, alert: Alert) -> list[ChatMessage]:
        """Render ``alert`` through the template into messages for the webhook."""
        context = {f.name: getattr(alert, f.name) for f in fields(alert)}
        context["alert"] = alert
        try:
            rendered = self.template.render(context)
        except (jinja2.TemplateError, ValueError, TypeError, re.error) as exc:
            log.error("error parsing values in template error=%s", exc)
            raise GoogleChatError(f"error rendering template: {exc}") from exc

        messages: list[ChatMessage] = []
        if len(rendered.encode("utf-8")) >= MAX_MESSAGE_SIZE:
            messages.append(ChatMessage(text=""))
        messages.append(ChatMessage(text=rendered + "\n"))
        return messages

    def _message_url(self, thread_key: str) -> str:
        parts = urlsplit(self.options.endpoint)
        query = dict(parse_qsl(parts.query, keep_blank_values=True))
        query["messageReplyOption"] = "MESSAGE_REPLY_OPTION_UNSPECIFIED"
        if self.options.threaded_replies:
            query["messageReplyOption"] = "REPLY_MESSAGE_FALLBACK_TO_NEW_THREAD"
            query["threadKey"] = thread_key
        return urlunsplit(parts._replace(query=urlencode(sorted(query.items()))))

    def send_message(self, message: ChatMessage, thread_key: str) -> None:
        """Post ``message`` to the webhook, replying in ``thread_key`` if threading is on."""
        try:
            url = self._message_url(thread_key)
        except ValueError as exc:
            raise GoogleChatError(f"invalid endpoint: {exc}") from exc
        log.debug("sending alert url=%s msg=%s", url, message.text)
        try:
            response = self._session.post(
                url,
                data=message.to_json().encode("utf-8"),
                headers={"Content-Type": "application/json"},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise GoogleChatError(str(exc)) from exc
        with response:
            if response.status_code != 200:
                log.debug(
                    "non OK HTTP response received from Google Chat webhook endpoint "
                    "status=%d responseBody=%s",
                    response.status_code,
                    response.text,
                )
                raise GoogleChatError("non ok response from gchat")

    def close(self) -> None:
        """Stop the prune worker and release HTTP connections."""
        self.active_alerts.stop()
        self._session.close()