import io
import json
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

import pytest
import responses

from calert.alerts import Alert
from calert.google_chat import (
    ChatMessage,
    GoogleChatError,
    GoogleChatOptions,
    GoogleChatProvider,
    convert_tz,
    current_time,
    duration_since,
    re_replace_all,
    title,
)
from calert.metrics import MetricsManager

ENDPOINT = "https://chat.example.com/v1/spaces/room/messages"

MESSAGE_TEMPLATE = (
    "*({{ labels.severity | upper }}) {{ labels.alertname }} - {{ Title(status) }}*\n"
    "{% for key, value in annotations | dictsort %}"
    "{{ Title(key) }}: {{ value }}\n"
    "{% endfor %}"
)


@pytest.fixture
def template_path(tmp_path):
    path = tmp_path / "message.tmpl"
    path.write_text(MESSAGE_TEMPLATE)
    return str(path)


@pytest.fixture
def make_provider(template_path):
    created = []

    def factory(**overrides):
        settings = {
            "endpoint": ENDPOINT + "?key=placeholder",
            "room": "qa",
            "template": template_path,
            "metrics": MetricsManager("calert"),
        }
        settings.update(overrides)
        provider = GoogleChatProvider(GoogleChatOptions(**settings))
        created.append(provider)
        return provider

    yield factory
    for provider in created:
        provider.close()


def _alert(fingerprint="abc", **kwargs):
    return Alert(
        status="firing",
        labels={"severity": "high", "alertname": "TestAlert"},
        annotations={"team": "qa", "dryrun": "true"},
        starts_at=datetime.now(timezone.utc),
        fingerprint=fingerprint,
        **kwargs,
    )


def _metrics_text(metrics):
    out = io.StringIO()
    metrics.flush_metrics(out)
    return out.getvalue()


def test_template_matches_source_expectation(make_provider):
    chat = make_provider(endpoint="http://", dry_run=True)
    alert = Alert(
        status="firing",
        labels={"severity": "high", "alertname": "TestAlert"},
        annotations={"team": "qa", "dryrun": "true"},
    )
    msgs = chat.prepare_message(alert)
    assert chat.template.name == "message.tmpl"
    assert msgs[0].text == "*(HIGH) TestAlert - Firing*\nDryrun: true\nTeam: qa\n\n"


def test_oversized_message_gets_leading_empty_message(tmp_path):
    path = tmp_path / "big.tmpl"
    path.write_text("{{ annotations.body }}")
    metrics = MetricsManager("calert")
    with GoogleChatProvider(
        GoogleChatOptions(endpoint=ENDPOINT, room="qa", template=str(path), metrics=metrics)
    ) as chat:
        msgs = chat.prepare_message(Alert(annotations={"body": "x" * 5000}))
    assert [m.text for m in msgs] == ["", "x" * 5000 + "\n"]


def test_missing_template_raises(tmp_path):
    with pytest.raises(GoogleChatError):
        GoogleChatProvider(
            GoogleChatOptions(endpoint=ENDPOINT, room="qa", template=str(tmp_path / "none.tmpl"))
        )


def test_invalid_proxy_raises(template_path):
    with pytest.raises(GoogleChatError):
        GoogleChatProvider(
            GoogleChatOptions(
                endpoint=ENDPOINT, room="qa", template=template_path, proxy_url="http://[::1"
            )
        )


def test_template_error_raises_on_prepare(tmp_path):
    path = tmp_path / "tz.tmpl"
    path.write_text("{{ ConvertTZ(starts_at, 'Nowhere/Atlantis') }}")
    with GoogleChatProvider(
        GoogleChatOptions(endpoint=ENDPOINT, room="qa", template=str(path))
    ) as chat:
        with pytest.raises(GoogleChatError):
            chat.prepare_message(_alert())


def test_id_and_room(make_provider):
    chat = make_provider(room="ops")
    assert (chat.id(), chat.room()) == ("google_chat", "ops")


def test_send_message_threaded(make_provider):
    chat = make_provider(threaded_replies=True)
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, ENDPOINT, status=200)
        result = chat.send_message(ChatMessage(text="hello"), "thread-1")
        assert len(rsps.calls) == 1
        request = rsps.calls[0].request
    assert result is None
    query = parse_qs(urlsplit(request.url).query)
    assert query == {
        "key": ["placeholder"],
        "messageReplyOption": ["REPLY_MESSAGE_FALLBACK_TO_NEW_THREAD"],
        "threadKey": ["thread-1"],
    }
    assert json.loads(request.body) == {"text": "hello"}
    assert request.headers["Content-Type"] == "application/json"


def test_send_message_unthreaded(make_provider):
    chat = make_provider()
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, ENDPOINT, status=200)
        result = chat.send_message(ChatMessage(text="hello"), "thread-1")
        assert len(rsps.calls) == 1
        request = rsps.calls[0].request
    assert result is None
    query = parse_qs(urlsplit(request.url).query)
    assert query["messageReplyOption"] == ["MESSAGE_REPLY_OPTION_UNSPECIFIED"]
    assert "threadKey" not in query
    assert json.loads(request.body) == {"text": "hello"}


def test_send_message_non_ok_raises(make_provider):
    chat = make_provider()
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, ENDPOINT, status=500, body="boom")
        with pytest.raises(GoogleChatError, match="non ok response"):
            chat.send_message(ChatMessage(text="hello"), "k")


def test_push_dry_run_sends_nothing(make_provider):
    metrics = MetricsManager("calert")
    chat = make_provider(dry_run=True, metrics=metrics)
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        chat.push([_alert("a"), _alert("b")])
        assert len(rsps.calls) == 0
    text = _metrics_text(metrics)
    assert 'calert_alerts_dispatched_total{provider="google_chat", room="qa"} 2' in text
    assert "a" in chat.active_alerts and "b" in chat.active_alerts


def test_push_reuses_thread_key_per_fingerprint(make_provider):
    chat = make_provider(threaded_replies=True)
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, ENDPOINT, status=200)
        chat.push([_alert("same")])
        chat.push([_alert("same")])
        keys = [parse_qs(urlsplit(c.request.url).query)["threadKey"][0] for c in rsps.calls]
    assert len(keys) == 2
    assert keys[0] == keys[1] == chat.active_alerts.lookup("same")


def test_push_counts_errors(make_provider):
    metrics = MetricsManager("calert")
    chat = make_provider(metrics=metrics)
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, ENDPOINT, status=403)
        chat.push([_alert()])
    text = _metrics_text(metrics)
    assert 'calert_alerts_dispatched_errors_total{provider="google_chat", room="qa"} 1' in text


@pytest.mark.parametrize(
    "text, expected",
    [("firing", "Firing"), ("hello world", "Hello World"), ("RESOLVED", "Resolved"), ("", "")],
)
def test_title(text, expected):
    assert title(text) == expected


def test_re_replace_all_group_references():
    assert re_replace_all(r"(\w+)@(\w+)", "$2:${1}", "user@host") == "host:user"
    assert re_replace_all("a", "$$", "banana") == "b$n$n$"


def test_re_replace_all_unknown_group_is_empty():
    assert re_replace_all("(a)", "[$9]", "a") == "[]"


def test_convert_tz_utc():
    moment = datetime(2024, 1, 2, 15, 4, 5, tzinfo=timezone.utc)
    assert convert_tz(moment, "UTC") == "Tue, 02 Jan 2024 3:04:05 PM UTC"


def test_convert_tz_unknown_zone_raises():
    with pytest.raises(ValueError):
        convert_tz(datetime(2024, 1, 2, tzinfo=timezone.utc), "Nowhere/Atlantis")


def test_current_time_unknown_zone():
    assert current_time("Nowhere/Atlantis").startswith("Error loading timezone:")


def test_current_time_in_zone_ends_with_zone_name():
    assert current_time("UTC").endswith(" UTC")


def test_duration_since():
    past = datetime.now(timezone.utc) - timedelta(hours=1, minutes=2, seconds=3)
    assert duration_since(past) == "1h 2m 3s"