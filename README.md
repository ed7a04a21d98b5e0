# calert

calert receives webhook notifications from Prometheus Alertmanager and posts
them to Google Chat rooms. It renders each alert through a Jinja2 template that
you supply. Repeat notifications for the same alert fingerprint reuse the same
thread key until the alert's thread TTL runs out.

## Installation

```
pip install .
```

## Running

```
calert --config config.toml
```

If `--config` is not given, `config.sample.toml` is read. If that default file
cannot be read, calert logs a warning and takes its settings from the
environment alone. If a file named with `--config` cannot be read, calert exits
with status 1.

Logs are written to stdout as JSON lines. Set `app.log = "debug"` to turn on
debug logging.

## Configuration

Settings are in TOML:

```toml
[app]
address = "0.0.0.0:6000"     # required, host:port
server_timeout = "60s"       # required
enable_request_logs = true
log = "info"                 # "debug" for verbose logs

[providers.prod_alerts]
type = "google_chat"
endpoint = "https://chat.example.com/v1/spaces/xxx/messages?key=placeholder"
max_idle_conns = 50          # required, non-zero
timeout = "30s"              # required
proxy_url = ""
template = "templates/message.tmpl"   # required
thread_ttl = "12h"           # required
threaded_replies = false
dry_run = false
```

Each table under `providers` whose `type` is `google_chat` defines one room, and
the table's name is the room name. Providers of any other type are ignored. At
least one provider must be configured, or calert exits with status 1.

Durations use the forms `"300ms"`, `"30s"`, `"1h30m"` and so on. Units are `ns`,
`us`, `ms`, `s`, `m` and `h`. A bare number is taken as nanoseconds.

You can also set any value with an environment variable that starts with
`CALERT_`. The rest of the name is lower-cased, and a double underscore
separates nested keys. For example, `CALERT_APP__ADDRESS=0.0.0.0:7000` sets
`app.address`. Values from the environment override values from the file.

## HTTP endpoints

| Method | Path        | Purpose                                         |
|--------|-------------|-------------------------------------------------|
| GET    | `/`         | Welcome message                                 |
| GET    | `/ping`     | Health check, answers `pong`                    |
| GET    | `/metrics`  | Metrics in Prometheus text format               |
| POST   | `/dispatch` | Alertmanager webhook receiver                   |

JSON responses use the envelope `{"status": ..., "message": ..., "data": ...}`.
`message` and `data` appear only when they are set.

`/dispatch` sends the alerts to the room named in the `room_name` query
parameter. Without that parameter it uses the payload's `receiver` field. If
the body is not a valid payload, it answers 400 with `Error decoding payload.`.
Otherwise it answers `dispatched` at once and delivers the alerts in a
background thread. A room with no provider is logged and counted as an error.

`/metrics` reports:

- process CPU time and thread count;
- the request, dispatch and prune counters and durations, prefixed `calert_`;
- `calert_start_timestamp`;
- `calert_uptime_seconds`.

## Google Chat delivery

Each message is POSTed as `{"text": ...}` to the endpoint. The
`messageReplyOption` query parameter is added to the request. With
`threaded_replies = true`, the request also carries `threadKey`, which is set
to the alert's UUID, and the reply option becomes
`REPLY_MESSAGE_FALLBACK_TO_NEW_THREAD`. Any response other than 200 counts as a
failed delivery. With `dry_run = true` nothing is sent, but the dispatch
metrics are still recorded. Active alerts are pruned once an hour if they
started more than `thread_ttl` ago.

## Templates

Templates are Jinja2 and are rendered with the alert's fields as context:
`status`, `labels`, `annotations`, `starts_at`, `ends_at`, `generator_url` and
`fingerprint`. The whole alert is also available as `alert`. These helpers are
available:

- `Title(s)` (also the `title` filter)
- `toUpper(s)`
- `Contains(s, sub)`
- `reReplaceAll(pattern, repl, text)`: `$1` and `${name}` refer to groups
- `CurrentTime(location)`
- `ConvertTZ(time, location)`
- `DurationSince(time)`

Each rendered message gets a trailing newline. If a rendered message is 4096
bytes or more, an empty message is queued ahead of it.

## Using it as a library

```python
from calert.metrics import MetricsManager
from calert.google_chat import GoogleChatOptions, GoogleChatProvider
from calert.notifier import Notifier
from calert.alerts import Alert

metrics = MetricsManager("calert")
with GoogleChatProvider(GoogleChatOptions(
    endpoint="https://chat.example.com/hook",
    room="qa",
    template="templates/message.tmpl",
    metrics=metrics,
    dry_run=True,
)) as provider:
    notifier = Notifier([provider])
    notifier.dispatch([Alert(status="firing", fingerprint="abc")], "qa")
```

For a room with no provider, `Notifier.dispatch` raises
`calert.notifier.UnknownRoomError`. `calert.alerts.AlertPayload.from_dict`
parses an Alertmanager webhook body.

## What it does not do

- No message template ships with the package. You must supply your own.
- Google Chat is the only provider.
- Active-alert thread keys are held in memory and are lost when the process
  restarts.