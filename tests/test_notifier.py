import pytest

from calert.alerts import Alert, Provider
from calert.notifier import Notifier, UnknownRoomError


class RecordingProvider(Provider):
    def __init__(self, room_name):
        self._room = room_name
        self.batches = []

    def id(self):
        return "recording"

    def room(self):
        return self._room

    def push(self, alerts):
        self.batches.append(list(alerts))


def test_dispatch_routes_to_room():
    qa = RecordingProvider("qa")
    ops = RecordingProvider("ops")
    notifier = Notifier([qa, ops])
    alerts = [Alert(fingerprint="a"), Alert(fingerprint="b")]
    notifier.dispatch(alerts, "ops")
    assert ops.batches == [alerts]
    assert qa.batches == []


def test_dispatch_unknown_room():
    notifier = Notifier([RecordingProvider("qa")])
    with pytest.raises(UnknownRoomError) as info:
        notifier.dispatch([Alert()], "missing")
    assert info.value.room == "missing"
    assert "no provider configured for room: missing" in str(info.value)


def test_later_provider_wins_same_room():
    first = RecordingProvider("qa")
    second = RecordingProvider("qa")
    notifier = Notifier([first, second])
    notifier.dispatch([Alert(fingerprint="x")], "qa")
    assert first.batches == []
    assert len(second.batches) == 1
    assert notifier.rooms == ["qa"]


def test_empty_notifier_rejects_everything():
    notifier = Notifier([])
    assert notifier.rooms == []
    with pytest.raises(LookupError):
        notifier.dispatch([], "qa")