"""Tests for the status notification channel."""

import pytest

from hvinventory.core.models import ConnectionState, NotificationLevel
from hvinventory.services.notification_service import NotificationService


@pytest.mark.unit
def test_subscribers_receive_updates_in_order():
    service = NotificationService()
    received = []
    service.subscribe(received.append)

    service.notify(ConnectionState.PROBING_REACHABILITY, "Testing reachability", address="hv01")
    service.notify(ConnectionState.REGISTERED, "Connected", address="hv01", busy=False)

    assert [update.state for update in received] == [
        ConnectionState.PROBING_REACHABILITY,
        ConnectionState.REGISTERED,
    ]
    assert received[1].busy is False


@pytest.mark.unit
def test_unsubscribe_stops_delivery():
    service = NotificationService()
    received = []
    unsubscribe = service.subscribe(received.append)

    unsubscribe()
    unsubscribe()
    service.notify(ConnectionState.IDLE, "ignored")

    assert received == []


@pytest.mark.unit
def test_failing_subscriber_does_not_break_others(caplog):
    service = NotificationService()
    received = []

    def broken(update):
        raise RuntimeError("widget disposed")

    service.subscribe(broken)
    service.subscribe(received.append)

    update = service.notify(ConnectionState.FAILED, "failed", level=NotificationLevel.ERROR)

    assert received == [update]
    assert "widget disposed" in caplog.text


@pytest.mark.unit
def test_history_is_bounded():
    service = NotificationService(history_size=3)

    for index in range(5):
        service.notify(ConnectionState.IDLE, f"update {index}")

    assert [update.message for update in service.recent()] == ["update 2", "update 3", "update 4"]
    assert [update.message for update in service.recent(limit=1)] == ["update 4"]

    service.clear()
    assert service.recent() == []
