from __future__ import annotations

import threading

import pytest

from session.broadcast import BroadcastClosed, StateBroadcast


def test_late_subscriber_receives_latest_value():
    bc: StateBroadcast[str] = StateBroadcast()
    bc.publish("one")
    bc.publish("two")

    sub = bc.subscribe()
    assert sub.poll() == "two"
    assert sub.poll() is None


def test_subscriber_before_first_publish_has_nothing_pending():
    bc: StateBroadcast[str] = StateBroadcast()
    sub = bc.subscribe()
    assert bc.value is None
    assert sub.poll() is None
    with pytest.raises(TimeoutError):
        sub.get(timeout=0.01)


def test_slow_subscriber_only_sees_newest():
    bc: StateBroadcast[int] = StateBroadcast()
    sub = bc.subscribe()
    for i in range(5):
        bc.publish(i)
    assert sub.get(timeout=1) == 4
    assert sub.poll() is None


def test_every_subscriber_gets_each_publish():
    bc: StateBroadcast[str] = StateBroadcast()
    a = bc.subscribe()
    b = bc.subscribe()
    bc.publish("x")
    assert a.get(timeout=1) == "x"
    assert b.get(timeout=1) == "x"
    assert bc.value == "x"


def test_get_blocks_until_publish():
    bc: StateBroadcast[str] = StateBroadcast()
    sub = bc.subscribe()
    received = []

    t = threading.Thread(target=lambda: received.append(sub.get(timeout=5)))
    t.start()
    bc.publish("ready")
    t.join(5)
    assert received == ["ready"]


def test_close_ends_iteration_and_rejects_publish():
    bc: StateBroadcast[str] = StateBroadcast()
    sub = bc.subscribe()
    bc.publish("last")
    bc.close()

    # Pending value is still delivered, then iteration stops
    assert list(sub) == ["last"]
    with pytest.raises(BroadcastClosed):
        sub.get(timeout=0.01)
    with pytest.raises(BroadcastClosed):
        bc.publish("more")


def test_closed_subscription_is_detached():
    bc: StateBroadcast[str] = StateBroadcast()
    with bc.subscribe() as sub:
        assert bc.subscriber_count() == 1
    assert sub.closed
    assert bc.subscriber_count() == 0
    bc.publish("ignored")
    assert sub.poll() is None
