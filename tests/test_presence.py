import asyncio
from datetime import timedelta

from taskflow.realtime.presence import PresenceState, PresenceTracker


def tracker(clock, grace=30.0):
    return PresenceTracker(clock=clock, grace_seconds=grace)


def test_state_ages_from_online_to_offline(clock):
    presence = tracker(clock)
    assert presence.classify("u1") == PresenceState.OFFLINE

    presence.heartbeat("u1")
    assert presence.classify("u1") == PresenceState.ONLINE
    clock.advance(minutes=4, seconds=59)
    assert presence.classify("u1") == PresenceState.ONLINE
    clock.advance(seconds=1)
    assert presence.classify("u1") == PresenceState.AWAY
    clock.advance(minutes=25)
    assert presence.classify("u1") == PresenceState.OFFLINE


def test_heartbeat_returns_previous_state(clock):
    presence = tracker(clock)
    assert presence.heartbeat("u1") == PresenceState.OFFLINE
    clock.advance(minutes=10)
    assert presence.heartbeat("u1") == PresenceState.AWAY
    assert presence.classify("u1") == PresenceState.ONLINE


def test_sweep_reports_each_transition_once(clock):
    presence = tracker(clock)
    presence.heartbeat("u1")
    assert presence.sweep() == []

    clock.advance(minutes=6)
    assert presence.sweep() == [("u1", PresenceState.AWAY)]
    assert presence.sweep() == []

    clock.advance(minutes=30)
    assert presence.sweep() == [("u1", PresenceState.OFFLINE)]
    assert presence.snapshot() == {}


def test_sweep_forgets_long_idle_observers(clock):
    presence = PresenceTracker(clock=clock, retention=timedelta(hours=1))
    presence.heartbeat("u1")
    clock.advance(hours=2)
    presence.sweep()
    assert len(presence) == 0


def test_disconnect_goes_offline_after_grace(clock):
    presence = tracker(clock, grace=0.01)
    offline = []

    async def on_offline(observer_id):
        offline.append(observer_id)

    async def scenario():
        presence.connected("u1")
        presence.disconnected("u1", on_offline=on_offline)
        assert presence.classify("u1") == PresenceState.ONLINE
        await asyncio.sleep(0.05)

    asyncio.run(scenario())
    assert offline == ["u1"]
    assert presence.classify("u1") == PresenceState.OFFLINE


def test_reconnect_within_grace_cancels_offline(clock):
    presence = tracker(clock, grace=0.02)
    offline = []

    async def scenario():
        presence.connected("u1")
        presence.disconnected("u1", on_offline=offline.append)
        presence.connected("u1")
        await asyncio.sleep(0.05)

    asyncio.run(scenario())
    assert offline == []
    assert presence.classify("u1") == PresenceState.ONLINE


def test_second_connection_keeps_observer_online(clock):
    presence = tracker(clock, grace=0.01)
    offline = []

    async def scenario():
        presence.connected("u1")
        presence.connected("u1")
        presence.disconnected("u1", on_offline=offline.append)
        await asyncio.sleep(0.03)

    asyncio.run(scenario())
    assert offline == []


def test_snapshot_lists_online_and_away(clock):
    presence = tracker(clock)
    presence.heartbeat("u1")
    clock.advance(minutes=10)
    presence.heartbeat("u2")
    assert presence.snapshot() == {"u1": "away", "u2": "online"}
