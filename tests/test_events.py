#!/usr/bin/env python3
"""
Tests for the event bus and network state.
"""

from configsync.core.events import EventBus, NetworkState, WORKSPACE_SYNC_COMPLETED


class TestEventBus:
    """Test event fan-out."""

    def test_subscribe_and_emit(self):
        """Test that subscribers receive channel and payload."""
        bus = EventBus()
        received = []
        bus.subscribe(lambda channel, payload: received.append((channel, payload)))
        bus.emit(WORKSPACE_SYNC_COMPLETED, {'workspaceId': 'ws1'})
        assert received == [(WORKSPACE_SYNC_COMPLETED, {'workspaceId': 'ws1'})]

    def test_unsubscribe(self):
        """Test that an unsubscribed callback no longer receives events."""
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe(lambda channel, payload: received.append(channel))
        unsubscribe()
        unsubscribe()
        bus.emit('x', {})
        assert received == []

    def test_failing_subscriber_does_not_block_others(self):
        """Test that one failing subscriber does not stop delivery."""
        bus = EventBus()
        received = []

        def broken(channel, payload):
            raise RuntimeError('boom')

        bus.subscribe(broken)
        bus.subscribe(lambda channel, payload: received.append(channel))
        bus.emit('x', {})
        assert received == ['x']


class TestNetworkState:
    """Test the online flag."""

    def test_listeners_notified_on_change_only(self):
        """Test that listeners fire only when the state flips."""
        network = NetworkState()
        changes = []
        network.add_listener(lambda old, new: changes.append((old, new)))
        network.set_online(True)
        network.set_online(False)
        network.set_online(False)
        network.set_online(True)
        assert changes == [(True, False), (False, True)]
        assert network.is_online is True
