"""Tests for typed notification channels."""

from unittest.mock import MagicMock

import pytest

from conftest import CONFIG_CHANNEL, STATUS_CHANNEL, status_payload, workspace_payload
from repobridge.channel import Channel
from repobridge.exceptions import PayloadDecodeError, UnknownVariantError, error_stats
from repobridge.messages import REPO_CONFIG, RepoStatus, TimeoutErrorConfig, WorkspaceConfig
from repobridge.store import Store
from repobridge.testing import LoopbackTransport


class TestChannelListening:
    """Test listener lifecycle against the transport."""

    def test_first_listen_registers_one_transport_listener(self):
        """Many callbacks share a single transport listener."""
        transport = LoopbackTransport()
        channel = Channel(transport, CONFIG_CHANNEL, REPO_CONFIG)

        channel.listen(MagicMock())
        channel.listen(MagicMock())

        assert transport.listener_count(CONFIG_CHANNEL) == 1
        assert channel.is_listening

    def test_last_unlisten_releases_transport_listener(self):
        """Removing every callback releases the transport listener."""
        transport = LoopbackTransport()
        channel = Channel(transport, CONFIG_CHANNEL, REPO_CONFIG)
        first = channel.listen(MagicMock())
        second = channel.listen(MagicMock())

        first()
        assert transport.listener_count(CONFIG_CHANNEL) == 1
        second()

        assert transport.listener_count(CONFIG_CHANNEL) == 0
        assert not channel.is_listening

    def test_repeated_listen_unlisten_does_not_leak(self):
        """Cycling listen/unlisten leaves no transport listeners behind."""
        transport = LoopbackTransport()
        channel = Channel(transport, CONFIG_CHANNEL, REPO_CONFIG)

        for _ in range(10):
            channel.listen(MagicMock())()

        assert transport.listener_count() == 0

    def test_unlisten_twice_is_noop(self):
        """A second unlisten does not disturb other callbacks."""
        transport = LoopbackTransport()
        channel = Channel(transport, CONFIG_CHANNEL, REPO_CONFIG)
        unlisten = channel.listen(MagicMock())
        survivor = MagicMock()
        channel.listen(survivor)

        unlisten()
        unlisten()
        transport.push_event(CONFIG_CHANNEL, {"type": "TimeoutError"})

        survivor.assert_called_once_with(TimeoutErrorConfig())

    def test_close_releases_everything(self):
        """close() drops callbacks and the transport listener."""
        transport = LoopbackTransport()
        channel = Channel(transport, CONFIG_CHANNEL, REPO_CONFIG)
        callback = MagicMock()
        channel.listen(callback)

        channel.close()
        delivered = transport.push_event(CONFIG_CHANNEL, {"type": "Initial"})

        assert not delivered
        callback.assert_not_called()


class TestChannelDelivery:
    """Test decoding and delivery of payloads."""

    def test_payload_decoded_before_delivery(self):
        """Callbacks receive typed values, not raw payloads."""
        transport = LoopbackTransport()
        channel = Channel(transport, CONFIG_CHANNEL, REPO_CONFIG)
        received = []
        channel.listen(received.append)

        transport.push_event(CONFIG_CHANNEL, workspace_payload())

        assert isinstance(received[0], WorkspaceConfig)
        assert channel.received == 1

    def test_order_preserved(self):
        """Payloads arrive in transport order."""
        transport = LoopbackTransport()
        channel = Channel(transport, STATUS_CHANNEL, RepoStatus)
        received = []
        channel.listen(received.append)

        for i in range(5):
            transport.push_event(STATUS_CHANNEL, status_payload(f"op {i}"))

        assert [s.operation_description for s in received] == [f"op {i}" for i in range(5)]

    def test_other_channels_ignored(self):
        """A channel only sees its own name."""
        transport = LoopbackTransport()
        channel = Channel(transport, CONFIG_CHANNEL, REPO_CONFIG)
        callback = MagicMock()
        channel.listen(callback)

        transport.push_event(STATUS_CHANNEL, status_payload())

        callback.assert_not_called()

    def test_bind_writes_to_store(self):
        """bind() writes each decoded value into a store."""
        transport = LoopbackTransport()
        channel = Channel(transport, CONFIG_CHANNEL, REPO_CONFIG)
        store = Store(None)
        channel.bind(store)

        transport.push_event(CONFIG_CHANNEL, {"type": "WorkerError", "message": "x"})

        assert store.read().message == "x"


class TestChannelProtocolErrors:
    """Test malformed payload handling."""

    def test_malformed_payload_raises_without_handler(self):
        """Without on_error the decode error propagates to the sender."""
        transport = LoopbackTransport()
        channel = Channel(transport, CONFIG_CHANNEL, REPO_CONFIG)
        callback = MagicMock()
        channel.listen(callback)

        with pytest.raises(UnknownVariantError) as exc_info:
            transport.push_event(CONFIG_CHANNEL, {"type": "Bogus"})

        assert exc_info.value.context["channel"] == CONFIG_CHANNEL
        callback.assert_not_called()

    def test_malformed_payload_goes_to_handler(self):
        """With on_error the error is handed over, never dropped."""
        transport = LoopbackTransport()
        on_error = MagicMock()
        channel = Channel(transport, STATUS_CHANNEL, RepoStatus, on_error=on_error)
        callback = MagicMock()
        channel.listen(callback)

        transport.push_event(STATUS_CHANNEL, {"operation_description": 3})

        on_error.assert_called_once()
        assert isinstance(on_error.call_args[0][0], PayloadDecodeError)
        callback.assert_not_called()
        assert channel.received == 0

    def test_malformed_payload_is_recorded(self, caplog):
        """Protocol mismatches are logged at ERROR and counted."""
        transport = LoopbackTransport()
        channel = Channel(transport, STATUS_CHANNEL, RepoStatus, on_error=MagicMock())
        channel.listen(MagicMock())

        with caplog.at_level("ERROR", logger="repobridge.channel"):
            transport.push_event(STATUS_CHANNEL, "not an object")

        assert error_stats.total_count == 1
        assert "Protocol mismatch" in caplog.text


class TestChannelPublish:
    """Test frontend-to-backend events."""

    def test_publish_encodes_value(self):
        """publish() sends the wire encoding on the channel name."""
        transport = LoopbackTransport()
        channel = Channel(transport, CONFIG_CHANNEL, REPO_CONFIG)

        channel.publish(TimeoutErrorConfig())

        assert transport.emitted == [(CONFIG_CHANNEL, {"type": "TimeoutError"})]
