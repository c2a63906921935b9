"""
Unit Tests for Metrics Abstraction Layer

This module tests the metrics abstraction layer that lets the auth core record metrics without knowing which
backend (Telegraf or none) is configured.

Test Coverage:
- MetricsClient interface implementations
- Backend selection via factory function
- Error handling on close
- Compatibility between implementations
"""

import pytest
from unittest.mock import Mock, AsyncMock

from social.graze.authcore.app.metrics import (
    MetricsClient,
    TelegrafCompatibilityClient,
    NoOpMetricsClient,
    create_metrics_client,
)
from tests.test_helpers import MockStatsdClient


class TestMetricsClientInterface:
    """Test the abstract MetricsClient interface."""

    def test_interface_is_abstract(self):
        """MetricsClient should be abstract and not instantiable."""
        with pytest.raises(TypeError):
            MetricsClient()


class TestNoOpMetricsClient:
    """Test the NoOpMetricsClient implementation."""

    @pytest.fixture
    def noop_client(self):
        """Create a NoOpMetricsClient instance for testing."""
        return NoOpMetricsClient()

    def test_noop_increment(self, noop_client):
        """NoOp increment should not raise exceptions."""
        noop_client.increment("test.counter", 1, {"tag": "value"})
        noop_client.increment("test.counter", 5)
        noop_client.increment("test.counter")

    def test_noop_gauge(self, noop_client):
        """NoOp gauge should not raise exceptions."""
        noop_client.gauge("test.gauge", 42.5, {"tag": "value"})
        noop_client.gauge("test.gauge", 0)

    def test_noop_timer(self, noop_client):
        """NoOp timer should not raise exceptions."""
        noop_client.timer("test.timer", 1.234, {"tag": "value"})
        noop_client.timer("test.timer", 0.001)

    @pytest.mark.asyncio
    async def test_noop_close(self, noop_client):
        """NoOp close should not raise exceptions."""
        await noop_client.close()


class TestTelegrafCompatibilityClient:
    """Test the TelegrafCompatibilityClient wrapper."""

    @pytest.fixture
    def mock_telegraf_client(self):
        """Create a mock TelegrafStatsdClient."""
        mock = Mock()
        mock.increment = Mock()
        mock.gauge = Mock()
        mock.timer = Mock()
        mock.close = AsyncMock()
        return mock

    @pytest.fixture
    def telegraf_client(self, mock_telegraf_client):
        """Create a TelegrafCompatibilityClient with mocked backend."""
        return TelegrafCompatibilityClient(mock_telegraf_client)

    def test_telegraf_increment(self, telegraf_client, mock_telegraf_client):
        """Telegraf increment should delegate to underlying client."""
        telegraf_client.increment("authcore.auth.result", 3, {"operation": "sign_in"})

        mock_telegraf_client.increment.assert_called_once_with(
            "authcore.auth.result", 3, tag_dict={"operation": "sign_in"}
        )

    def test_telegraf_gauge(self, telegraf_client, mock_telegraf_client):
        """Telegraf gauge should delegate to underlying client."""
        telegraf_client.gauge("test.gauge", 42.0, {"status": "ok"})

        mock_telegraf_client.gauge.assert_called_once_with(
            "test.gauge", 42.0, tag_dict={"status": "ok"}
        )

    def test_telegraf_timer(self, telegraf_client, mock_telegraf_client):
        """Telegraf timer should delegate to underlying client."""
        telegraf_client.timer("authcore.auth.time", 1.234, {"operation": "sign_up"})

        mock_telegraf_client.timer.assert_called_once_with(
            "authcore.auth.time", 1.234, tag_dict={"operation": "sign_up"}
        )

    @pytest.mark.asyncio
    async def test_telegraf_close(self, telegraf_client, mock_telegraf_client):
        """Telegraf close should delegate to underlying client."""
        await telegraf_client.close()

        mock_telegraf_client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_telegraf_close_error_is_logged(self, telegraf_client, mock_telegraf_client):
        """A transport error while closing should not propagate."""
        mock_telegraf_client.close.side_effect = OSError("socket closed")

        await telegraf_client.close()

    def test_telegraf_increment_no_tags(self, telegraf_client, mock_telegraf_client):
        """Telegraf increment should handle None tag_dict gracefully."""
        telegraf_client.increment("test.counter")

        mock_telegraf_client.increment.assert_called_once_with(
            "test.counter", 1, tag_dict={}
        )


class TestMetricsClientFactory:
    """Test the create_metrics_client factory function."""

    def test_create_noop_client(self):
        client = create_metrics_client("none")
        assert isinstance(client, NoOpMetricsClient)

    def test_backend_name_is_case_insensitive(self):
        assert isinstance(create_metrics_client("NONE"), NoOpMetricsClient)

    def test_create_telegraf_client_with_instance(self):
        mock_telegraf = Mock()
        client = create_metrics_client("telegraf", telegraf_client=mock_telegraf)

        assert isinstance(client, TelegrafCompatibilityClient)
        assert client.client is mock_telegraf

    def test_invalid_backend(self):
        with pytest.raises(ValueError, match="Invalid metrics backend"):
            create_metrics_client("otel")


class TestMockStatsdClient:
    """The recording client used across the test suite."""

    def test_counts_by_tag_subset(self):
        client = MockStatsdClient()
        client.increment("authcore.session.ended", 1, {"reason": "logout"})
        client.increment("authcore.session.ended", 2, {"reason": "timeout"})

        assert client.count("authcore.session.ended") == 3
        assert client.count("authcore.session.ended", reason="timeout") == 2
        assert client.count("authcore.session.created") == 0

    @pytest.mark.asyncio
    async def test_close(self):
        client = MockStatsdClient()
        await client.close()
        assert client.closed is True
