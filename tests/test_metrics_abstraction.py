"""
Unit Tests for Metrics Abstraction Layer

Test Coverage:
- MetricsClient interface implementations
- Backend selection via factory function
- Error handling on shutdown
- Metrics recorded by the request and sweep paths
"""

from unittest.mock import AsyncMock, Mock

import pytest

from social.skyreader.auth.app.metrics import (
    MetricsClient,
    NoOpMetricsClient,
    TelegrafCompatibilityClient,
    create_metrics_client,
)
from social.skyreader.auth.app.tasks import sweep_once
from social.skyreader.auth.session.store import SweepResult


class TestMetricsClientInterface:
    """Test the abstract MetricsClient interface."""

    def test_interface_is_abstract(self):
        """MetricsClient should be abstract and not instantiable."""
        with pytest.raises(TypeError):
            MetricsClient()


class TestNoOpMetricsClient:
    """Test the NoOpMetricsClient implementation."""

    @pytest.mark.asyncio
    async def test_noop_accepts_everything(self):
        noop_client = NoOpMetricsClient()
        noop_client.increment("skyreader.auth.test.count", 1, {"tag": "value"})
        noop_client.increment("skyreader.auth.test.count")
        noop_client.gauge("skyreader.auth.test.gauge", 42.5)
        noop_client.timer("skyreader.auth.test.time", 0.001, {"tag": "value"})
        await noop_client.close()


class TestTelegrafCompatibilityClient:
    """Test the TelegrafCompatibilityClient wrapper."""

    @pytest.fixture
    def mock_telegraf_client(self):
        mock = Mock()
        mock.connect = AsyncMock()
        mock.close = AsyncMock()
        return mock

    def test_increment_delegates_with_tags(self, mock_telegraf_client):
        client = TelegrafCompatibilityClient(mock_telegraf_client)
        client.increment("skyreader.auth.login.init.count", 2, {"code": "x"})
        mock_telegraf_client.increment.assert_called_once_with(
            "skyreader.auth.login.init.count", 2, tag_dict={"code": "x"}
        )

    def test_missing_tags_become_empty(self, mock_telegraf_client):
        client = TelegrafCompatibilityClient(mock_telegraf_client)
        client.timer("skyreader.auth.server.request.time", 0.5)
        client.gauge("skyreader.auth.health", 3)
        mock_telegraf_client.timer.assert_called_once_with(
            "skyreader.auth.server.request.time", 0.5, tag_dict={}
        )
        mock_telegraf_client.gauge.assert_called_once_with(
            "skyreader.auth.health", 3, tag_dict={}
        )

    @pytest.mark.asyncio
    async def test_connect_and_close(self, mock_telegraf_client):
        client = TelegrafCompatibilityClient(mock_telegraf_client)
        await client.connect()
        await client.close()
        mock_telegraf_client.connect.assert_awaited_once()
        mock_telegraf_client.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_error_is_logged(self, mock_telegraf_client):
        mock_telegraf_client.close.side_effect = OSError("socket gone")
        client = TelegrafCompatibilityClient(mock_telegraf_client)
        await client.close()


class TestCreateMetricsClient:
    """Test backend selection."""

    def test_none_backend(self):
        assert isinstance(create_metrics_client("none"), NoOpMetricsClient)

    def test_backend_name_is_case_insensitive(self):
        assert isinstance(create_metrics_client("NONE"), NoOpMetricsClient)

    def test_telegraf_backend_with_client(self):
        telegraf_client = Mock()
        client = create_metrics_client("telegraf", telegraf_client=telegraf_client)
        assert isinstance(client, TelegrafCompatibilityClient)
        assert client.client is telegraf_client

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_metrics_client("otel")


class TestSweepMetrics:
    """Test the metrics emitted by one sweep."""

    @pytest.mark.asyncio
    async def test_counts_recorded(self):
        session_store = Mock()
        session_store.sweep = AsyncMock(
            return_value=SweepResult(pending=2, expired=1, locked_out=3)
        )
        metrics_client = Mock()

        result = await sweep_once(session_store, metrics_client)

        assert result == SweepResult(pending=2, expired=1, locked_out=3)
        metrics_client.increment.assert_any_call("skyreader.auth.task.sweep.pending", 2)
        metrics_client.increment.assert_any_call("skyreader.auth.task.sweep.expired", 1)
        metrics_client.increment.assert_any_call(
            "skyreader.auth.task.sweep.locked_out", 3
        )
        metrics_client.timer.assert_called_once()

    @pytest.mark.asyncio
    async def test_failed_sweep_is_reported(self):
        session_store = Mock()
        session_store.sweep = AsyncMock(side_effect=ConnectionError("redis down"))
        metrics_client = Mock()

        assert await sweep_once(session_store, metrics_client) is None
        metrics_client.increment.assert_called_once_with(
            "skyreader.auth.task.sweep.exception",
            1,
            tag_dict={"exception": "ConnectionError"},
        )
