"""Tests for provider_hub/providers/manager.py - Provider Manager."""

import asyncio
import logging
from contextlib import aclosing
from unittest.mock import AsyncMock

import pytest
from stubs import StubProvider, make_request

from provider_hub.config.settings import ProviderConfig
from provider_hub.exceptions import (
    AllProvidersFailedError,
    ApiError,
    InvalidConfigError,
    ProviderNotFoundError,
    ProviderNotReadyError,
    RateLimitExceededError,
    UnsupportedOperationError,
)
from provider_hub.providers.base import ProviderStatus, TokenUsage
from provider_hub.providers.manager import ManagerEvent, SwitchReason, UsageStatistics


def _register(registry, provider_id, **kwargs):
    """Register a stub kind whose factory always returns the same instance."""
    provider = StubProvider(provider_id=provider_id, **kwargs)
    registry.register_provider_kind(provider.descriptor, lambda: provider)
    return provider


def _record(manager, event):
    calls = []
    manager.subscribe(event, lambda *args: calls.append(args))
    return calls


class TestUsageStatistics:
    """Tests for the UsageStatistics running figures."""

    def test_incremental_average_and_error_rate(self):
        stats = UsageStatistics(provider_id="a")

        stats.record(100, success=True)
        stats.record(200, success=False)
        stats.record(300, success=True)

        assert stats.request_count == 3
        assert stats.average_latency_ms == pytest.approx(200)
        assert stats.error_rate == pytest.approx(1 / 3)
        assert stats.last_used is not None

    def test_error_count_survives_float_rounding(self):
        stats = UsageStatistics(provider_id="a")
        failures = [False, True, True, False, True, True, False]

        for failed in failures:
            stats.record(1, success=not failed)

        assert stats.error_rate == pytest.approx(4 / 7)

    def test_to_dict(self):
        data = UsageStatistics(provider_id="a").to_dict()

        assert data["provider_id"] == "a"
        assert data["last_used"] is None


class TestProviderSelection:
    """Tests for initialize_provider and set_current_provider."""

    @pytest.mark.asyncio
    async def test_first_initialized_provider_becomes_current(self, registry, make_manager):
        _register(registry, "a")
        _register(registry, "b")
        manager = make_manager()
        switches = _record(manager, ManagerEvent.PROVIDER_SWITCHED)

        await manager.initialize_provider("a", ProviderConfig())
        await manager.initialize_provider("b", ProviderConfig())

        assert manager.get_current_provider_id() == "a"
        assert manager.get_current_provider() is registry.get_provider("a")
        assert switches == []

    @pytest.mark.asyncio
    async def test_initialize_creates_zeroed_statistics(self, registry, make_manager):
        _register(registry, "a")
        manager = make_manager()

        await manager.initialize_provider("a", ProviderConfig())

        stats = manager.get_provider_usage("a")
        assert stats == UsageStatistics(provider_id="a")
        assert stats.last_used is None

    @pytest.mark.asyncio
    async def test_initialize_unknown_provider(self, make_manager):
        manager = make_manager()
        errors = _record(manager, ManagerEvent.ERROR)

        with pytest.raises(ProviderNotFoundError):
            await manager.initialize_provider("nope", ProviderConfig())

        assert len(errors) == 1
        assert manager.get_current_provider_id() is None

    @pytest.mark.asyncio
    async def test_reinitialize_keeps_one_instance(self, registry, make_manager):
        _register(registry, "a")
        manager = make_manager()
        second_config = ProviderConfig(timeout=20)

        await manager.initialize_provider("a", ProviderConfig(timeout=10))
        await manager.initialize_provider("a", second_config)

        assert list(manager.get_active_providers()) == ["a"]
        assert registry.get_provider_config("a") is second_config

    def test_set_current_unregistered(self, make_manager):
        with pytest.raises(ProviderNotFoundError):
            make_manager().set_current_provider("nope")

    def test_set_current_uninitialized(self, registry, make_manager):
        _register(registry, "a")

        with pytest.raises(ProviderNotReadyError):
            make_manager().set_current_provider("a")

    @pytest.mark.asyncio
    async def test_set_current_not_ready(self, registry, make_manager):
        b = _register(registry, "b")
        _register(registry, "a")
        manager = make_manager(enable_auto_failover=False)
        await manager.initialize_provider("a", ProviderConfig())
        await manager.initialize_provider("b", ProviderConfig())
        b.health_error = RuntimeError("down")
        await b.check_health()

        with pytest.raises(ProviderNotReadyError, match="error"):
            manager.set_current_provider("b")

    @pytest.mark.asyncio
    async def test_manual_switch_emits_event(self, registry, make_manager):
        _register(registry, "a")
        _register(registry, "b")
        manager = make_manager()
        await manager.initialize_provider("a", ProviderConfig())
        await manager.initialize_provider("b", ProviderConfig())
        switches = _record(manager, ManagerEvent.PROVIDER_SWITCHED)

        manager.set_current_provider("b")
        manager.set_current_provider("b")

        assert manager.get_current_provider_id() == "b"
        assert switches == [("a", "b", SwitchReason.MANUAL)]

    def test_available_providers(self, registry, make_manager):
        _register(registry, "a")

        assert [d.id for d in make_manager().get_available_providers()] == ["a"]


class TestGenerate:
    """Tests for generate, admission control and usage accounting."""

    @pytest.mark.asyncio
    async def test_generate_without_provider_never_calls_vendor(self, registry, make_manager):
        a = _register(registry, "a")
        manager = make_manager()

        with pytest.raises(ProviderNotReadyError):
            await manager.generate(make_request())

        with pytest.raises(InvalidConfigError):
            await manager.initialize_provider("a", ProviderConfig(timeout=0))
        with pytest.raises(ProviderNotReadyError):
            await manager.generate(make_request())

        assert a.vendor_calls == 0

    @pytest.mark.asyncio
    async def test_average_latency_matches_fixed_latency(self, registry, clock, make_manager):
        _register(registry, "a", clock=clock, latency=0.25)
        manager = make_manager()
        await manager.initialize_provider("a", ProviderConfig())

        for _ in range(5):
            await manager.generate(make_request())

        stats = manager.get_provider_usage("a")
        assert stats.request_count == 5
        assert stats.average_latency_ms == pytest.approx(250)
        assert stats.error_rate == 0
        assert stats.token_count == 75
        assert stats.total_cost == pytest.approx(5 * 0.02)
        assert stats.last_used is not None

    @pytest.mark.asyncio
    async def test_error_rate_after_failures(self, registry, clock, make_manager):
        a = _register(registry, "a", clock=clock, latency=0.1)
        manager = make_manager()
        await manager.initialize_provider("a", ProviderConfig())

        for fail in (False, True, False, True, False):
            a.error = ApiError("a", "boom") if fail else None
            try:
                await manager.generate(make_request())
            except ApiError:
                pass

        stats = manager.get_provider_usage("a")
        assert stats.request_count == 5
        assert stats.error_rate == pytest.approx(2 / 5)
        assert stats.average_latency_ms == pytest.approx(100)
        assert stats.token_count == 45

    @pytest.mark.asyncio
    async def test_usage_and_error_events(self, registry, make_manager):
        a = _register(registry, "a", error=ApiError("a", "boom"))
        manager = make_manager()
        await manager.initialize_provider("a", ProviderConfig())
        usage = _record(manager, ManagerEvent.USAGE_UPDATED)
        errors = _record(manager, ManagerEvent.ERROR)

        with pytest.raises(ApiError):
            await manager.generate(make_request())

        assert usage[0][0] == "a"
        assert usage[0][1].error_rate == 1.0
        assert errors == [(a.error,)]

    @pytest.mark.asyncio
    async def test_concurrency_cap(self, registry, make_manager):
        gate = asyncio.Event()
        _register(registry, "a", gate=gate)
        manager = make_manager(max_concurrent_requests=1)
        await manager.initialize_provider("a", ProviderConfig())

        tasks = [asyncio.create_task(manager.generate(make_request())) for _ in range(2)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        rejected = [r for r in results if isinstance(r, RateLimitExceededError)]
        succeeded = [r for r in results if not isinstance(r, BaseException)]
        assert len(rejected) == 1
        assert len(succeeded) == 1
        assert rejected[0].source == RateLimitExceededError.ADMISSION
        assert manager.get_active_request_count("a") == 0
        # Admission rejections are not requests
        assert manager.get_provider_usage("a").request_count == 1

    @pytest.mark.asyncio
    async def test_cancellation_releases_slot(self, registry, make_manager):
        gate = asyncio.Event()
        _register(registry, "a", gate=gate)
        manager = make_manager(max_concurrent_requests=1)
        await manager.initialize_provider("a", ProviderConfig())

        task = asyncio.create_task(manager.generate(make_request()))
        await asyncio.sleep(0)
        assert manager.get_active_request_count("a") == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert manager.get_active_request_count("a") == 0
        assert manager.get_provider_usage("a").error_rate == 1.0

    @pytest.mark.asyncio
    async def test_statistics_are_copies(self, registry, make_manager):
        _register(registry, "a")
        manager = make_manager()
        await manager.initialize_provider("a", ProviderConfig())

        manager.get_provider_statistics()["a"].request_count = 99

        assert manager.get_provider_usage("a").request_count == 0


class TestGenerateStream:
    """Tests for generate_stream."""

    @pytest.mark.asyncio
    async def test_stream_records_usage(self, registry, clock, make_manager):
        _register(registry, "a", clock=clock, latency=0.05)
        manager = make_manager()
        await manager.initialize_provider("a", ProviderConfig())

        chunks = [chunk async for chunk in manager.generate_stream(make_request())]

        assert [c.content for c in chunks] == ["one", "two", "three", ""]
        stats = manager.get_provider_usage("a")
        assert stats.request_count == 1
        assert stats.error_rate == 0
        assert stats.token_count == 7
        assert stats.average_latency_ms == pytest.approx(50)
        assert manager.get_active_request_count("a") == 0

    @pytest.mark.asyncio
    async def test_early_close_releases_slot(self, registry, make_manager):
        _register(registry, "a")
        manager = make_manager(max_concurrent_requests=1)
        await manager.initialize_provider("a", ProviderConfig())

        async with aclosing(manager.generate_stream(make_request())) as stream:
            async for _ in stream:
                assert manager.get_active_request_count("a") == 1
                break

        assert manager.get_active_request_count("a") == 0
        assert manager.get_provider_usage("a").error_rate == 1.0

    @pytest.mark.asyncio
    async def test_second_stream_rejected_while_first_open(self, registry, make_manager):
        _register(registry, "a")
        manager = make_manager(max_concurrent_requests=1)
        await manager.initialize_provider("a", ProviderConfig())

        async with aclosing(manager.generate_stream(make_request())) as first:
            await first.__anext__()
            with pytest.raises(RateLimitExceededError):
                await manager.generate_stream(make_request()).__anext__()

    @pytest.mark.asyncio
    async def test_stream_requires_streaming_provider(self, registry, make_manager):
        a = _register(registry, "a", streaming=False)
        manager = make_manager()
        await manager.initialize_provider("a", ProviderConfig())

        with pytest.raises(UnsupportedOperationError):
            async for _ in manager.generate_stream(make_request()):
                pass

        assert a.vendor_calls == 0
        assert manager.get_active_request_count("a") == 0


class TestGenerateWithFailover:
    """Tests for generate_with_failover."""

    @pytest.mark.asyncio
    async def test_failover_to_first_working_fallback(self, registry, make_manager):
        _register(registry, "a", error=ApiError("a", "down", status_code=503, retryable=True))
        _register(registry, "b")
        c = _register(registry, "c")
        manager = make_manager(fallback_providers=["b", "c"])
        for provider_id in ("a", "b", "c"):
            await manager.initialize_provider(provider_id, ProviderConfig())
        switches = _record(manager, ManagerEvent.PROVIDER_SWITCHED)

        result = await manager.generate_with_failover(make_request())

        assert result.provider_id == "b"
        assert manager.get_current_provider_id() == "b"
        assert switches == [("a", "b", SwitchReason.FAILOVER)]
        assert c.vendor_calls == 0

    @pytest.mark.asyncio
    async def test_current_provider_success_does_not_switch(self, registry, make_manager):
        _register(registry, "a")
        _register(registry, "b")
        manager = make_manager(fallback_providers=["b"])
        await manager.initialize_provider("a", ProviderConfig())
        await manager.initialize_provider("b", ProviderConfig())
        switches = _record(manager, ManagerEvent.PROVIDER_SWITCHED)

        result = await manager.generate_with_failover(make_request())

        assert result.provider_id == "a"
        assert switches == []

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error(self, registry, make_manager):
        for provider_id in ("a", "b", "c"):
            _register(registry, provider_id, error=ApiError(provider_id, f"{provider_id} down"))
        manager = make_manager(fallback_providers=["b", "c"])
        for provider_id in ("a", "b", "c"):
            await manager.initialize_provider(provider_id, ProviderConfig())

        with pytest.raises(ApiError) as exc_info:
            await manager.generate_with_failover(make_request())

        assert exc_info.value.provider_id == "c"
        assert manager.get_current_provider_id() == "a"

    @pytest.mark.asyncio
    async def test_skips_unregistered_and_not_ready(self, registry, make_manager):
        _register(registry, "a")
        b = _register(registry, "b")
        manager = make_manager(fallback_providers=["ghost", "b"])
        await manager.initialize_provider("a", ProviderConfig())
        a = registry.get_provider("a")
        a.error = ApiError("a", "down")

        with pytest.raises(ApiError):
            await manager.generate_with_failover(make_request())

        # "b" was never initialized and "ghost" is unknown
        assert b.vendor_calls == 0

    @pytest.mark.asyncio
    async def test_nothing_ready(self, make_manager):
        manager = make_manager(fallback_providers=["ghost"])

        with pytest.raises(AllProvidersFailedError) as exc_info:
            await manager.generate_with_failover(make_request())

        assert exc_info.value.attempted == ["ghost"]

    @pytest.mark.asyncio
    async def test_duplicate_fallbacks_tried_once(self, registry, make_manager):
        a = _register(registry, "a", error=ApiError("a", "down"))
        manager = make_manager(fallback_providers=["a", "a"])
        await manager.initialize_provider("a", ProviderConfig())

        with pytest.raises(ApiError):
            await manager.generate_with_failover(make_request())

        assert a.vendor_calls == 1


class TestAutomaticFailover:
    """Tests for failover triggered by provider events."""

    @pytest.mark.asyncio
    async def test_switches_when_current_enters_error(self, registry, make_manager):
        a = _register(registry, "a")
        _register(registry, "b")
        manager = make_manager(fallback_providers=["a", "b"])
        await manager.initialize_provider("a", ProviderConfig())
        await manager.initialize_provider("b", ProviderConfig())
        switches = _record(manager, ManagerEvent.PROVIDER_SWITCHED)

        a.health_error = RuntimeError("vendor down")
        await manager.check_provider_health()

        assert manager.get_current_provider_id() == "b"
        assert switches == [("a", "b", SwitchReason.AUTOMATIC_FAILOVER)]

    @pytest.mark.asyncio
    async def test_no_fallback_leaves_current(self, registry, make_manager, caplog):
        a = _register(registry, "a")
        manager = make_manager(fallback_providers=["b"])
        await manager.initialize_provider("a", ProviderConfig())

        a.health_error = RuntimeError("vendor down")
        with caplog.at_level(logging.WARNING):
            await manager.check_provider_health()

        assert manager.get_current_provider_id() == "a"
        assert "No healthy fallback provider available for a" in caplog.text

    @pytest.mark.asyncio
    async def test_disabled_auto_failover(self, registry, make_manager):
        a = _register(registry, "a")
        _register(registry, "b")
        manager = make_manager(fallback_providers=["b"], enable_auto_failover=False)
        await manager.initialize_provider("a", ProviderConfig())
        await manager.initialize_provider("b", ProviderConfig())

        a.health_error = RuntimeError("vendor down")
        await manager.check_provider_health()

        assert manager.get_current_provider_id() == "a"

    @pytest.mark.asyncio
    async def test_failed_reinitialize_of_current_fails_over(self, registry, make_manager):
        _register(registry, "a")
        _register(registry, "b")
        manager = make_manager(fallback_providers=["b"])
        await manager.initialize_provider("a", ProviderConfig())
        await manager.initialize_provider("b", ProviderConfig())

        with pytest.raises(InvalidConfigError):
            await manager.initialize_provider("a", ProviderConfig(timeout=0))

        assert manager.get_current_provider_id() == "b"

    @pytest.mark.asyncio
    async def test_ordinary_request_errors_do_not_switch(self, registry, make_manager):
        _register(registry, "a", error=ApiError("a", "bad request", status_code=400))
        _register(registry, "b")
        manager = make_manager(fallback_providers=["b"])
        await manager.initialize_provider("a", ProviderConfig())
        await manager.initialize_provider("b", ProviderConfig())

        with pytest.raises(ApiError):
            await manager.generate(make_request())

        assert manager.get_current_provider_id() == "a"


class TestHealthMonitoring:
    """Tests for health checks and the monitoring task."""

    @pytest.mark.asyncio
    async def test_check_provider_health_emits_results(self, registry, make_manager):
        _register(registry, "a")
        b = _register(registry, "b")
        manager = make_manager(enable_auto_failover=False)
        await manager.initialize_provider("a", ProviderConfig())
        await manager.initialize_provider("b", ProviderConfig())
        b.check_health = AsyncMock(side_effect=RuntimeError("probe crashed"))
        completed = _record(manager, ManagerEvent.HEALTH_CHECK_COMPLETED)

        results = await manager.check_provider_health()

        assert completed == [(results,)]
        assert results["a"].status == ProviderStatus.READY
        assert results["b"].status == ProviderStatus.ERROR

    @pytest.mark.asyncio
    async def test_monitoring_runs_periodically(self, registry, make_manager):
        _register(registry, "a")
        manager = make_manager(health_check_interval=0.01)
        completed = _record(manager, ManagerEvent.HEALTH_CHECK_COMPLETED)

        await manager.initialize_provider("a", ProviderConfig())
        await asyncio.sleep(0.05)
        await manager.dispose()

        assert len(completed) >= 1

    @pytest.mark.asyncio
    async def test_monitoring_disabled_with_zero_interval(self, registry, make_manager):
        _register(registry, "a")
        manager = make_manager(health_check_interval=0)

        await manager.initialize_provider("a", ProviderConfig())
        manager.start_health_monitoring()

        assert manager._health_task is None

    @pytest.mark.asyncio
    async def test_stop_health_monitoring(self, registry, make_manager):
        _register(registry, "a")
        manager = make_manager(health_check_interval=60)
        await manager.initialize_provider("a", ProviderConfig())
        task = manager._health_task

        await manager.stop_health_monitoring()

        assert task.cancelled()
        assert manager._health_task is None


class TestModelsTokensCost:
    """Tests for model listing, token counting and cost estimation."""

    @pytest.mark.asyncio
    async def test_get_available_models(self, registry, make_manager):
        _register(registry, "a")
        manager = make_manager()
        await manager.initialize_provider("a", ProviderConfig())

        models = await manager.get_available_models()

        assert [m.id for m in models] == ["stub-model"]

    @pytest.mark.asyncio
    async def test_get_all_available_models(self, registry, make_manager):
        _register(registry, "a")
        b = _register(registry, "b")
        _register(registry, "c")
        manager = make_manager()
        await manager.initialize_provider("a", ProviderConfig())
        await manager.initialize_provider("b", ProviderConfig())
        await registry.create_provider("c")
        b.get_available_models = AsyncMock(side_effect=RuntimeError("catalog offline"))

        models = await manager.get_all_available_models()

        assert [m.id for m in models["a"]] == ["stub-model"]
        assert models["b"] == []
        assert "c" not in models

    @pytest.mark.asyncio
    async def test_count_tokens(self, registry, make_manager):
        manager = make_manager()
        assert await manager.count_tokens("12345678") == 2

        _register(registry, "a")
        await manager.initialize_provider("a", ProviderConfig())
        assert await manager.count_tokens("12345678") == 2

    @pytest.mark.asyncio
    async def test_estimate_cost_unknown_model(self, registry, make_manager):
        manager = make_manager()
        usage = TokenUsage(prompt_tokens=100, completion_tokens=100)
        assert manager.estimate_cost(usage, "anything").total_cost == 0

        _register(registry, "a")
        await manager.initialize_provider("a", ProviderConfig())
        cost = manager.estimate_cost(usage, "unknown-model")

        assert cost.total_cost == 0
        assert cost.currency == "USD"


class TestInitializeFromConfig:
    """Tests for initialize_from_config."""

    @pytest.mark.asyncio
    async def test_default_provider_first(self, registry, make_manager):
        _register(registry, "a")
        _register(registry, "b")
        manager = make_manager(default_provider="b")

        failures = await manager.initialize_from_config({"a": ProviderConfig(), "b": ProviderConfig()})

        assert failures == {}
        assert manager.get_current_provider_id() == "b"
        assert manager.is_provider_ready("a")

    @pytest.mark.asyncio
    async def test_failures_are_collected(self, registry, make_manager):
        _register(registry, "a")
        _register(registry, "b")
        manager = make_manager()

        failures = await manager.initialize_from_config(
            {"a": ProviderConfig(timeout=0), "ghost": ProviderConfig(), "b": ProviderConfig()}
        )

        assert isinstance(failures["a"], InvalidConfigError)
        assert isinstance(failures["ghost"], ProviderNotFoundError)
        assert manager.get_current_provider_id() == "b"


class TestDispose:
    """Tests for manager disposal."""

    @pytest.mark.asyncio
    async def test_dispose_clears_state(self, registry, make_manager):
        _register(registry, "a")
        manager = make_manager()
        await manager.initialize_provider("a", ProviderConfig())
        await manager.generate(make_request())

        await manager.dispose()

        assert manager.get_current_provider_id() is None
        assert manager.get_provider_statistics() == {}
        assert manager.is_disposed
        with pytest.raises(ProviderNotReadyError):
            await manager.generate(make_request())

    @pytest.mark.asyncio
    async def test_dispose_leaves_registry_providers(self, registry, make_manager):
        _register(registry, "a")
        manager = make_manager()
        await manager.initialize_provider("a", ProviderConfig())

        await manager.dispose()
        await manager.dispose()

        assert registry.is_provider_ready("a")

    @pytest.mark.asyncio
    async def test_disposed_manager_ignores_registry_events(self, registry, make_manager):
        a = _register(registry, "a")
        _register(registry, "b")
        manager = make_manager(fallback_providers=["b"])
        await manager.initialize_provider("a", ProviderConfig())
        await manager.initialize_provider("b", ProviderConfig())
        await manager.dispose()

        a.health_error = RuntimeError("down")
        await registry.check_all_provider_health()

        assert manager.get_current_provider_id() is None

    @pytest.mark.asyncio
    async def test_initialize_after_dispose(self, registry, make_manager):
        _register(registry, "a")
        manager = make_manager()
        await manager.dispose()

        with pytest.raises(ProviderNotReadyError):
            await manager.initialize_provider("a", ProviderConfig())
