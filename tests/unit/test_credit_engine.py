"""Unit tests for the credit-issuance engine.

Covers:
- Credit formula and the insufficient-data / verification gates
- Per-device daily cap
- Exactly-once minting per overlapping window (sequential and concurrent)
- Side effects of a mint: history, balance, cache invalidation, listeners
- Minting status and mint requests
"""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from src.config_schema import CreditCalculationConfig
from src.credits.cache import InMemoryCache, user_credits_key
from src.credits.engine import (
    ALREADY_CALCULATED,
    DAY_MS,
    HOUR_MS,
    CreditEngine,
    day_bounds,
    result_digest,
)
from src.credits.ledger import InMemoryCreditLedger, MintRecord
from src.credits.telemetry import InMemoryTelemetryStore
from src.errors import DeviceNotFoundError, InsufficientResourceError, ValidationError
from tests.testing_utils import make_readings


@pytest.mark.unit
class TestCalculateCredits:
    """Tests for the pure calculation step."""

    @pytest.mark.asyncio
    async def test_example_window_earns_one_credit(
        self, engine: CreditEngine, telemetry: InMemoryTelemetryStore
    ) -> None:
        """1200 CO2 and 50 energy over 12 verified readings -> 1 credit."""
        telemetry.add_readings(make_readings("seq-001", 12))

        result = await engine.calculate_credits("seq-001", 0, DAY_MS - 1)

        assert result.credits_earned == 1
        assert result.co2_reduced == pytest.approx(1200)
        assert result.energy_saved == pytest.approx(50)
        assert result.data_points_used == 12
        assert result.verified_data_points == 12
        assert result.can_mint
        assert result.reason is None

    @pytest.mark.asyncio
    async def test_insufficient_data_points(
        self, engine: CreditEngine, telemetry: InMemoryTelemetryStore
    ) -> None:
        telemetry.add_readings(make_readings("seq-001", 5, co2=5000))

        result = await engine.calculate_credits("seq-001", 0, DAY_MS - 1)

        assert not result.can_mint
        assert result.credits_earned == 0
        assert result.reason == "insufficient data points: 5/10"
        assert result.data_points_used == 5

    @pytest.mark.asyncio
    async def test_all_components_are_summed(
        self, telemetry: InMemoryTelemetryStore, ledger: InMemoryCreditLedger
    ) -> None:
        """co2 + energy + temperature + humidity credits add up."""
        engine = CreditEngine(telemetry, ledger, config=CreditCalculationConfig(), cache_ttl=60)
        readings = make_readings("seq-001", 10, co2=250, energy=25)
        telemetry.add_readings([replace(r, temperature=2.5, humidity=5.0) for r in readings])

        result = await engine.calculate_credits("seq-001", 0, DAY_MS - 1)

        # co2 2500/1000=2, energy 250/100=2, temp 25*0.1=2, humidity 50*0.05=2
        assert result.credits_earned == 8

    @pytest.mark.asyncio
    async def test_verification_threshold(
        self, engine: CreditEngine, telemetry: InMemoryTelemetryStore
    ) -> None:
        """Fewer than 80% verified readings blocks the mint."""
        telemetry.add_readings(make_readings("seq-001", 12, verified=9))

        result = await engine.calculate_credits("seq-001", 0, DAY_MS - 1)

        assert result.credits_earned == 1
        assert not result.can_mint
        assert "verification" in (result.reason or "")

    @pytest.mark.asyncio
    async def test_exactly_eighty_percent_verified_passes(
        self, engine: CreditEngine, telemetry: InMemoryTelemetryStore
    ) -> None:
        telemetry.add_readings(make_readings("seq-001", 10, co2=120, verified=8))
        result = await engine.calculate_credits("seq-001", 0, DAY_MS - 1)
        assert result.can_mint

    @pytest.mark.asyncio
    async def test_verification_can_be_disabled(
        self, telemetry: InMemoryTelemetryStore, ledger: InMemoryCreditLedger
    ) -> None:
        engine = CreditEngine(
            telemetry, ledger, config=CreditCalculationConfig(require_verification=False), cache_ttl=60
        )
        telemetry.add_readings(make_readings("seq-001", 12, verified=0))
        result = await engine.calculate_credits("seq-001", 0, DAY_MS - 1)
        assert result.can_mint

    @pytest.mark.asyncio
    async def test_zero_credits_cannot_mint(
        self, engine: CreditEngine, telemetry: InMemoryTelemetryStore
    ) -> None:
        telemetry.add_readings(make_readings("seq-001", 12, co2=10, energy=1))
        result = await engine.calculate_credits("seq-001", 0, DAY_MS - 1)
        assert result.credits_earned == 0
        assert not result.can_mint
        assert result.reason == "no credits earned in window"

    @pytest.mark.asyncio
    async def test_readings_outside_window_ignored(
        self, engine: CreditEngine, telemetry: InMemoryTelemetryStore
    ) -> None:
        telemetry.add_readings(make_readings("seq-001", 12, start=DAY_MS))
        result = await engine.calculate_credits("seq-001", 0, DAY_MS - 1)
        assert result.data_points_used == 0

    @pytest.mark.asyncio
    async def test_unknown_device_raises(self, engine: CreditEngine) -> None:
        with pytest.raises(DeviceNotFoundError):
            await engine.calculate_credits("missing", 0, DAY_MS)

    @pytest.mark.asyncio
    async def test_inverted_window_raises(self, engine: CreditEngine) -> None:
        with pytest.raises(ValidationError):
            await engine.calculate_credits("seq-001", DAY_MS, 0)

    @pytest.mark.asyncio
    async def test_calculation_does_not_record(
        self, engine: CreditEngine, telemetry: InMemoryTelemetryStore
    ) -> None:
        telemetry.add_readings(make_readings("seq-001", 12))
        await engine.calculate_credits("seq-001", 0, DAY_MS - 1)
        assert not await engine.has_credits_been_calculated("seq-001", 0, DAY_MS - 1)


@pytest.mark.unit
class TestDailyCap:
    """Tests for the per-device daily clamp."""

    @pytest.fixture
    def capped(self, telemetry: InMemoryTelemetryStore, ledger: InMemoryCreditLedger) -> CreditEngine:
        return CreditEngine(telemetry, ledger, config=CreditCalculationConfig(max_credits_per_day=5), cache_ttl=60)

    @pytest.mark.asyncio
    async def test_credits_clamped_to_daily_max(
        self, capped: CreditEngine, telemetry: InMemoryTelemetryStore
    ) -> None:
        telemetry.add_readings(make_readings("seq-001", 12, co2=1000))
        result = await capped.process_credits_for_period("seq-001", 0, HOUR_MS)
        assert result.credits_earned == 5
        assert result.can_mint

    @pytest.mark.asyncio
    async def test_cap_spans_windows_on_same_day(
        self, capped: CreditEngine, telemetry: InMemoryTelemetryStore
    ) -> None:
        telemetry.add_readings(make_readings("seq-001", 12, co2=300))
        telemetry.add_readings(make_readings("seq-001", 12, start=2 * HOUR_MS, co2=1000))

        first = await capped.process_credits_for_period("seq-001", 0, HOUR_MS)
        second = await capped.process_credits_for_period("seq-001", HOUR_MS + 1, 3 * HOUR_MS)

        assert first.credits_earned == 3
        assert second.credits_earned == 2

    @pytest.mark.asyncio
    async def test_exhausted_cap_blocks_mint(
        self, capped: CreditEngine, telemetry: InMemoryTelemetryStore
    ) -> None:
        telemetry.add_readings(make_readings("seq-001", 12, co2=1000))
        telemetry.add_readings(make_readings("seq-001", 12, start=2 * HOUR_MS, co2=1000))

        await capped.process_credits_for_period("seq-001", 0, HOUR_MS)
        second = await capped.process_credits_for_period("seq-001", HOUR_MS + 1, 3 * HOUR_MS)

        assert not second.can_mint
        assert second.reason == "daily credit cap reached"

    @pytest.mark.asyncio
    async def test_cap_resets_next_day(
        self, capped: CreditEngine, telemetry: InMemoryTelemetryStore
    ) -> None:
        telemetry.add_readings(make_readings("seq-001", 12, co2=1000))
        telemetry.add_readings(make_readings("seq-001", 12, start=DAY_MS, co2=1000))

        await capped.process_credits_for_period("seq-001", 0, HOUR_MS)
        second = await capped.process_credits_for_period("seq-001", DAY_MS, DAY_MS + HOUR_MS)

        assert second.credits_earned == 5

    def test_day_bounds(self) -> None:
        assert day_bounds(DAY_MS + 5) == (DAY_MS, 2 * DAY_MS - 1)
        assert day_bounds(0) == (0, DAY_MS - 1)


@pytest.mark.unit
class TestIdempotentMinting:
    """A device window is minted at most once."""

    @pytest.mark.asyncio
    async def test_second_call_is_already_calculated(
        self, engine: CreditEngine, telemetry: InMemoryTelemetryStore
    ) -> None:
        telemetry.add_readings(make_readings("seq-001", 12))

        first = await engine.process_credits_for_period("seq-001", 0, DAY_MS - 1)
        second = await engine.process_credits_for_period("seq-001", 0, DAY_MS - 1)

        assert first.can_mint
        assert not second.can_mint
        assert "already calculated" in (second.reason or "")
        assert second.reason == ALREADY_CALCULATED

    @pytest.mark.asyncio
    async def test_overlapping_window_is_rejected(
        self, engine: CreditEngine, telemetry: InMemoryTelemetryStore
    ) -> None:
        telemetry.add_readings(make_readings("seq-001", 30, step=HOUR_MS))

        await engine.process_credits_for_period("seq-001", 0, 12 * HOUR_MS)
        overlap = await engine.process_credits_for_period("seq-001", 6 * HOUR_MS, 20 * HOUR_MS)

        assert overlap.reason == ALREADY_CALCULATED

    @pytest.mark.asyncio
    async def test_adjacent_window_is_allowed(
        self, engine: CreditEngine, telemetry: InMemoryTelemetryStore
    ) -> None:
        telemetry.add_readings(make_readings("seq-001", 12))
        telemetry.add_readings(make_readings("seq-001", 12, start=HOUR_MS))

        await engine.process_credits_for_period("seq-001", 0, HOUR_MS - 1)
        later = await engine.process_credits_for_period("seq-001", HOUR_MS, 2 * HOUR_MS)

        assert later.can_mint

    @pytest.mark.asyncio
    async def test_other_device_unaffected(
        self, engine: CreditEngine, telemetry: InMemoryTelemetryStore
    ) -> None:
        telemetry.add_readings(make_readings("seq-001", 12))
        telemetry.add_readings(make_readings("seq-002", 12))

        await engine.process_credits_for_period("seq-001", 0, DAY_MS - 1)
        other = await engine.process_credits_for_period("seq-002", 0, DAY_MS - 1)

        assert other.can_mint

    @pytest.mark.asyncio
    async def test_concurrent_calls_mint_once(
        self, engine: CreditEngine, telemetry: InMemoryTelemetryStore, ledger: InMemoryCreditLedger
    ) -> None:
        telemetry.add_readings(make_readings("seq-001", 12))

        results = await asyncio.gather(
            *(engine.process_credits_for_period("seq-001", 0, DAY_MS - 1) for _ in range(5))
        )

        assert sum(1 for r in results if r.can_mint) == 1
        assert all(r.reason == ALREADY_CALCULATED for r in results if not r.can_mint)
        assert ledger.get_balance("greenco") == 1

    @pytest.mark.asyncio
    async def test_failed_calculation_does_not_block_retry(
        self, engine: CreditEngine, telemetry: InMemoryTelemetryStore
    ) -> None:
        """A window that could not mint (too little data) can be retried."""
        telemetry.add_readings(make_readings("seq-001", 5))
        first = await engine.process_credits_for_period("seq-001", 0, DAY_MS - 1)
        telemetry.add_readings(make_readings("seq-001", 7, start=10_000))
        second = await engine.process_credits_for_period("seq-001", 0, DAY_MS - 1)

        assert not first.can_mint
        assert second.can_mint


@pytest.mark.unit
class TestMintSideEffects:
    """Tests for history, balance, cache and listeners after a mint."""

    @pytest.mark.asyncio
    async def test_history_and_balance(
        self, engine: CreditEngine, telemetry: InMemoryTelemetryStore
    ) -> None:
        telemetry.add_readings(make_readings("seq-001", 12, co2=500))

        await engine.process_credits_for_period("seq-001", 0, DAY_MS - 1)

        assert engine.get_balance("greenco") == 6
        history = engine.get_history("greenco")
        assert len(history) == 1
        assert history[0]["deviceId"] == "seq-001"
        assert history[0]["credits"] == 6

    @pytest.mark.asyncio
    async def test_cache_invalidated_on_mint(
        self, telemetry: InMemoryTelemetryStore, ledger: InMemoryCreditLedger
    ) -> None:
        cache = InMemoryCache()
        engine = CreditEngine(telemetry, ledger, cache=cache, config=CreditCalculationConfig(), cache_ttl=60)
        assert engine.get_balance("greenco") == 0
        assert cache.get(user_credits_key("greenco")) == 0

        telemetry.add_readings(make_readings("seq-001", 12))
        await engine.process_credits_for_period("seq-001", 0, DAY_MS - 1)

        assert cache.get(user_credits_key("greenco")) is None
        assert engine.get_balance("greenco") == 1

    @pytest.mark.asyncio
    async def test_listeners_notified_once(
        self, engine: CreditEngine, telemetry: InMemoryTelemetryStore
    ) -> None:
        records: list[MintRecord] = []
        engine.add_mint_listener(records.append)
        telemetry.add_readings(make_readings("seq-001", 12))

        await engine.process_credits_for_period("seq-001", 0, DAY_MS - 1)
        await engine.process_credits_for_period("seq-001", 0, DAY_MS - 1)

        assert len(records) == 1
        assert records[0].owner_id == "greenco"
        assert records[0].result["creditsEarned"] == 1

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_undo_mint(
        self, engine: CreditEngine, telemetry: InMemoryTelemetryStore, ledger: InMemoryCreditLedger
    ) -> None:
        def boom(record: MintRecord) -> None:
            raise RuntimeError("listener failed")

        engine.add_mint_listener(boom)
        telemetry.add_readings(make_readings("seq-001", 12))

        result = await engine.process_credits_for_period("seq-001", 0, DAY_MS - 1)

        assert result.can_mint
        assert ledger.has_mint_for_window("seq-001", 0, DAY_MS - 1)

    @pytest.mark.asyncio
    async def test_removed_listener_not_called(
        self, engine: CreditEngine, telemetry: InMemoryTelemetryStore
    ) -> None:
        records: list[MintRecord] = []
        engine.add_mint_listener(records.append)
        engine.remove_mint_listener(records.append)
        telemetry.add_readings(make_readings("seq-001", 12))

        await engine.process_credits_for_period("seq-001", 0, DAY_MS - 1)

        assert records == []

    def test_result_digest_is_stable(self) -> None:
        a = result_digest("seq-001", {"creditsEarned": 1, "co2Reduced": 1200.0})
        b = result_digest("seq-001", {"co2Reduced": 1200.0, "creditsEarned": 1})
        assert a == b
        assert a != result_digest("seq-002", {"creditsEarned": 1, "co2Reduced": 1200.0})


@pytest.mark.unit
class TestMintingStatus:
    """Tests for minting status and mint requests."""

    @pytest.mark.asyncio
    async def test_status_after_mint(
        self, engine: CreditEngine, telemetry: InMemoryTelemetryStore
    ) -> None:
        telemetry.add_readings(make_readings("seq-001", 12, co2=500))
        await engine.process_credits_for_period("seq-001", 0, DAY_MS - 1)

        status = engine.get_minting_status("greenco")

        assert status.total_credits == 6
        assert status.total_minted == 6
        assert status.pending_requests == 0
        assert status.available_to_mint == 6
        assert status.last_mint_time is not None
        assert status.next_mint_time == status.last_mint_time + 24 * HOUR_MS

    def test_status_without_mints(self, engine: CreditEngine) -> None:
        status = engine.get_minting_status("nobody")
        assert status.total_credits == 0
        assert status.last_mint_time is None
        assert status.to_dict()["ownerId"] == "nobody"

    @pytest.mark.asyncio
    async def test_mint_request_reserves_credits(
        self, engine: CreditEngine, telemetry: InMemoryTelemetryStore
    ) -> None:
        telemetry.add_readings(make_readings("seq-001", 12, co2=500))
        await engine.process_credits_for_period("seq-001", 0, DAY_MS - 1)

        request = engine.create_mint_request("greenco", 4, "0xabc")
        status = engine.get_minting_status("greenco")

        assert request.status.value == "PENDING"
        assert status.pending_requests == 1
        assert status.available_to_mint == 2

        with pytest.raises(InsufficientResourceError):
            engine.create_mint_request("greenco", 3, "0xdef")

        confirmed = engine.confirm_mint_request(request.request_id)
        assert confirmed.status.value == "CONFIRMED"
        assert engine.get_minting_status("greenco").available_to_mint == 6

    def test_mint_request_amount_must_be_positive(self, engine: CreditEngine) -> None:
        with pytest.raises(ValidationError):
            engine.create_mint_request("greenco", 0, "0xabc")
