"""Credit-issuance engine.

Turns a device's telemetry over ``[start, end]`` into credits and guarantees
that each device window is minted at most once.

Algorithm (per window):
1. Fetch readings in the window; fewer than ``min_data_points`` -> no mint.
2. Sum CO2 reduced, energy saved, temperature impact, humidity impact and
   count verified readings.
3. co2 = floor(co2 / co2_threshold), energy = floor(energy / energy_threshold),
   temp = floor(temp * temperature_multiplier),
   humidity = floor(humidity * humidity_multiplier); sum and clamp to what
   is left of the device's ``max_credits_per_day`` for the window's UTC day.
4. can_mint = credits > 0 and (verification off or verified fraction >= 0.8).

Idempotency: ``process_credits_for_period`` holds a per-device lock and
relies on ``CreditLedger.append_mint`` (atomic overlap check + insert), so
concurrent or repeated calls for overlapping windows mint exactly once.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Callable

from ..config import get_validated_config
from ..config_schema import CreditCalculationConfig
from ..errors import DeviceNotFoundError, DuplicateMintError, InsufficientResourceError, ValidationError
from ..protocol.messages import now_ms
from .cache import Cache, owner_keys, user_credits_key, user_history_key
from .ledger import CreditLedger, HistoryEntry, MintRecord, MintRequest
from .telemetry import Device, Reading, TelemetryStore

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000
HOUR_MS = 60 * 60 * 1000

ALREADY_CALCULATED = "Credits already calculated for this period"

MintListener = Callable[[MintRecord], None]


@dataclass(frozen=True)
class TimeRange:
    start: int
    end: int


@dataclass(frozen=True)
class CreditCalculationResult:
    """Outcome of one calculation. ``reason`` is set whenever can_mint is False."""

    credits_earned: int
    co2_reduced: float
    energy_saved: float
    temperature_impact: float
    humidity_impact: float
    data_points_used: int
    time_range: TimeRange
    can_mint: bool
    reason: str | None = None
    verified_data_points: int = 0

    @classmethod
    def rejected(cls, start: int, end: int, reason: str, data_points: int = 0) -> CreditCalculationResult:
        return cls(
            credits_earned=0,
            co2_reduced=0.0,
            energy_saved=0.0,
            temperature_impact=0.0,
            humidity_impact=0.0,
            data_points_used=data_points,
            time_range=TimeRange(start, end),
            can_mint=False,
            reason=reason,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "creditsEarned": self.credits_earned,
            "co2Reduced": self.co2_reduced,
            "energySaved": self.energy_saved,
            "temperatureImpact": self.temperature_impact,
            "humidityImpact": self.humidity_impact,
            "dataPointsUsed": self.data_points_used,
            "verifiedDataPoints": self.verified_data_points,
            "timeRange": {"start": self.time_range.start, "end": self.time_range.end},
            "canMint": self.can_mint,
        }
        if self.reason is not None:
            data["reason"] = self.reason
        return data


@dataclass(frozen=True)
class MintingStatus:
    owner_id: str
    total_credits: float
    total_minted: float
    pending_requests: int
    pending_credits: float
    available_to_mint: float
    last_mint_time: int | None
    next_mint_time: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "ownerId": self.owner_id,
            "totalCredits": self.total_credits,
            "totalMinted": self.total_minted,
            "pendingRequests": self.pending_requests,
            "pendingCredits": self.pending_credits,
            "availableToMint": self.available_to_mint,
            "lastMintTime": self.last_mint_time,
            "nextMintTime": self.next_mint_time,
        }


def day_bounds(timestamp: int) -> tuple[int, int]:
    """Inclusive UTC day containing ``timestamp`` (ms)."""
    start = timestamp - timestamp % DAY_MS
    return start, start + DAY_MS - 1


def result_digest(device_id: str, result: dict[str, Any]) -> str:
    """Stable digest of a calculation (``CreditCalculationResult.to_dict()``)."""
    body = json.dumps({"deviceId": device_id, **result}, sort_keys=True)
    return hashlib.sha256(body.encode()).hexdigest()


class CreditEngine:
    """Calculates, deduplicates and records credit mints.

    Args:
        telemetry: device registry and readings
        ledger: mint/balance/history store (source of truth)
        cache: advisory cache for per-owner aggregates (optional)
        config: calculation thresholds (defaults to global config)
        cache_ttl: seconds cached aggregates live (defaults to storage.cache_ttl)
    """

    def __init__(
        self,
        telemetry: TelemetryStore,
        ledger: CreditLedger,
        cache: Cache | None = None,
        config: CreditCalculationConfig | None = None,
        cache_ttl: float | None = None,
    ) -> None:
        self.telemetry = telemetry
        self.ledger = ledger
        self.cache = cache
        self.config = config or get_validated_config().credit_calculation
        self.cache_ttl = cache_ttl if cache_ttl is not None else get_validated_config().storage.cache_ttl
        self._device_locks: dict[str, asyncio.Lock] = {}
        self._listeners: list[MintListener] = []

    def add_mint_listener(self, listener: MintListener) -> None:
        """Call ``listener(record)`` after every successful mint."""
        self._listeners.append(listener)

    def remove_mint_listener(self, listener: MintListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._device_locks.get(device_id)
        if lock is None:
            lock = asyncio.Lock()
            self._device_locks[device_id] = lock
        return lock

    def _device(self, device_id: str) -> Device:
        device = self.telemetry.get_device(device_id)
        if device is None:
            raise DeviceNotFoundError(f"Device {device_id} not found", deviceId=device_id)
        return device

    # ------------------------------------------------------------------
    # Calculation
    # ------------------------------------------------------------------

    async def calculate_credits(self, device_id: str, start: int, end: int) -> CreditCalculationResult:
        """Compute credits for a window without recording anything.

        Raises:
            DeviceNotFoundError: unregistered device
            ValidationError: end precedes start
        """
        if end < start:
            raise ValidationError(f"window end ({end}) precedes start ({start})", start=start, end=end)
        self._device(device_id)
        readings = self.telemetry.query_readings(device_id, start, end)
        return self._compute(device_id, readings, start, end)

    def _compute(self, device_id: str, readings: list[Reading], start: int, end: int) -> CreditCalculationResult:
        cfg = self.config
        count = len(readings)
        if count < cfg.min_data_points:
            return CreditCalculationResult.rejected(
                start, end, f"insufficient data points: {count}/{cfg.min_data_points}", data_points=count
            )

        co2 = sum(r.co2_value for r in readings)
        energy = sum(r.energy_value for r in readings)
        temperature = sum(r.temperature for r in readings)
        humidity = sum(r.humidity for r in readings)
        verified = sum(1 for r in readings if r.verified)

        total = (
            math.floor(co2 / cfg.co2_threshold)
            + math.floor(energy / cfg.energy_threshold)
            + math.floor(temperature * cfg.temperature_multiplier)
            + math.floor(humidity * cfg.humidity_multiplier)
        )

        day_start, day_end = day_bounds(end)
        already = self.ledger.minted_between(device_id, day_start, day_end)
        remaining = max(0, cfg.max_credits_per_day - math.ceil(already))
        credits = min(total, remaining)

        verified_ok = not cfg.require_verification or verified >= count * cfg.min_verified_fraction
        can_mint = credits > 0 and verified_ok

        reason: str | None = None
        if not verified_ok:
            reason = f"verification requirement not met: {verified}/{count} readings verified"
        elif credits <= 0:
            reason = "daily credit cap reached" if total > 0 else "no credits earned in window"

        return CreditCalculationResult(
            credits_earned=credits,
            co2_reduced=co2,
            energy_saved=energy,
            temperature_impact=temperature,
            humidity_impact=humidity,
            data_points_used=count,
            time_range=TimeRange(start, end),
            can_mint=can_mint,
            reason=reason,
            verified_data_points=verified,
        )

    async def has_credits_been_calculated(self, device_id: str, start: int, end: int) -> bool:
        """True if a mint already covers any part of ``[start, end]``."""
        return self.ledger.has_mint_for_window(device_id, start, end)

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    async def process_credits_for_period(self, device_id: str, start: int, end: int) -> CreditCalculationResult:
        """Calculate and, if eligible, mint credits for a window exactly once.

        A window overlapping an earlier mint returns ``can_mint=False`` with
        reason "Credits already calculated for this period"; it never raises.

        Raises:
            DeviceNotFoundError: unregistered device
        """
        async with self._lock_for(device_id):
            if await self.has_credits_been_calculated(device_id, start, end):
                logger.debug(f"Skipping {device_id} [{start}, {end}]: already minted")
                return CreditCalculationResult.rejected(start, end, ALREADY_CALCULATED)

            result = await self.calculate_credits(device_id, start, end)
            if not result.can_mint:
                return result

            device = self._device(device_id)
            record = MintRecord(
                device_id=device_id,
                owner_id=device.owner_id,
                window_start=start,
                window_end=end,
                credits=float(result.credits_earned),
                result=result.to_dict(),
            )
            try:
                self.ledger.append_mint(record)
            except DuplicateMintError:
                logger.info(f"Concurrent mint detected for {device_id} [{start}, {end}]")
                return CreditCalculationResult.rejected(start, end, ALREADY_CALCULATED)

            self._record_mint(record)
            return result

    def _record_mint(self, record: MintRecord) -> None:
        self.ledger.append_history(
            record.owner_id,
            HistoryEntry(
                owner_id=record.owner_id,
                device_id=record.device_id,
                credits=record.credits,
                window_start=record.window_start,
                window_end=record.window_end,
            ),
        )
        balance = self.ledger.add_balance(record.owner_id, record.credits)
        if self.cache is not None:
            self.cache.invalidate(owner_keys(record.owner_id))

        logger.info(
            f"Minted {record.credits:g} credits for {record.device_id} (owner {record.owner_id})",
            extra={
                "device_id": record.device_id,
                "owner_id": record.owner_id,
                "credits": record.credits,
                "balance": balance,
            },
        )

        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception:
                logger.exception(f"Mint listener failed for {record.device_id}")

    # ------------------------------------------------------------------
    # Balances, status and mint requests
    # ------------------------------------------------------------------

    def get_balance(self, owner_id: str) -> float:
        """Owner balance, read through the cache."""
        key = user_credits_key(owner_id)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return float(cached)
        balance = self.ledger.get_balance(owner_id)
        if self.cache is not None:
            self.cache.set(key, balance, self.cache_ttl)
        return balance

    def get_history(self, owner_id: str, limit: int = 50) -> list[dict[str, Any]]:
        """Recent mints credited to an owner, newest first (cached)."""
        key = user_history_key(owner_id)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return list(cached)[:limit]
        entries = [
            {
                "deviceId": e.device_id,
                "credits": e.credits,
                "windowStart": e.window_start,
                "windowEnd": e.window_end,
                "createdAt": e.created_at,
            }
            for e in self.ledger.history(owner_id, limit)
        ]
        if self.cache is not None:
            self.cache.set(key, entries, self.cache_ttl)
        return entries

    def get_minting_status(self, owner_id: str) -> MintingStatus:
        balance = self.get_balance(owner_id)
        pending = self.ledger.pending_mint_requests(owner_id)
        pending_credits = sum(r.amount for r in pending)
        last = self.ledger.last_owner_mint(owner_id)
        last_time = last.created_at if last else None
        interval_ms = int(self.config.credit_interval_hours * HOUR_MS)
        return MintingStatus(
            owner_id=owner_id,
            total_credits=balance,
            total_minted=self.ledger.total_minted(owner_id),
            pending_requests=len(pending),
            pending_credits=pending_credits,
            available_to_mint=max(0.0, balance - pending_credits),
            last_mint_time=last_time,
            next_mint_time=last_time + interval_ms if last_time is not None else now_ms(),
        )

    def create_mint_request(self, owner_id: str, amount: float, data_hash: str) -> MintRequest:
        """Record a PENDING request to mint ``amount`` credits on-chain.

        Raises:
            ValidationError: non-positive amount
            InsufficientResourceError: amount exceeds credits not already pending
        """
        if amount <= 0:
            raise ValidationError(f"mint amount must be positive, got {amount}", amount=amount)
        available = self.get_minting_status(owner_id).available_to_mint
        if amount > available:
            raise InsufficientResourceError(
                f"insufficient credits to mint: requested {amount:g}, available {available:g}",
                availableCredits=available,
            )
        request = self.ledger.create_mint_request(owner_id, amount, data_hash)
        logger.info(f"Mint request {request.request_id} for {owner_id}: {amount:g} credits")
        return request

    def confirm_mint_request(self, request_id: str) -> MintRequest:
        return self.ledger.confirm_mint_request(request_id)
