"""Scheduled credit processing across every registered device.

On each run, every device whose last processed window ended at least
``min_interval_hours`` ago is processed over
``[last_end + 1 minute, now]``. The last end falls back to the device's
registration time, then to ``now - lookback_days``.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from ..agents.runtime import PeriodicTask
from ..auth import Authorizer, require_owner
from ..config import get_validated_config
from ..config_schema import SchedulerConfig
from ..errors import DeviceNotFoundError
from ..protocol.messages import now_ms
from .engine import HOUR_MS, CreditCalculationResult, CreditEngine

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000
DAY_MS = 24 * HOUR_MS


class ScheduledCreditProcessor:
    """Batch driver around :class:`CreditEngine`."""

    def __init__(
        self,
        engine: CreditEngine,
        authorizer: Authorizer | None = None,
        config: SchedulerConfig | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.engine = engine
        self.authorizer = authorizer
        self.config = config or get_validated_config().scheduler
        self._clock = clock
        self._task: PeriodicTask | None = None
        self._is_processing = False
        self._runs = 0
        self._last_run: dict[str, Any] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and self._task.is_running

    async def start(self, interval_minutes: float | None = None) -> None:
        """Process all devices now, then every ``interval_minutes``."""
        if self._task is not None:
            logger.info("Scheduled credit processing is already running")
            return
        minutes = interval_minutes if interval_minutes is not None else self.config.interval_minutes
        logger.info(f"Starting scheduled credit processing every {minutes} minutes")
        self._task = PeriodicTask(
            name="credit-scheduler",
            interval=minutes * 60,
            callback=self._run_once,
            run_immediately=True,
        )
        await self._task.start()

    async def stop(self) -> None:
        if self._task is None:
            return
        await self._task.stop()
        self._task = None
        logger.info("Stopped scheduled credit processing")

    async def _run_once(self) -> None:
        await self.process_all_devices()

    async def process_all_devices(self) -> dict[str, Any]:
        """Process every registered device once.

        Overlapping runs are skipped. Per-device errors are counted and
        logged; they never abort the run.
        """
        if self._is_processing:
            logger.info("Credit processing is already in progress, skipping")
            return {"skipped": True}

        self._is_processing = True
        summary: dict[str, Any] = {"processed": 0, "minted": 0, "credits": 0, "errors": 0}
        try:
            devices = self.engine.telemetry.devices()
            logger.info(f"Processing credits for {len(devices)} devices")
            for device in devices:
                try:
                    result = await self.process_device_credits(device.device_id)
                except Exception:
                    logger.exception(f"Error processing credits for device {device.device_id}")
                    summary["errors"] += 1
                    continue
                if result is None:
                    continue
                summary["processed"] += 1
                if result.can_mint:
                    summary["minted"] += 1
                    summary["credits"] += result.credits_earned
            logger.info(
                f"Credit processing completed: {summary['processed']} processed, "
                f"{summary['minted']} minted, {summary['errors']} errors"
            )
        finally:
            self._is_processing = False
            self._runs += 1
            self._last_run = {"at": self._clock(), **summary}
        return summary

    async def process_device_credits(self, device_id: str) -> CreditCalculationResult | None:
        """Process the next window of one device, or None if too early."""
        last = self.get_last_processed_time(device_id)
        now = self._clock()
        if now - last < self.config.min_interval_hours * HOUR_MS:
            logger.debug(f"Device {device_id}: not enough time since last processing")
            return None

        start = last + MINUTE_MS
        result = await self.engine.process_credits_for_period(device_id, start, now)
        if result.can_mint:
            logger.info(
                f"Device {device_id}: earned {result.credits_earned} credits "
                f"(co2={result.co2_reduced:.1f}, energy={result.energy_saved:.1f}, "
                f"points={result.data_points_used})"
            )
        else:
            logger.info(f"Device {device_id}: no credits earned ({result.reason})")
        return result

    def get_last_processed_time(self, device_id: str) -> int:
        last_mint = self.engine.ledger.last_mint(device_id)
        if last_mint is not None:
            return last_mint.window_end
        device = self.engine.telemetry.get_device(device_id)
        if device is not None:
            return device.created_at
        return self._clock() - int(self.config.lookback_days * DAY_MS)

    async def process_credits_for_range(
        self,
        credential: str,
        device_id: str,
        start: int,
        end: int,
    ) -> CreditCalculationResult:
        """Manual trigger for an explicit window.

        Raises:
            AuthorizationError: credential denied or caller does not own the device
            DeviceNotFoundError: unregistered device
        """
        if self.authorizer is None:
            raise RuntimeError("process_credits_for_range requires an authorizer")
        identity = self.authorizer.authorize(credential)
        device = self.engine.telemetry.get_device(device_id)
        if device is None:
            raise DeviceNotFoundError(f"Device {device_id} not found", deviceId=device_id)
        require_owner(identity, device.owner_id)
        logger.info(f"Manually processing credits for {device_id} [{start}, {end}] by {identity.owner_id}")
        return await self.engine.process_credits_for_period(device_id, start, end)

    def get_status(self) -> dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "isProcessing": self._is_processing,
            "runs": self._runs,
            "lastRun": self._last_run,
        }
