from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from aidloop.core.models import DoseKind, InsulinDoseEvent, PumpStatus, TempBasal

logger = logging.getLogger("aidloop.pump")


def floor_to_step(value: float, step: Optional[float]) -> float:
    """Round down to a multiple of ``step``; pumps never deliver more than requested."""
    if not step:
        return value
    steps = math.floor(value / step + 1e-9)
    return round(max(0, steps) * step, 4)


class PumpAdapter(ABC):
    """
    Narrow command surface of an insulin pump.

    Status and rounding are synchronous reads of the driver's cached state;
    commands suspend until the pump acknowledges them and raise on failure.
    """

    @abstractmethod
    def status(self) -> PumpStatus:
        ...

    @abstractmethod
    def current_temp(self, now: datetime) -> Optional[TempBasal]:
        ...

    @abstractmethod
    def round_basal(self, rate: float) -> float:
        ...

    @abstractmethod
    def round_bolus(self, units: float) -> float:
        ...

    @abstractmethod
    async def ensure_current_data(self) -> None:
        ...

    @abstractmethod
    async def enact_temp_basal(self, rate: float, duration: float) -> None:
        ...

    @abstractmethod
    async def enact_bolus(self, units: float, automatic: bool = False) -> None:
        ...

    @abstractmethod
    async def cancel_bolus(self) -> None:
        ...

    @abstractmethod
    async def suspend(self) -> None:
        ...

    @abstractmethod
    async def resume(self) -> None:
        ...


@dataclass
class PumpCommand:
    kind: str
    rate: Optional[float] = None
    duration: Optional[float] = None
    units: Optional[float] = None
    automatic: bool = False


class SimulatedPump(PumpAdapter):
    """
    In-process pump used for dry runs and tests.

    Supports basal/bolus quantization, a finite reservoir, injected failures
    and an artificial command latency. Every accepted command is appended to
    ``commands`` and to ``history`` as an :class:`InsulinDoseEvent`.
    """

    def __init__(
        self,
        basal_step: float = 0.05,
        bolus_step: float = 0.1,
        reservoir: Optional[float] = 200.0,
        battery_percent: Optional[float] = 100.0,
        suspended: bool = False,
        bolusing: bool = False,
        latency_seconds: float = 0.0,
        clock=None,
    ) -> None:
        self.basal_step = basal_step
        self.bolus_step = bolus_step
        self.reservoir = reservoir
        self.battery_percent = battery_percent
        self.suspended = suspended
        self.bolusing = bolusing
        self.latency_seconds = latency_seconds
        self.fail_next: Optional[Exception] = None
        self.data_refreshes = 0
        self.commands: List[PumpCommand] = []
        self.history: List[InsulinDoseEvent] = []
        self._temp: Optional[TempBasal] = None
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def status(self) -> PumpStatus:
        return PumpStatus(
            suspended=self.suspended,
            bolusing=self.bolusing,
            reservoir=self.reservoir,
            battery_percent=self.battery_percent,
        )

    def current_temp(self, now: datetime) -> Optional[TempBasal]:
        if self._temp is not None and self._temp.is_active(now):
            return self._temp
        return None

    def round_basal(self, rate: float) -> float:
        return floor_to_step(rate, self.basal_step)

    def round_bolus(self, units: float) -> float:
        return floor_to_step(units, self.bolus_step)

    async def _exchange(self) -> None:
        if self.latency_seconds > 0:
            await asyncio.sleep(self.latency_seconds)
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error

    async def ensure_current_data(self) -> None:
        await self._exchange()
        self.data_refreshes += 1

    async def enact_temp_basal(self, rate: float, duration: float) -> None:
        await self._exchange()
        now = self._clock()
        self._temp = TempBasal(rate=rate, duration=duration, timestamp=now) if duration > 0 else None
        self.commands.append(PumpCommand("temp_basal", rate=rate, duration=duration))
        self.history.append(
            InsulinDoseEvent(now, DoseKind.TEMP_BASAL_START, amount=rate, duration_minutes=duration)
        )
        logger.info("Temp basal %.2f U/h for %.0f min", rate, duration)

    async def enact_bolus(self, units: float, automatic: bool = False) -> None:
        await self._exchange()
        if self.reservoir is not None:
            if units > self.reservoir:
                raise RuntimeError(f"Reservoir {self.reservoir:.2f}U cannot cover {units:.2f}U")
            self.reservoir = round(self.reservoir - units, 4)
        self.commands.append(PumpCommand("bolus", units=units, automatic=automatic))
        self.history.append(InsulinDoseEvent(self._clock(), DoseKind.BOLUS, amount=units))
        logger.info("Bolus %.2f U (automatic=%s)", units, automatic)

    async def cancel_bolus(self) -> None:
        await self._exchange()
        self.bolusing = False
        self.commands.append(PumpCommand("cancel_bolus"))

    async def suspend(self) -> None:
        await self._exchange()
        self.suspended = True
        self._temp = None
        self.commands.append(PumpCommand("suspend"))
        self.history.append(InsulinDoseEvent(self._clock(), DoseKind.SUSPEND))

    async def resume(self) -> None:
        await self._exchange()
        self.suspended = False
        self.commands.append(PumpCommand("resume"))
        self.history.append(InsulinDoseEvent(self._clock(), DoseKind.RESUME))
