"""Periodic maintenance: payer health checks and forced refresh of authorized patients."""

import asyncio
import logging
from typing import Dict, Optional

from .broker import PayerDataBroker
from .schemas import Actor, ActorType

logger = logging.getLogger(__name__)

SWEEP_ACTOR = Actor(actor_type=ActorType.SYSTEM, actor_id="maintenance-sweep")


class MaintenanceSweep:
    """Run `run_once` every `interval_seconds` until stopped.

    Overlapping passes are serialized, so calling `run_once` by hand while the
    background task is mid-pass waits for that pass to finish.
    """

    def __init__(self, broker: PayerDataBroker, interval_seconds: float):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.broker = broker
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._pass_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Dict[str, int]:
        """One pass. Returns counts of payers checked and patients refreshed."""
        async with self._pass_lock:
            health = await self.broker.check_all_payer_health()

            patient_ids = await self.broker.store.list_authorized_patient_ids()
            refreshed = 0
            for patient_id in patient_ids:
                try:
                    await self.broker.refresh_stale_data(patient_id, actor=SWEEP_ACTOR)
                    refreshed += 1
                except Exception:
                    logger.exception(f"Sweep refresh failed for patient {patient_id}")

            logger.info(f"Sweep complete: {len(health)} payers checked, {refreshed}/{len(patient_ids)} patients refreshed")
            return {"payers_checked": len(health), "patients_refreshed": refreshed}

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Maintenance sweep pass failed")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._task = asyncio.create_task(self._loop(), name="payer-broker-sweep")
        logger.info(f"Maintenance sweep started (every {self.interval_seconds:g}s)")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Maintenance sweep stopped")
