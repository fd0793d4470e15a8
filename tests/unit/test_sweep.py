"""Unit tests for the periodic maintenance sweep."""
import asyncio

import pytest

from payer_broker.schemas import AuditEventType, AuthorizationStatus, DataType, HealthStatus
from payer_broker.sweep import SWEEP_ACTOR, MaintenanceSweep


class TestMaintenanceSweep:

    def test_interval_must_be_positive(self, broker):
        with pytest.raises(ValueError):
            MaintenanceSweep(broker, 0)

    @pytest.mark.asyncio
    async def test_run_once(self, broker, store, patient, make_authorization, integration, credential, fake_adapter):
        await make_authorization(patient)
        await make_authorization(patient, status=AuthorizationStatus.PENDING)

        summary = await MaintenanceSweep(broker, 60).run_once()

        assert summary == {"payers_checked": 1, "patients_refreshed": 1}
        assert store.payer_integrations["MEDICARE"].health_status == HealthStatus.HEALTHY
        assert fake_adapter.calls_for(DataType.ELIGIBILITY) == 1
        refreshed = [e for e in store.audit_entries if e.event_type == AuditEventType.DATA_REFRESHED]
        assert len(refreshed) == 1
        assert refreshed[0].actor_id == SWEEP_ACTOR.actor_id

    @pytest.mark.asyncio
    async def test_patient_failure_does_not_stop_pass(self, broker, patient, make_authorization, monkeypatch):
        await make_authorization(patient)

        async def explode(patient_id, actor=None):
            raise RuntimeError("boom")

        monkeypatch.setattr(broker, "refresh_stale_data", explode)

        summary = await MaintenanceSweep(broker, 60).run_once()

        assert summary == {"payers_checked": 1, "patients_refreshed": 0}

    @pytest.mark.asyncio
    async def test_start_and_stop(self, broker):
        sweep = MaintenanceSweep(broker, 3600)
        passes = []
        original = sweep.run_once

        async def counting():
            passes.append(1)
            return await original()

        sweep.run_once = counting

        task = sweep.start()
        assert sweep.start() is task
        await asyncio.sleep(0.01)
        assert sweep.running is True

        await sweep.stop()

        assert sweep.running is False
        assert task.cancelled()
        assert passes == [1]

    @pytest.mark.asyncio
    async def test_loop_survives_failed_pass(self, broker):
        sweep = MaintenanceSweep(broker, 0.01)
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("transient")
            return {}

        sweep.run_once = flaky
        sweep.start()
        await asyncio.sleep(0.05)
        await sweep.stop()

        assert len(attempts) >= 2
