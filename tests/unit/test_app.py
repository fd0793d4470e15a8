"""Tests for settings loading, service wiring and the command line."""
import logging

import pytest
from flask import Flask

from payer_broker.adapters.registry import AdapterRegistry
from payer_broker.app import build_services, main
from payer_broker.config import BrokerSettings
from payer_broker.exceptions import VaultConfigurationError
from payer_broker.sweep import MaintenanceSweep
from payer_broker.validators import validate_encryption_key


class TestBrokerSettings:

    def test_from_env(self, monkeypatch, encryption_key):
        monkeypatch.setenv("ENVIRONMENT", "staging")
        monkeypatch.setenv("APP_URL", "https://portal.example/")
        monkeypatch.setenv("PAYER_CREDENTIAL_ENCRYPTION_KEY", encryption_key)
        monkeypatch.setenv("INSURANCE_CACHE_TTL_HOURS", "6")
        monkeypatch.setenv("MEDICARE_USE_SANDBOX", "false")
        monkeypatch.setenv("SWEEP_INTERVAL_MINUTES", "15")

        settings = BrokerSettings.from_env(dotenv=False)

        assert settings.environment == "staging"
        assert settings.app_url == "https://portal.example"
        assert settings.credential_encryption_key == encryption_key
        assert settings.cache_ttl_hours == 6
        assert settings.medicare_use_sandbox is False
        assert settings.sweep_interval_minutes == 15
        assert settings.is_production is False

    def test_defaults(self, monkeypatch):
        for name in ("ENVIRONMENT", "PAYER_CREDENTIAL_ENCRYPTION_KEY", "INTERNAL_API_TOKEN", "MEDICARE_USE_SANDBOX"):
            monkeypatch.delenv(name, raising=False)

        settings = BrokerSettings.from_env(dotenv=False)

        assert settings.environment == "development"
        assert settings.credential_encryption_key is None
        assert settings.internal_api_token is None
        assert settings.medicare_use_sandbox is True


class TestBuildServices:

    def test_shared_store_and_clock(self, store, clock, encryption_key):
        services = build_services(BrokerSettings(credential_encryption_key=encryption_key), store=store, clock=clock)

        assert services.broker.store is store
        assert services.workflow.store is store
        assert services.vault.store is store
        assert services.workflow.cache is services.cache
        assert services.registry.get_available_payers() == ["MEDICARE"]

    def test_cache_ttl_from_settings(self, encryption_key):
        services = build_services(BrokerSettings(credential_encryption_key=encryption_key, cache_ttl_hours=2))
        assert services.cache.default_ttl_hours == 2

    @pytest.mark.security
    def test_production_requires_key(self):
        with pytest.raises(VaultConfigurationError):
            build_services(BrokerSettings(environment="production"))

    def test_sweep_disabled_by_default(self, encryption_key):
        services = build_services(BrokerSettings(credential_encryption_key=encryption_key))
        assert services.sweep() is None

    def test_sweep_interval(self, encryption_key):
        services = build_services(
            BrokerSettings(credential_encryption_key=encryption_key, sweep_interval_minutes=10)
        )

        sweep = services.sweep()

        assert isinstance(sweep, MaintenanceSweep)
        assert sweep.interval_seconds == 600

    def test_start_sweep_runs_on_service_loop(self, store, registry, clock, encryption_key):
        services = build_services(
            BrokerSettings(credential_encryption_key=encryption_key, sweep_interval_minutes=10),
            store=store, registry=registry, clock=clock,
        )
        try:
            sweep = services.start_sweep()
            assert sweep.running
            assert services.start_sweep() is sweep
        finally:
            services.close()

        assert not sweep.running
        assert services.active_sweep is None
        assert not services.loop.running

    def test_start_sweep_disabled(self, encryption_key):
        services = build_services(BrokerSettings(credential_encryption_key=encryption_key))
        assert services.start_sweep() is None
        services.close()


class TestCommandLine:

    def test_generate_key(self, capsys):
        main(["generate-key"])

        key = capsys.readouterr().out.strip()
        assert validate_encryption_key(key)

    def test_init_db_requires_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setattr("payer_broker.config.load_dotenv", lambda: None)

        with pytest.raises(SystemExit):
            main(["init-db"])

    def test_serve_starts_and_stops_sweep(self, monkeypatch, caplog, encryption_key):
        for name in ("DATABASE_URL", "ENVIRONMENT"):
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setenv("PAYER_CREDENTIAL_ENCRYPTION_KEY", encryption_key)
        monkeypatch.setenv("SWEEP_INTERVAL_MINUTES", "5")
        monkeypatch.setattr("payer_broker.config.load_dotenv", lambda: None)
        monkeypatch.setattr("payer_broker.app.build_default_registry", lambda settings: AdapterRegistry())
        served = []
        monkeypatch.setattr(Flask, "run", lambda self, host, port: served.append((host, port)))
        caplog.set_level(logging.INFO)

        main(["serve", "--port", "5050"])

        assert served == [("127.0.0.1", 5050)]
        messages = [record.getMessage() for record in caplog.records]
        assert "Maintenance sweep started (every 300s)" in messages
        assert "Maintenance sweep stopped" in messages
