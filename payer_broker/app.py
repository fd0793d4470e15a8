"""Flask application factory and command-line entry point.

    python -m payer_broker.app serve          # HTTP API (+ sweep when SWEEP_INTERVAL_MINUTES > 0)
    python -m payer_broker.app init-db        # create tables and audit triggers
    python -m payer_broker.app sweep [--once] # health checks + forced refresh
    python -m payer_broker.app generate-key   # new credential encryption key
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass, field
from typing import Awaitable, Optional, TypeVar

from flask import Flask

from .adapters.registry import AdapterRegistry, build_default_registry
from .admin import PayerAdministration
from .api import EXTENSION_KEY, bp as api_bp
from .audit import AuditTrail
from .authorization import AuthorizationWorkflow
from .broker import PayerDataBroker
from .cache import InsuranceDataCache
from .config import BrokerSettings
from .database import DatabaseManager
from .key_provider import SecretKeyProvider
from .notifications import LoggingNotificationSender, NotificationSender
from .rate_limit import RateLimiter
from .runtime import ServiceLoop
from .storage.base import RecordStore
from .storage.memory import InMemoryRecordStore
from .storage.sql import SqlAlchemyRecordStore
from .sweep import MaintenanceSweep
from .utils import Clock, utcnow
from .vault import CredentialVault, generate_encryption_key

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)

T = TypeVar("T")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


@dataclass
class BrokerServices:
    """Every long-lived component, wired once per process.

    All coroutines of these components run on `loop`; threaded callers such
    as Flask views go through `run`.
    """

    settings: BrokerSettings
    store: RecordStore
    vault: CredentialVault
    registry: AdapterRegistry
    cache: InsuranceDataCache
    audit: AuditTrail
    rate_limiter: RateLimiter
    workflow: AuthorizationWorkflow
    broker: PayerDataBroker
    admin: PayerAdministration
    clock: Clock = utcnow
    loop: ServiceLoop = field(default_factory=ServiceLoop)
    active_sweep: Optional[MaintenanceSweep] = None

    def run(self, coro: Awaitable[T]) -> T:
        return self.loop.run(coro)

    def sweep(self) -> Optional[MaintenanceSweep]:
        """A maintenance sweep when SWEEP_INTERVAL_MINUTES is positive."""
        if self.settings.sweep_interval_minutes <= 0:
            return None
        return MaintenanceSweep(self.broker, self.settings.sweep_interval_minutes * 60)

    def start_sweep(self) -> Optional[MaintenanceSweep]:
        """Start the configured sweep on the service loop, if any."""
        if self.active_sweep is not None:
            return self.active_sweep
        sweep = self.sweep()
        if sweep is None:
            return None

        async def _start():
            sweep.start()

        self.run(_start())
        self.active_sweep = sweep
        return sweep

    def close(self) -> None:
        """Stop the sweep, release the store and stop the service loop."""
        sweep, self.active_sweep = self.active_sweep, None

        async def _close():
            if sweep is not None:
                await sweep.stop()
            await self.store.close()

        if self.loop.running:
            self.run(_close())
        self.loop.stop()


def build_services(
    settings: Optional[BrokerSettings] = None,
    store: Optional[RecordStore] = None,
    registry: Optional[AdapterRegistry] = None,
    email_sender: Optional[NotificationSender] = None,
    sms_sender: Optional[NotificationSender] = None,
    key_provider: Optional[SecretKeyProvider] = None,
    clock: Clock = utcnow,
    loop: Optional[ServiceLoop] = None,
) -> BrokerServices:
    """Wire the broker components together.

    Args:
        settings: Runtime settings (defaults to BrokerSettings.from_env())
        store: Record store (defaults to an in-memory store)
        registry: Adapter registry (defaults to the shipped adapters)
        email_sender: Email channel (defaults to a logging sender)
        sms_sender: SMS channel (defaults to a logging sender)
        key_provider: Secret provider used when the key comes from an ARN
        clock: Source of the current time
        loop: Event loop thread the components run on (defaults to a new one)

    Returns:
        BrokerServices ready to hand to create_app()

    Raises:
        VaultConfigurationError: No usable encryption key for this environment
    """
    settings = settings or BrokerSettings.from_env()
    store = store or InMemoryRecordStore()
    registry = registry or build_default_registry(settings)

    vault = CredentialVault.from_settings(store, settings, key_provider, clock=clock)
    cache = InsuranceDataCache(store, clock=clock, default_ttl_hours=settings.cache_ttl_hours)
    audit = AuditTrail(store, clock=clock)
    rate_limiter = RateLimiter(clock=clock)
    workflow = AuthorizationWorkflow(
        store,
        audit,
        cache,
        email_sender=email_sender or LoggingNotificationSender("email"),
        sms_sender=sms_sender or LoggingNotificationSender("sms"),
        rate_limiter=rate_limiter,
        app_url=settings.app_url,
        clock=clock,
    )
    broker = PayerDataBroker(
        store,
        vault,
        registry,
        cache,
        audit,
        adapter_timeout_seconds=settings.adapter_timeout_seconds,
        health_timeout_seconds=settings.health_timeout_seconds,
        clock=clock,
    )
    return BrokerServices(
        settings=settings,
        store=store,
        vault=vault,
        registry=registry,
        cache=cache,
        audit=audit,
        rate_limiter=rate_limiter,
        workflow=workflow,
        broker=broker,
        admin=PayerAdministration(store, vault, registry, audit, clock=clock),
        clock=clock,
        loop=loop or ServiceLoop(),
    )


async def build_sql_store(settings: BrokerSettings, validate: bool = True) -> SqlAlchemyRecordStore:
    """PostgreSQL store for the given settings.

    The engine's connection pool belongs to the loop this runs on, so the
    store must be built on the loop that will use it.
    """
    db = DatabaseManager(settings.database_url)
    await db.initialize(validate=validate)
    return SqlAlchemyRecordStore(db)


def create_app(
    settings: Optional[BrokerSettings] = None,
    services: Optional[BrokerServices] = None,
) -> Flask:
    """Create and configure the Flask app."""
    services = services or build_services(settings)
    services.loop.start()

    app = Flask(__name__)
    app.extensions[EXTENSION_KEY] = services
    app.register_blueprint(api_bp)

    @app.route("/health")
    def health():
        return {
            "status": "ok",
            "environment": services.settings.environment,
            "payers": services.registry.get_available_payers(),
        }

    return app


async def _init_db(settings: BrokerSettings) -> None:
    db = DatabaseManager(settings.database_url)
    try:
        await db.initialize()
        await db.create_schema()
        logger.info("Database schema created")
    finally:
        await db.close()


async def _run_sweep(settings: BrokerSettings, once: bool) -> None:
    store = await build_sql_store(settings) if settings.database_url else InMemoryRecordStore()
    services = build_services(settings, store=store)
    sweep = MaintenanceSweep(services.broker, max(settings.sweep_interval_minutes, 1) * 60)
    try:
        if once:
            await sweep.run_once()
        else:
            await sweep.start()
    finally:
        await sweep.stop()
        await store.close()


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Payer Data Broker")
    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=5000)

    subparsers.add_parser("init-db", help="Create tables and audit triggers")

    sweep = subparsers.add_parser("sweep", help="Run payer health checks and refresh authorized patients")
    sweep.add_argument("--once", action="store_true", help="Run a single pass and exit")

    subparsers.add_parser("generate-key", help="Print a new credential encryption key")

    args = parser.parse_args(argv)
    settings = BrokerSettings.from_env()
    configure_logging(settings.log_level)

    if args.command == "generate-key":
        print(generate_encryption_key())
        return

    if args.command == "init-db":
        if not settings.database_url:
            logger.error("DATABASE_URL not provided")
            sys.exit(1)
        asyncio.run(_init_db(settings))
        return

    if args.command == "sweep":
        asyncio.run(_run_sweep(settings, args.once))
        return

    loop = ServiceLoop()
    store = loop.run(build_sql_store(settings)) if settings.database_url else None
    services = build_services(settings, store=store, loop=loop)
    app = create_app(services=services)
    if services.start_sweep() is None:
        logger.info("Maintenance sweep disabled (SWEEP_INTERVAL_MINUTES is 0)")

    logger.info(f"Starting Payer Data Broker ({settings.environment})")
    try:
        app.run(host=getattr(args, "host", "127.0.0.1"), port=getattr(args, "port", 5000))
    finally:
        services.close()


if __name__ == "__main__":
    main()
