"""PULSE — Service container.

Owns every piece of process-wide state (lock set, progress map, cooldowns,
registry) and wires the services together. Built once by the process entry
point and passed by reference.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine

from pulse.config import Settings
from pulse.connectors.registry import ConnectorRegistry, build_default_registry
from pulse.core.crypto import CredentialVault
from pulse.database import SessionFactory, build_engine, make_session_factory
from pulse.services.account_service import AccountService
from pulse.services.cooldown import SyncCooldown
from pulse.services.metric_store import MetricStore
from pulse.services.progress import ProgressTracker
from pulse.services.sync_engine import SyncEngine


@dataclass
class Services:
    engine: Engine
    session_factory: SessionFactory
    registry: ConnectorRegistry
    vault: CredentialVault
    store: MetricStore
    progress: ProgressTracker
    sync_engine: SyncEngine
    accounts: AccountService
    cooldown: SyncCooldown


def build_services(
    settings: Settings,
    registry: Optional[ConnectorRegistry] = None,
    engine: Optional[Engine] = None,
    vault: Optional[CredentialVault] = None,
) -> Services:
    engine = engine or build_engine(settings.effective_database_url)
    session_factory = make_session_factory(engine)
    registry = registry or build_default_registry(
        timeout=settings.http_timeout_seconds,
        max_retries=settings.http_max_retries,
        lookback_days=settings.default_lookback_days,
    )
    vault = vault or CredentialVault(key_path=settings.effective_key_path)
    store = MetricStore(chunk_size=settings.metric_chunk_size)
    progress = ProgressTracker(idle_seconds=settings.progress_idle_minutes * 60)

    return Services(
        engine=engine,
        session_factory=session_factory,
        registry=registry,
        vault=vault,
        store=store,
        progress=progress,
        sync_engine=SyncEngine(
            registry=registry,
            vault=vault,
            store=store,
            progress=progress,
            session_factory=session_factory,
            stale_ttl_minutes=settings.stale_sync_ttl_minutes,
        ),
        accounts=AccountService(registry=registry, vault=vault, session_factory=session_factory),
        cooldown=SyncCooldown(seconds=settings.sync_cooldown_seconds),
    )
