"""Shared fixtures: in-memory database, vault, fake provider."""

import asyncio
from typing import Dict, List, Optional, Union

import pytest
from sqlmodel import Session, select

from pulse.connectors.base import (
    AccountConfig,
    CredentialField,
    DataFetcher,
    IntegrationDefinition,
    NormalizedMetric,
    StepReporter,
    SyncResult,
)
from pulse.connectors.registry import ConnectorRegistry
from pulse.connectors.steps import PhaseRunner
from pulse.core.crypto import CredentialVault
from pulse.database import build_engine, init_db, make_session_factory
from pulse.models.account_models import Account
from pulse.models.metric_models import Metric
from pulse.models.sync_models import SyncLog
from pulse.services.metric_store import MetricStore
from pulse.services.progress import ProgressTracker
from pulse.services.sync_engine import SyncEngine

Phase = Union[List[NormalizedMetric], Exception]


class FakeFetcher(DataFetcher):
    """Provider stand-in. Each named phase yields its metrics or raises."""

    def __init__(self, phases: Optional[Dict[str, Phase]] = None, valid: bool = True):
        self.phases: Dict[str, Phase] = phases if phases is not None else {"fetch": []}
        self.valid = valid
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()
        self.raises: Optional[Exception] = None
        self.calls: List[dict] = []

    async def sync(
        self,
        account: AccountConfig,
        since=None,
        report_step: Optional[StepReporter] = None,
    ) -> SyncResult:
        self.calls.append({"account": account, "since": since})
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.raises is not None:
            raise self.raises

        runner = PhaseRunner(report_step)
        for key, outcome in self.phases.items():

            async def phase(outcome=outcome):
                if isinstance(outcome, Exception):
                    raise outcome
                return len(outcome), list(outcome)

            await runner.run(key, key.replace("_", " ").title(), phase)
        return runner.result()

    async def validate_credentials(self, credentials: Dict[str, str]) -> bool:
        return self.valid and bool(credentials.get("api_key"))


def metric(metric_type="revenue", value=10.0, date="2026-02-01", **kwargs) -> NormalizedMetric:
    return NormalizedMetric(metric_type=metric_type, value=value, date=date, **kwargs)


def fake_definition(fetcher: DataFetcher, provider_id: str = "fake") -> IntegrationDefinition:
    return IntegrationDefinition(
        id=provider_id,
        name="Fake",
        credentials=[CredentialField(key="api_key", label="API Key")],
        metric_types=["revenue"],
        fetcher=fetcher,
    )


@pytest.fixture
def engine():
    """Create a temporary in-memory database for testing."""
    engine = build_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db_session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def vault(tmp_path):
    return CredentialVault(key_path=str(tmp_path / ".encryption_key"))


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def registry(fetcher):
    return ConnectorRegistry([fake_definition(fetcher)])


@pytest.fixture
def progress():
    return ProgressTracker()


@pytest.fixture
def sync_engine(registry, vault, progress, session_factory):
    return SyncEngine(
        registry=registry,
        vault=vault,
        store=MetricStore(chunk_size=100),
        progress=progress,
        session_factory=session_factory,
        stale_ttl_minutes=10,
    )


@pytest.fixture
def make_account(session_factory, vault):
    def _make(
        provider_id: str = "fake",
        label: str = "Test Account",
        is_active: bool = True,
        credentials: Optional[Dict[str, str]] = None,
    ) -> Account:
        account = Account(
            provider_id=provider_id,
            label=label,
            is_active=is_active,
            encrypted_credentials=vault.encrypt_credentials(credentials or {"api_key": "key_123"}),
        )
        with session_factory() as session:
            session.add(account)
            session.commit()
            session.refresh(account)
        return account

    return _make


def all_metrics(session: Session, account_id: Optional[str] = None) -> List[Metric]:
    query = select(Metric)
    if account_id:
        query = query.where(Metric.account_id == account_id)
    session.expire_all()
    return list(session.exec(query).all())


def all_logs(session: Session, account_id: str) -> List[SyncLog]:
    session.expire_all()
    return list(session.exec(select(SyncLog).where(SyncLog.account_id == account_id)).all())
