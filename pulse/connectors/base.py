"""PULSE — Data Fetcher Contract.

Every provider adapter implements :class:`DataFetcher`. The sync engine only
depends on this abstraction and on the shapes defined here; how an adapter
paginates, rate-limits or classifies its data is its own business.
"""

import re
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

PENDING_FLAG = "pending"

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class SyncStepStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class SyncStep(BaseModel):
    """One discrete phase of a sync, e.g. "fetch charges"."""

    key: str
    label: str
    status: SyncStepStatus
    record_count: Optional[int] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None


StepReporter = Callable[[SyncStep], None]


class NormalizedMetric(BaseModel):
    """A single observation in the common cross-provider shape."""

    metric_type: str
    value: float = Field(allow_inf_nan=False)
    date: str
    currency: Optional[str] = None
    project_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator("date")
    @classmethod
    def _iso_date(cls, v: str) -> str:
        if not _ISO_DATE_RE.match(v):
            raise ValueError(f"date must be YYYY-MM-DD, got {v!r}")
        datetime.strptime(v, "%Y-%m-%d")
        return v

    @property
    def is_pending(self) -> bool:
        """Provisional value from an upstream window that has not closed yet."""
        return self.metadata.get(PENDING_FLAG) == "true"


class AccountConfig(BaseModel):
    """What a fetcher gets to see of an account: decrypted, in memory only."""

    id: str
    provider_id: str
    label: str
    credentials: Dict[str, str]


class SyncResult(BaseModel):
    """Outcome of one fetcher run.

    A partial failure still reports ``success=True`` with ``error`` set and
    the failed phase visible in ``steps``. ``success=False`` means every
    phase failed and ``metrics`` is empty.
    """

    success: bool
    records_processed: int = 0
    metrics: List[NormalizedMetric] = Field(default_factory=list)
    steps: List[SyncStep] = Field(default_factory=list)
    error: Optional[str] = None


class DataFetcher(ABC):
    """Abstract base for provider adapters."""

    @abstractmethod
    async def sync(
        self,
        account: AccountConfig,
        since: Optional[datetime] = None,
        report_step: Optional[StepReporter] = None,
    ) -> SyncResult:
        """Fetch data for one account.

        Args:
            account: Account config with decrypted credentials.
            since: Incremental cursor. ``None`` means use the adapter's own
                default lookback window.
            report_step: Called as each phase starts and finishes.
        """
        ...

    @abstractmethod
    async def validate_credentials(self, credentials: Dict[str, str]) -> bool:
        """Read-only check that the provider accepts these credentials."""
        ...


# ─────────────────────────────────────────────
# INTEGRATION DEFINITIONS
# ─────────────────────────────────────────────


class CredentialField(BaseModel):
    key: str
    label: str
    secret: bool = True
    required: bool = True
    placeholder: str = ""
    help_text: str = ""
    help_url: str = ""


class RequiredPermission(BaseModel):
    resource: str
    label: str
    access: str = "read"  # read | write | none
    reason: str = ""


class IntegrationDefinition(BaseModel):
    """Static description of a provider plus its fetcher."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    name: str
    description: str = ""
    credentials: List[CredentialField] = Field(default_factory=list)
    metric_types: List[str] = Field(default_factory=list)
    required_permissions: List[RequiredPermission] = Field(default_factory=list)
    fetcher: DataFetcher

    def public_dict(self) -> dict:
        """JSON-safe description without the fetcher."""
        return self.model_dump(exclude={"fetcher"})
