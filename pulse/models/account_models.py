"""PULSE — Account & Project Models."""

from datetime import datetime
from typing import Optional
from sqlmodel import SQLModel, Field

from pulse.core.clock import utcnow
from pulse.core.security import generate_secure_id


class Account(SQLModel, table=True):
    """One authenticated connection to an external provider.

    Credentials are stored only as a vault record (or legacy plaintext JSON
    awaiting migration). Deleting an account cascades to its projects,
    metrics and sync logs.
    """

    __tablename__ = "accounts"

    id: str = Field(default_factory=generate_secure_id, primary_key=True)
    provider_id: str = Field(index=True, description="Registry id, e.g. stripe | gumroad")
    label: str = Field(description="User-chosen name, e.g. 'My SaaS Stripe'")
    encrypted_credentials: str = Field(description="nonce:tag:ciphertext hex record")
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Project(SQLModel, table=True):
    """A narrower slice of an account, e.g. one product.

    Created by the metric store the first time a metric references an
    unseen project id. The id is the provider's own identifier, so it is
    only unique together with the account.
    """

    __tablename__ = "projects"

    account_id: str = Field(
        foreign_key="accounts.id", primary_key=True, ondelete="CASCADE"
    )
    id: str = Field(primary_key=True, description="Provider project / product id")
    label: str = Field(default="")
    filters_json: str = Field(default="{}", description="Provider-specific filters as JSON")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class AccountSummary(SQLModel):
    """Account as exposed over the API (never carries credentials)."""

    id: str
    provider_id: str
    label: str
    is_active: bool
    created_at: datetime
    updated_at: Optional[datetime] = None
