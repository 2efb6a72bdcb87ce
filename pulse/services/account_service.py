"""PULSE — Account Service.

Creates, updates and removes provider accounts. Credentials are checked
against the provider before anything is stored, and only ever stored as a
vault record.
"""

from typing import Dict, List, Optional

from sqlalchemy import delete
from sqlmodel import col, select

from pulse.connectors.registry import ConnectorRegistry
from pulse.core.clock import utcnow
from pulse.core.crypto import CredentialVault
from pulse.core.logging import get_logger
from pulse.database import SessionFactory
from pulse.models.account_models import Account, Project
from pulse.models.metric_models import Metric
from pulse.models.sync_models import SyncLog

logger = get_logger("services.accounts")


class AccountNotFoundError(LookupError):
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class InvalidCredentialsError(ValueError):
    """The provider rejected the credentials, or required fields are missing."""


class AccountService:
    def __init__(
        self,
        registry: ConnectorRegistry,
        vault: CredentialVault,
        session_factory: SessionFactory,
    ):
        self.registry = registry
        self.vault = vault
        self.session_factory = session_factory

    async def _check_credentials(self, provider_id: str, credentials: Dict[str, str]) -> None:
        definition = self.registry.get(provider_id)
        missing = [
            f.label for f in definition.credentials if f.required and not credentials.get(f.key)
        ]
        if missing:
            raise InvalidCredentialsError(f"Missing credentials: {', '.join(missing)}")
        if not await definition.fetcher.validate_credentials(credentials):
            raise InvalidCredentialsError(
                f"{definition.name} rejected the credentials. Check the key and its permissions."
            )

    async def create_account(
        self, provider_id: str, label: str, credentials: Dict[str, str]
    ) -> Account:
        """Validate with the provider, encrypt, insert."""
        await self._check_credentials(provider_id, credentials)

        account = Account(
            provider_id=provider_id,
            label=label,
            encrypted_credentials=self.vault.encrypt_credentials(credentials),
        )
        with self.session_factory() as session:
            session.add(account)
            session.commit()
            session.refresh(account)

        logger.info(
            f"Account created: {label}",
            extra={"account_id": account.id, "provider_id": provider_id},
        )
        return account

    async def update_account(
        self,
        account_id: str,
        label: Optional[str] = None,
        is_active: Optional[bool] = None,
        credentials: Optional[Dict[str, str]] = None,
    ) -> Account:
        with self.session_factory() as session:
            account = session.get(Account, account_id)
            if account is None:
                raise AccountNotFoundError(account_id)

            if credentials is not None:
                await self._check_credentials(account.provider_id, credentials)
                account.encrypted_credentials = self.vault.encrypt_credentials(credentials)
            if label is not None:
                account.label = label
            if is_active is not None:
                account.is_active = is_active
            account.updated_at = utcnow()

            session.add(account)
            session.commit()
            session.refresh(account)

        logger.info(f"Account updated: {account.label}", extra={"account_id": account_id})
        return account

    async def deactivate_account(self, account_id: str) -> Account:
        return await self.update_account(account_id, is_active=False)

    def delete_account(self, account_id: str) -> None:
        """Delete an account with its projects, metrics and sync logs."""
        with self.session_factory() as session:
            account = session.get(Account, account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            # Explicit child deletes so backends without FK enforcement cascade too.
            for model in (Metric, Project, SyncLog):
                session.exec(delete(model).where(model.account_id == account_id))
            session.delete(account)
            session.commit()
        logger.info("Account deleted", extra={"account_id": account_id})

    def get_account(self, account_id: str) -> Account:
        with self.session_factory() as session:
            account = session.get(Account, account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    def list_accounts(self, provider_id: Optional[str] = None) -> List[Account]:
        with self.session_factory() as session:
            query = select(Account).order_by(col(Account.created_at))
            if provider_id:
                query = query.where(Account.provider_id == provider_id)
            return list(session.exec(query).all())

    def list_projects(self, account_id: str) -> List[Project]:
        with self.session_factory() as session:
            return list(
                session.exec(
                    select(Project).where(Project.account_id == account_id).order_by(col(Project.label))
                ).all()
            )

    def migrate_legacy_credentials(self) -> int:
        """Re-encrypt plaintext JSON credential blobs in place."""
        migrated = 0
        with self.session_factory() as session:
            for account in session.exec(select(Account)).all():
                if self.vault.is_encrypted(account.encrypted_credentials):
                    continue
                credentials = self.vault.decrypt_credentials(account.encrypted_credentials)
                account.encrypted_credentials = self.vault.encrypt_credentials(credentials)
                account.updated_at = utcnow()
                session.add(account)
                migrated += 1
            session.commit()

        if migrated:
            logger.info(f"Migrated {migrated} accounts to encrypted credentials")
        return migrated
