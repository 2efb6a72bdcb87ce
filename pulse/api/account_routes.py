"""PULSE — Account & Integration API Routes."""

from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from pulse.api.dependencies import get_services
from pulse.connectors.registry import UnknownProviderError
from pulse.core.logging import get_logger
from pulse.core.security import sanitize_error_message
from pulse.models.account_models import Account, AccountSummary
from pulse.services.account_service import AccountNotFoundError, InvalidCredentialsError
from pulse.services.container import Services

logger = get_logger("api.accounts")

router = APIRouter(tags=["Accounts"])


# ── Request Models ──


class CreateAccountRequest(BaseModel):
    provider_id: str
    label: str = Field(min_length=1, max_length=200)
    credentials: Dict[str, str]

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "provider_id": "stripe",
                    "label": "My SaaS",
                    "credentials": {"secret_key": "rk_live_..."},
                }
            ]
        }
    }


class UpdateAccountRequest(BaseModel):
    label: Optional[str] = Field(default=None, min_length=1, max_length=200)
    is_active: Optional[bool] = None
    credentials: Optional[Dict[str, str]] = None


def _summary(account: Account) -> dict:
    return AccountSummary(
        id=account.id,
        provider_id=account.provider_id,
        label=account.label,
        is_active=account.is_active,
        created_at=account.created_at,
        updated_at=account.updated_at,
    ).model_dump(mode="json")


# ── Endpoints ──


@router.get("/integrations")
async def list_integrations(services: Services = Depends(get_services)):
    """Every registered provider with its connected accounts."""
    accounts = services.accounts.list_accounts()
    return {
        "status": "success",
        "integrations": [
            {
                **definition.public_dict(),
                "accounts": [_summary(a) for a in accounts if a.provider_id == definition.id],
            }
            for definition in services.registry.all()
        ],
    }


@router.get("/accounts")
async def list_accounts(
    provider_id: Optional[str] = None,
    services: Services = Depends(get_services),
):
    accounts = services.accounts.list_accounts(provider_id)
    return {"status": "success", "count": len(accounts), "accounts": [_summary(a) for a in accounts]}


@router.post("/accounts", status_code=201)
async def create_account(
    request: CreateAccountRequest,
    services: Services = Depends(get_services),
):
    """Connect a provider account. Credentials are verified before they are stored."""
    try:
        account = await services.accounts.create_account(
            request.provider_id, request.label, request.credentials
        )
    except UnknownProviderError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except InvalidCredentialsError as e:
        raise HTTPException(status_code=401, detail=sanitize_error_message(str(e)))
    return {"status": "success", "account": _summary(account)}


@router.patch("/accounts/{account_id}")
async def update_account(
    account_id: str,
    request: UpdateAccountRequest,
    services: Services = Depends(get_services),
):
    try:
        account = await services.accounts.update_account(
            account_id,
            label=request.label,
            is_active=request.is_active,
            credentials=request.credentials,
        )
    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except UnknownProviderError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except InvalidCredentialsError as e:
        raise HTTPException(status_code=401, detail=sanitize_error_message(str(e)))
    return {"status": "success", "account": _summary(account)}


@router.delete("/accounts/{account_id}")
async def delete_account(account_id: str, services: Services = Depends(get_services)):
    """Delete an account together with its projects, metrics and sync history."""
    try:
        services.accounts.delete_account(account_id)
    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "success", "deleted": account_id}


@router.get("/accounts/{account_id}/projects")
async def list_projects(account_id: str, services: Services = Depends(get_services)):
    try:
        services.accounts.get_account(account_id)
    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    projects = services.accounts.list_projects(account_id)
    return {
        "status": "success",
        "count": len(projects),
        "projects": [{"id": p.id, "label": p.label} for p in projects],
    }
