from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, status

from erp_api.api.deps import financial_guard, require_access
from erp_api.domain.identity import Identity
from erp_api.domain.models import AccountCreate, AccountRead
from erp_api.domain.permissions import PERM_ACCOUNTS_CREATE, PERM_ACCOUNTS_READ
from erp_api.services.finance_service import FinanceService, get_finance_service

router = APIRouter(dependencies=[Depends(financial_guard)])

Service = Annotated[FinanceService, Depends(get_finance_service)]


@router.get("/accounts", response_model=list[AccountRead])
def list_accounts(
    _: Annotated[Identity, Depends(require_access(PERM_ACCOUNTS_READ, financial=True))],
    service: Service,
) -> list[AccountRead]:
    return service.list_accounts()


@router.post("/accounts", response_model=AccountRead, status_code=status.HTTP_201_CREATED)
def create_account(
    payload: AccountCreate,
    identity: Annotated[Identity, Depends(require_access(PERM_ACCOUNTS_CREATE, financial=True))],
    service: Service,
) -> AccountRead:
    return service.create_account(identity.organization_id, payload)


@router.get("/accounts/{account_id}", response_model=AccountRead)
def get_account(
    account_id: str,
    _: Annotated[Identity, Depends(require_access(PERM_ACCOUNTS_READ, financial=True))],
    service: Service,
) -> AccountRead:
    return service.get_account(account_id)
