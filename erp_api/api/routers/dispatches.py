from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, status

from erp_api.api.deps import executive_role, require_access
from erp_api.domain.identity import Identity
from erp_api.domain.models import DispatchCreate, DispatchRead
from erp_api.domain.permissions import (
    PERM_DISPATCHES_CREATE,
    PERM_DISPATCHES_READ,
    PermissionConfig,
    PermissionScope,
)
from erp_api.services.dispatch_service import DispatchService, dispatch_service, get_dispatch_service

router = APIRouter()

Service = Annotated[DispatchService, Depends(get_dispatch_service)]


def _dispatch_participants(request: Request) -> tuple[str, list[str]] | None:
    return dispatch_service.participants(request.path_params["dispatch_id"])


read_own_or_team = require_access(
    scoped=[PermissionConfig("dispatches", "read", PermissionScope.TEAM)],
    owner_resolver=_dispatch_participants,
)


@router.post("", response_model=DispatchRead, status_code=status.HTTP_201_CREATED)
def create_dispatch(
    payload: DispatchCreate,
    identity: Annotated[Identity, Depends(require_access(PERM_DISPATCHES_CREATE))],
    service: Service,
) -> DispatchRead:
    return service.create_dispatch(
        organization_id=identity.organization_id,
        sender_id=identity.id,
        payload=payload,
    )


@router.get("/inbox", response_model=list[DispatchRead])
def executive_inbox(
    _: Annotated[Identity, Depends(executive_role)],
    __: Annotated[Identity, Depends(require_access(PERM_DISPATCHES_READ))],
    service: Service,
) -> list[DispatchRead]:
    return service.inbox()


@router.get("/{dispatch_id}", response_model=DispatchRead)
def get_dispatch(
    dispatch_id: str,
    _: Annotated[Identity, Depends(read_own_or_team)],
    service: Service,
) -> DispatchRead:
    return service.get_dispatch(dispatch_id)
