from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Response, status

from erp_api.api.deps import require_access, require_jwt_identity
from erp_api.domain.identity import Identity
from erp_api.domain.models import ApiKeyCreate, ApiKeyCreated, ApiKeyRead
from erp_api.domain.permissions import PERM_API_KEYS_MANAGE
from erp_api.services.api_key_service import ApiKeyService, get_api_key_service

router = APIRouter()

Service = Annotated[ApiKeyService, Depends(get_api_key_service)]
# Keys are minted and revoked only by a signed-in user, never by another key.
JwtIdentity = Annotated[Identity, Depends(require_jwt_identity)]
ManageKeys = [Depends(require_access(PERM_API_KEYS_MANAGE))]


@router.post(
    "",
    response_model=ApiKeyCreated,
    status_code=status.HTTP_201_CREATED,
    dependencies=ManageKeys,
)
def create_api_key(payload: ApiKeyCreate, identity: JwtIdentity, service: Service) -> ApiKeyCreated:
    return service.create_api_key(
        user_id=identity.id,
        organization_id=identity.organization_id,
        payload=payload,
    )


@router.get("", response_model=list[ApiKeyRead])
def list_api_keys(identity: JwtIdentity, service: Service) -> list[ApiKeyRead]:
    return service.list_keys(identity.organization_id)


@router.delete("/{key_id}", status_code=status.HTTP_204_NO_CONTENT, dependencies=ManageKeys)
def revoke_api_key(key_id: str, identity: JwtIdentity, service: Service) -> Response:
    service.revoke_key(key_id, identity.organization_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
