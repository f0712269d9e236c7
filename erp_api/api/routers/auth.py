from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, status

from erp_api.api.deps import TenantIdentity, get_request_meta, rate_limited
from erp_api.domain.models import (
    AuthResponse,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    MeResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenPairResponse,
)
from erp_api.services.auth_service import AuthService, RequestMeta, get_auth_service

router = APIRouter()

Service = Annotated[AuthService, Depends(get_auth_service)]
Meta = Annotated[RequestMeta, Depends(get_request_meta)]


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, service: Service, meta: Meta) -> AuthResponse:
    return service.register(payload, meta)


@router.post(
    "/login",
    response_model=AuthResponse,
    dependencies=[Depends(rate_limited("login"))],
)
def login(payload: LoginRequest, service: Service, meta: Meta) -> AuthResponse:
    return service.login(payload, meta)


@router.post(
    "/refresh",
    response_model=TokenPairResponse,
    dependencies=[Depends(rate_limited("refresh"))],
)
def refresh(payload: RefreshRequest, service: Service, meta: Meta) -> TokenPairResponse:
    return service.refresh(payload.refresh_token, meta)


@router.post("/logout")
def logout(payload: LogoutRequest, service: Service) -> bool:
    return service.logout(payload.refresh_token)


@router.post("/forgot-password")
def forgot_password(payload: ForgotPasswordRequest, service: Service, meta: Meta) -> bool:
    return service.forgot_password(payload, meta)


@router.post("/reset-password")
def reset_password(payload: ResetPasswordRequest, service: Service, meta: Meta) -> bool:
    return service.reset_password(payload, meta)


@router.get("/me", response_model=MeResponse)
def me(identity: TenantIdentity, service: Service) -> MeResponse:
    return service.me(identity)
