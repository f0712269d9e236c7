from __future__ import annotations

import logging

from sqlmodel import Session, col, select

from erp_api.domain.errors import AuthenticationFailure, NotFoundError
from erp_api.domain.models import ApiKey, ApiKeyCreate, ApiKeyCreated, ApiKeyRead, Role, User, now_utc
from erp_api.infra.db import get_engine
from erp_api.infra.hashing import API_KEY_LOOKUP_LENGTH, API_KEY_PREFIX, generate_api_key, token_digest, verify_token_digest
from erp_api.infra.tenant import tenant_context

logger = logging.getLogger(__name__)


class ApiKeyService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def create_api_key(self, *, user_id: str, organization_id: str, payload: ApiKeyCreate) -> ApiKeyCreated:
        raw_key, prefix = generate_api_key()
        row = ApiKey(
            organization_id=organization_id,
            user_id=user_id,
            name=payload.name,
            prefix=prefix,
            key_hash=token_digest(raw_key),
            scopes=sorted(set(payload.scopes)),
        )
        with self._session() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
        logger.info("api key created", extra={"api_key_id": row.id, "prefix": prefix})
        # The raw key leaves the service exactly once.
        return ApiKeyCreated(**ApiKeyRead.model_validate(row).model_dump(), key=raw_key)

    def validate_api_key(self, raw_key: str) -> tuple[ApiKey, User, Role]:
        if not raw_key.startswith(API_KEY_PREFIX) or len(raw_key) <= API_KEY_LOOKUP_LENGTH:
            raise AuthenticationFailure("Invalid API Key")
        prefix = raw_key[:API_KEY_LOOKUP_LENGTH]
        with self._session() as session:
            candidates = session.exec(select(ApiKey).where(col(ApiKey.prefix) == prefix)).all()
            match = next((item for item in candidates if verify_token_digest(raw_key, item.key_hash)), None)
            if match is None:
                raise AuthenticationFailure("Invalid API Key")

            with tenant_context(match.organization_id):
                user = session.exec(
                    select(User)
                    .where(col(User.id) == match.user_id)
                    .where(col(User.is_active).is_(True))
                    .where(col(User.deleted_at).is_(None))
                ).first()
                role = (
                    session.exec(select(Role).where(col(Role.id) == user.role_id)).first()
                    if user is not None
                    else None
                )
                if user is None or role is None:
                    raise AuthenticationFailure("Invalid API Key")

                match.last_used_at = now_utc()
                session.add(match)
                session.commit()
        return match, user, role

    def list_keys(self, organization_id: str) -> list[ApiKeyRead]:
        with self._session() as session:
            statement = (
                select(ApiKey)
                .where(col(ApiKey.organization_id) == organization_id)
                .order_by(col(ApiKey.created_at).desc())
            )
            return [ApiKeyRead.model_validate(item) for item in session.exec(statement).all()]

    def revoke_key(self, key_id: str, organization_id: str) -> None:
        with self._session() as session:
            row = session.exec(
                select(ApiKey)
                .where(col(ApiKey.id) == key_id)
                .where(col(ApiKey.organization_id) == organization_id)
            ).first()
            if row is None:
                raise NotFoundError("API key not found")
            session.delete(row)
            session.commit()
        logger.info("api key revoked", extra={"api_key_id": key_id})


api_key_service = ApiKeyService()


def get_api_key_service() -> ApiKeyService:
    return api_key_service
