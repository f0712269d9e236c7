from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import update
from sqlmodel import Session, col, select

from erp_api.domain.errors import AuthenticationFailure
from erp_api.domain.models import AuthSession, now_utc
from erp_api.domain.state_machine import SessionState, can_transition
from erp_api.infra.db import get_engine

logger = logging.getLogger(__name__)


class SessionService:
    """Refresh-token sessions. Rows are revoked, never deleted."""

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def create_session(
        self,
        *,
        user_id: str,
        placeholder_hash: str,
        expires_at: datetime,
        user_agent: str | None = None,
        ip_address: str | None = None,
        rotated_from_id: str | None = None,
    ) -> AuthSession:
        row = AuthSession(
            user_id=user_id,
            refresh_token_hash=placeholder_hash,
            state=SessionState.PENDING,
            user_agent=user_agent,
            ip_address=ip_address,
            rotated_from_id=rotated_from_id,
            expires_at=expires_at,
        )
        with self._session() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
        return row

    def update_session_token(self, session_id: str, refresh_token_hash: str) -> None:
        with self._session() as session:
            row = session.get(AuthSession, session_id)
            if row is None:
                raise AuthenticationFailure("Session invalid or expired")
            if row.state != SessionState.ACTIVE and not can_transition(row.state, SessionState.ACTIVE):
                logger.warning("refusing to activate session", extra={"session_id": session_id, "state": row.state})
                raise AuthenticationFailure("Session invalid or expired")
            row.refresh_token_hash = refresh_token_hash
            row.state = SessionState.ACTIVE
            session.add(row)
            session.commit()

    def find_session_by_id(self, session_id: str) -> AuthSession | None:
        with self._session() as session:
            return session.get(AuthSession, session_id)

    def revoke_session(self, session_id: str) -> bool:
        with self._session() as session:
            result = session.execute(
                update(AuthSession)
                .where(col(AuthSession.id) == session_id)
                .where(col(AuthSession.state) != SessionState.REVOKED)
                .values(state=SessionState.REVOKED, revoked_at=now_utc())
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return bool(result.rowcount)

    def revoke_all_user_sessions(self, user_id: str) -> int:
        with self._session() as session:
            result = session.execute(
                update(AuthSession)
                .where(col(AuthSession.user_id) == user_id)
                .where(col(AuthSession.state) != SessionState.REVOKED)
                .values(state=SessionState.REVOKED, revoked_at=now_utc())
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return int(result.rowcount or 0)

    def consume_session(self, session_id: str, refresh_token_hash: str) -> bool:
        """Atomically revoke an ACTIVE session whose digest still matches.

        Exactly one of several concurrent callers presenting the same refresh
        token sees ``True``.
        """
        with self._session() as session:
            result = session.execute(
                update(AuthSession)
                .where(col(AuthSession.id) == session_id)
                .where(col(AuthSession.state) == SessionState.ACTIVE)
                .where(col(AuthSession.refresh_token_hash) == refresh_token_hash)
                .values(state=SessionState.REVOKED, revoked_at=now_utc())
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    def list_user_sessions(self, user_id: str) -> list[AuthSession]:
        with self._session() as session:
            statement = (
                select(AuthSession)
                .where(col(AuthSession.user_id) == user_id)
                .order_by(col(AuthSession.created_at))
            )
            return list(session.exec(statement).all())
