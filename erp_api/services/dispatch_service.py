from __future__ import annotations

import logging

from sqlmodel import Session, col, select

from erp_api.domain.errors import NotFoundError
from erp_api.domain.models import Dispatch, DispatchCreate, DispatchRead, User
from erp_api.infra.db import get_engine

logger = logging.getLogger(__name__)


class DispatchService:
    """Internal messages between users of one organization."""

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def create_dispatch(self, *, organization_id: str, sender_id: str, payload: DispatchCreate) -> DispatchRead:
        with self._session() as session:
            recipient = session.exec(
                select(User)
                .where(col(User.id) == payload.recipient_id)
                .where(col(User.deleted_at).is_(None))
            ).first()
            if recipient is None:
                raise NotFoundError("Recipient not found")
            row = Dispatch(
                organization_id=organization_id,
                sender_id=sender_id,
                recipient_id=recipient.id,
                subject=payload.subject,
                body=payload.body,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
        logger.info("dispatch sent", extra={"dispatch_id": row.id})
        return DispatchRead.model_validate(row)

    def get_dispatch(self, dispatch_id: str) -> DispatchRead:
        with self._session() as session:
            row = session.exec(select(Dispatch).where(col(Dispatch.id) == dispatch_id)).first()
            if row is None:
                raise NotFoundError("Dispatch not found")
            return DispatchRead.model_validate(row)

    def participants(self, dispatch_id: str) -> tuple[str, list[str]] | None:
        """Owner (sender) and team (recipient) used by scope checks."""
        with self._session() as session:
            row = session.exec(select(Dispatch).where(col(Dispatch.id) == dispatch_id)).first()
            if row is None:
                return None
            return row.sender_id, [row.recipient_id]

    def inbox(self) -> list[DispatchRead]:
        with self._session() as session:
            rows = session.exec(select(Dispatch).order_by(col(Dispatch.created_at).desc())).all()
            return [DispatchRead.model_validate(item) for item in rows]


dispatch_service = DispatchService()


def get_dispatch_service() -> DispatchService:
    return dispatch_service
