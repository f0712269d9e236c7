from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from erp_api.domain.errors import ConflictError, NotFoundError
from erp_api.domain.models import Account, AccountCreate, AccountRead
from erp_api.infra.db import get_engine


class FinanceService:
    """Chart-of-accounts sample; every read passes the financial query block."""

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def list_accounts(self) -> list[AccountRead]:
        with self._session() as session:
            rows = session.exec(select(Account).order_by(col(Account.code))).all()
            return [AccountRead.model_validate(item) for item in rows]

    def get_account(self, account_id: str) -> AccountRead:
        with self._session() as session:
            row = session.exec(select(Account).where(col(Account.id) == account_id)).first()
            if row is None:
                raise NotFoundError("Account not found")
            return AccountRead.model_validate(row)

    def create_account(self, organization_id: str, payload: AccountCreate) -> AccountRead:
        row = Account(
            organization_id=organization_id,
            code=payload.code.strip(),
            name=payload.name.strip(),
            balance=payload.balance,
        )
        with self._session() as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                raise ConflictError("Account code already exists") from exc
            session.refresh(row)
        return AccountRead.model_validate(row)


finance_service = FinanceService()


def get_finance_service() -> FinanceService:
    return finance_service
