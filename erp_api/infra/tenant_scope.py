from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import event
from sqlalchemy.orm import ORMExecuteState, with_loader_criteria
from sqlmodel import Session

from erp_api.domain.errors import AuthorizationFailure
from erp_api.domain.models import Account, ApiKey, Dispatch, Role, User
from erp_api.infra.tenant import get_financial_access, get_tenant_id

logger = logging.getLogger(__name__)

# Organization, Permission, RolePermission, AuditLog, AuthSession and
# PasswordResetToken are global and never filtered.
TENANT_SCOPED_MODELS: tuple[type[Any], ...] = (User, Role, ApiKey, Account, Dispatch)
FINANCIAL_MODELS: tuple[type[Any], ...] = (Account,)

SKIP_TENANT_SCOPE = "skip_tenant_scope"


def _statement_models(state: ORMExecuteState) -> set[type[Any]]:
    models: set[type[Any]] = set()
    for mapper in state.all_mappers:
        models.add(mapper.class_)
    if state.bind_mapper is not None:
        models.add(state.bind_mapper.class_)
    return models


def _block_financial_models(state: ORMExecuteState) -> None:
    # Only an explicit False blocks; None is system work with no caller bound.
    if get_financial_access() is not False:
        return
    touched = _statement_models(state)
    blocked = [model.__name__ for model in FINANCIAL_MODELS if model in touched]
    if blocked:
        logger.warning("financial query blocked", extra={"models": blocked})
        raise AuthorizationFailure("Financial access required")


def _scope_to_tenant(state: ORMExecuteState) -> None:
    if not (state.is_select or state.is_update or state.is_delete):
        return
    if state.is_column_load or state.execution_options.get(SKIP_TENANT_SCOPE, False):
        return
    _block_financial_models(state)

    tenant_id = get_tenant_id()
    if tenant_id is None:
        return
    state.statement = state.statement.options(
        *[
            with_loader_criteria(
                model,
                lambda cls: cls.organization_id == tenant_id,
                include_aliases=True,
            )
            for model in TENANT_SCOPED_MODELS
        ]
    )


def _stamp_new_rows(session: Session, flush_context: Any, instances: Any) -> None:
    tenant_id = get_tenant_id()
    for instance in session.new:
        if isinstance(instance, FINANCIAL_MODELS) and get_financial_access() is False:
            raise AuthorizationFailure("Financial access required")
        if tenant_id is not None and isinstance(instance, TENANT_SCOPED_MODELS):
            instance.organization_id = tenant_id


def install_tenant_scope(session_class: type[Session] = Session) -> None:
    if event.contains(session_class, "do_orm_execute", _scope_to_tenant):
        return
    event.listen(session_class, "do_orm_execute", _scope_to_tenant)
    event.listen(session_class, "before_flush", _stamp_new_rows)
