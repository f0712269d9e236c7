from __future__ import annotations

import logging

from alembic import command
from alembic.config import Config

from erp_api.infra.logging import configure_logging

logger = logging.getLogger(__name__)


def run_upgrade_head(config_path: str = "alembic.ini") -> None:
    config = Config(config_path)
    logger.info("upgrading schema to head", extra={"config": config_path})
    command.upgrade(config, "head")


if __name__ == "__main__":
    configure_logging()
    run_upgrade_head()
