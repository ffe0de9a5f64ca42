"""Database migration helpers."""

from __future__ import annotations

import logging
import sys

from dotenv import load_dotenv
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from rankwatch.db.session import create_engine_from_env
from rankwatch.db.tables import metadata
from rankwatch.scheduling.settings import SettingsRepository, migrate_settings

logger = logging.getLogger(__name__)


def run_migrations(engine: Engine) -> None:
    """Create missing tables and normalize the stored settings row."""
    metadata.create_all(engine)
    repository = SettingsRepository(engine)
    settings = repository.load()
    if migrate_settings(settings):
        repository.save(settings)
        logger.info("Normalized stored settings (now version %s)", settings.version)


def main() -> None:
    load_dotenv()
    logging.basicConfig(level=logging.INFO)
    engine = create_engine_from_env()
    try:
        run_migrations(engine)
    except SQLAlchemyError as exc:
        print(f"Migration failed: {exc}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
