from __future__ import annotations

import logging

from app.config import Settings


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("forge").setLevel(level)
    # query logs only surface slow queries outside dev
    if not settings.is_dev:
        logging.getLogger("forge.db.query").setLevel(max(level, logging.WARNING))
