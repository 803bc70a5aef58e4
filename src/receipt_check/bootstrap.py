from __future__ import annotations

import receipt_check.models  # noqa: F401
from receipt_check.core.config import settings
from receipt_check.core.db import engine
from receipt_check.core.logging import get_logger, log_event
from receipt_check.core.models import Base

logger = get_logger(__name__)


def bootstrap() -> None:
    if settings.environment in {"dev", "test"} and str(settings.database_url).startswith("sqlite"):
        Base.metadata.create_all(engine)
        log_event(logger, "bootstrap.schema.created", database_url=settings.database_url)
