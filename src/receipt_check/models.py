"""
Alembic model import hook.

Importing this module ensures all SQLAlchemy models are registered on Base.metadata.
"""

from __future__ import annotations

from receipt_check.modules.jobs.models import VerificationJob  # noqa: F401
from receipt_check.modules.results.models import VerificationResult  # noqa: F401
