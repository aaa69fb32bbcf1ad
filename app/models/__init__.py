"""
Model package initializer.

This module exists to make sure SQLAlchemy's registry is populated in any runtime
that uses the ORM outside of `app/main.py` (sweeps, one-off jobs, tests).
"""

# Import side-effects: register ORM mappings.
from app.models import (  # noqa: F401
    billing,
    credit,
    entity,
    seasonal,
    tenant,
    webhook_event,
)
