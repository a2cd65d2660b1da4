"""
Conversion engine bootstrap helpers.

SQLAlchemy only creates tables for models that have been imported (registered) in the
metadata. In dev workflows we use `create_all()`, so we need an explicit import
surface to ensure all models are registered consistently for API + CLI.
"""

from __future__ import annotations


def import_all_models() -> None:
    from fileforge.conversion_engine.models import job as _job  # noqa: F401
    from fileforge.conversion_engine.models import queue_task as _queue_task  # noqa: F401
    from fileforge.conversion_engine.models import task_event as _task_event  # noqa: F401
