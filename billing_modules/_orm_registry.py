"""
Module ORM Registry (``billing_modules._orm_registry``).

Responsibility
--------------
Ensure every module-level SQLAlchemy ORM model is imported so that
``Base.metadata`` contains its table definition before tables are created.

Architecture position
---------------------
**Modules layer** -- utility.  Called by ``billing_kernel.db.engine.create_tables``
and by ``tests/conftest.py``.
"""


def import_all_orm_models() -> None:
    """Import every ``billing_modules.*.orm`` module to register ORM models.

    This function is idempotent -- repeated calls are harmless.
    """
    import billing_modules.receivables.orm  # noqa: F401
