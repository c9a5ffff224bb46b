"""
Append-only enforcement for ledger tables.

Rows of a registered model may be inserted but never updated or deleted
through the ORM. The error surfaces at flush time, which rolls back the
whole unit of work together with the mutation that tried it.
"""

from sqlalchemy import event


class AppendOnlyViolation(RuntimeError):
    """Raised when an append-only ledger row is updated or deleted."""


def register_append_only(model_cls):
    @event.listens_for(model_cls, "before_update")
    def _no_update(mapper, connection, target):
        raise AppendOnlyViolation(f"{model_cls.__tablename__} rows are immutable (id={target.id})")

    @event.listens_for(model_cls, "before_delete")
    def _no_delete(mapper, connection, target):
        raise AppendOnlyViolation(f"{model_cls.__tablename__} rows cannot be deleted (id={target.id})")

    return model_cls
