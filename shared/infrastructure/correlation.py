"""
Operation correlation.

Each core operation (checkout, transition, payment, reconciliation) runs under an
operation id held in a ContextVar, so every log line it produces can be grouped.
asyncio tasks copy the context on creation, so ids follow spawned work.
"""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

# Context variable for the operation id (task-safe)
operation_id_var: ContextVar[str] = ContextVar("operation_id", default="")


def get_operation_id() -> str:
    """Get the current operation id."""
    return operation_id_var.get()


@contextmanager
def operation_scope(operation_id: str | None = None) -> Iterator[str]:
    """
    Run a block under an operation id.

    Reuses the enclosing id when one is already set, so nested service calls
    share their caller's id.

    Usage:
        with operation_scope() as op_id:
            await service.transition(...)
    """
    current = operation_id_var.get()
    if current and operation_id is None:
        yield current
        return

    token = operation_id_var.set(operation_id or str(uuid.uuid4()))
    try:
        yield operation_id_var.get()
    finally:
        operation_id_var.reset(token)


class OperationIdFilter:
    """
    Logging filter that adds operation_id to log records.

    Usage:
        import logging
        handler = logging.StreamHandler()
        handler.addFilter(OperationIdFilter())
    """

    def filter(self, record) -> bool:
        record.operation_id = get_operation_id() or "-"
        return True
