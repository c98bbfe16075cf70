"""
All-or-nothing execution of an ordered batch of statements.

A ``DatabaseTransaction`` collects operations, then runs them one after the
other inside a single database transaction. Either every operation succeeds
and the batch is committed, or the batch is rolled back and a single
``TransactionError`` naming the underlying cause is raised. There is no
partial-success return value.

Statements are SQLAlchemy executables. Use Core ``insert(table)`` constructs
when the generated primary key is needed; ``text()`` and other writes report
the number of affected rows.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar, Union

from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.sql.dml import Insert
from sqlalchemy.sql.expression import Executable

logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionFactory = Union[sessionmaker, Callable[[], Session]]

WRITE = "write"
READ = "read"


class TransactionUsageError(RuntimeError):
    pass


class TransactionError(RuntimeError):
    def __init__(self, message: str, failed_index: Optional[int] = None):
        super().__init__(message)
        self.failed_index = failed_index


class CommitError(TransactionError):
    """The commit failed and the rollback that followed succeeded."""


class TransactionStateUnknownError(TransactionError):
    """The commit failed and so did the rollback; manual reconciliation is required."""


@dataclass(frozen=True)
class Inserted:
    id: Any


@dataclass(frozen=True)
class RowsAffected:
    count: int


@dataclass(frozen=True)
class Row:
    data: Optional[Dict[str, Any]]


OperationResult = Union[Inserted, RowsAffected, Row]


def _as_statement(statement: Union[str, Executable]) -> Executable:
    if isinstance(statement, str):
        return text(statement)
    return statement


@dataclass(frozen=True)
class Operation:
    statement: Executable
    params: Optional[Dict[str, Any]] = None
    kind: str = WRITE

    @classmethod
    def write(
        cls, statement: Union[str, Executable], params: Optional[Dict[str, Any]] = None
    ) -> "Operation":
        return cls(_as_statement(statement), params, WRITE)

    @classmethod
    def read(
        cls, statement: Union[str, Executable], params: Optional[Dict[str, Any]] = None
    ) -> "Operation":
        return cls(_as_statement(statement), params, READ)


def _run_operation(session: Session, operation: Operation) -> OperationResult:
    if operation.params:
        result = session.execute(operation.statement, operation.params)
    else:
        result = session.execute(operation.statement)

    if operation.kind == READ:
        row = result.mappings().first()
        return Row(dict(row) if row is not None else None)

    if isinstance(operation.statement, Insert):
        primary_key = tuple(result.inserted_primary_key or ())
        return Inserted(primary_key[0] if len(primary_key) == 1 else primary_key)
    return RowsAffected(result.rowcount)


class DatabaseTransaction:
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory
        self._operations: List[Operation] = []
        self._executed = False

    @property
    def executed(self) -> bool:
        return self._executed

    def __len__(self) -> int:
        return len(self._operations)

    def add(self, operation: Operation) -> "DatabaseTransaction":
        if self._executed:
            raise TransactionUsageError(
                "Cannot add operations to an already executed transaction"
            )
        self._operations.append(operation)
        return self

    def add_write(
        self, statement: Union[str, Executable], params: Optional[Dict[str, Any]] = None
    ) -> "DatabaseTransaction":
        return self.add(Operation.write(statement, params))

    def add_read(
        self, statement: Union[str, Executable], params: Optional[Dict[str, Any]] = None
    ) -> "DatabaseTransaction":
        return self.add(Operation.read(statement, params))

    def execute(self) -> List[OperationResult]:
        if self._executed:
            raise TransactionUsageError("Transaction has already been executed")
        self._executed = True

        session = self._session_factory()
        try:
            results: List[OperationResult] = []
            for index, operation in enumerate(self._operations):
                try:
                    results.append(_run_operation(session, operation))
                except Exception as exc:
                    logger.warning(
                        "TRANSACTION_ROLLBACK failed_index=%s operations=%s error=%s",
                        index,
                        len(self._operations),
                        exc,
                    )
                    try:
                        session.rollback()
                    except Exception:
                        logger.exception("TRANSACTION_ROLLBACK_FAILED failed_index=%s", index)
                    raise TransactionError(
                        f"Transaction failed: {exc}", failed_index=index
                    ) from exc

            try:
                session.commit()
            except Exception as exc:
                try:
                    session.rollback()
                except Exception as rollback_exc:
                    logger.error(
                        "TRANSACTION_STATE_UNKNOWN commit_error=%s rollback_error=%s",
                        exc,
                        rollback_exc,
                    )
                    raise TransactionStateUnknownError(
                        "Transaction commit failed and the rollback also failed; "
                        f"state is unknown: {exc}"
                    ) from exc
                raise CommitError("Transaction commit failed and was rolled back") from exc

            return results
        finally:
            session.close()

    @classmethod
    def run(
        cls,
        session_factory: SessionFactory,
        callback: Callable[["DatabaseTransaction"], T],
    ) -> T:
        transaction = cls(session_factory)
        value = callback(transaction)
        transaction.execute()
        return value


def with_transaction(
    session_factory: SessionFactory, operations: Sequence[Operation]
) -> List[OperationResult]:
    transaction = DatabaseTransaction(session_factory)
    for operation in operations:
        transaction.add(operation)
    return transaction.execute()


def execute_with_transaction(
    session_factory: SessionFactory, operation: Operation
) -> OperationResult:
    return with_transaction(session_factory, [operation])[0]
