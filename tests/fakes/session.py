"""In-process stand-ins for the SQLAlchemy async session used by SqlDeploymentStore.

Results are queued up front; the session records every statement, added
object, flush and commit so tests can assert on what the store wrote.
"""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any


class FakeResult:
    """What session.execute() hands back: a single value and a rowcount."""

    def __init__(
        self,
        *,
        scalar_value: Any = None,
        scalar_one_or_none_value: Any = None,
        rowcount: int = 0,
    ) -> None:
        self._one = scalar_value
        self._one_or_none = scalar_one_or_none_value
        self.rowcount = rowcount

    def scalar_one(self) -> Any:
        return self._one

    def scalar_one_or_none(self) -> Any:
        return self._one_or_none


class FakeScalarsResult:
    def __init__(self, rows: list[Any] | None = None) -> None:
        self._rows = list(rows or [])

    def all(self) -> list[Any]:
        return list(self._rows)


class FakeAsyncSession:
    """Session double; pass raise_on_execute to simulate a driver failure."""

    def __init__(self, *, raise_on_execute: Exception | None = None) -> None:
        self.added: list[Any] = []
        self.execute_calls: list[tuple[Any, Any]] = []
        self.scalars_calls: list[Any] = []
        self.flush_count = 0
        self.commit_count = 0
        self._error = raise_on_execute
        self._results: list[FakeResult] = []
        self._rows: list[Any] = []

    @property
    def committed(self) -> bool:
        return self.commit_count > 0

    def set_execute_results(self, results: list[FakeResult]) -> None:
        self._results = list(results)

    def set_scalars_result(self, rows: list[Any]) -> None:
        self._rows = list(rows)

    def add(self, obj: Any) -> None:
        self.added.append(obj)

    async def flush(self) -> None:
        self.flush_count += 1

    async def commit(self) -> None:
        self.commit_count += 1

    async def execute(self, statement: Any, params: Any = None) -> FakeResult:
        self.execute_calls.append((statement, params))
        if self._error is not None:
            raise self._error
        return self._results.pop(0) if self._results else FakeResult()

    async def scalars(self, statement: Any) -> FakeScalarsResult:
        self.scalars_calls.append(statement)
        if self._error is not None:
            raise self._error
        return FakeScalarsResult(self._rows)

    async def __aenter__(self) -> FakeAsyncSession:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None


class FakeSessionFactory:
    """Callable standing in for async_sessionmaker; always yields the same session."""

    def __init__(self, session: FakeAsyncSession) -> None:
        self.session = session

    def __call__(self) -> FakeAsyncSession:
        return self.session


class FakeOrmRow(SimpleNamespace):
    """Attribute bag shaped like an ORM row."""
