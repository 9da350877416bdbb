import os

import pytest

# Tests never touch the filesystem store unless they ask for it explicitly.
os.environ.setdefault("PERSISTENCE_BACKEND", "memory")

from habits_api.db import SQLiteStore  # noqa: E402
from habits_api.repositories import InMemoryStore  # noqa: E402


class FailingBatchStore(InMemoryStore):
    """In-memory store whose batch commits fail after ``fail_after`` applied operations."""

    def __init__(self, fail_after: int = 1) -> None:
        super().__init__()
        self.fail_after = fail_after
        self.applied = 0

    def _apply(self, part, op, now):
        if self.applied >= self.fail_after:
            raise RuntimeError("simulated write failure")
        self.applied += 1
        super()._apply(part, op, now)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def sqlite_store(tmp_path):
    return SQLiteStore(str(tmp_path / "habits.db"))


@pytest.fixture
def failing_batch_store():
    def make(fail_after: int = 1) -> FailingBatchStore:
        return FailingBatchStore(fail_after)

    return make
