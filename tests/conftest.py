"""
Pytest fixtures for the approval engine test suite.

Provides:
- Structured logging setup and a ``captured_logs`` reader
- A DeterministicClock
- In-memory store / sinks and services wired to them
- SQLite (or DATABASE_URL) engine and session with the real ORM models
- Template and document factories

Environment Variables:
- DATABASE_URL: database for the SQL-backed fixtures.  Defaults to an
  in-memory SQLite database, recreated per test.
"""

import json
import logging
import os
from collections.abc import Generator
from io import StringIO

import pytest
from sqlalchemy.orm import Session

from approval_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from approval_kernel.domain.approval import QuorumCounting, StepConditionMode
from approval_kernel.domain.clock import DeterministicClock
from approval_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from approval_kernel.services.approval_service import ApprovalService
from approval_kernel.services.locks import ApprovalLockRegistry
from approval_kernel.services.workflow_service import WorkflowService
from approval_kernel.stores.memory import (
    InMemoryApprovalStore,
    InMemoryAuditSink,
    InMemoryNotificationSink,
)
from approval_kernel.stores.sql import (
    SqlApprovalStore,
    SqlAuditSink,
    SqlNotificationSink,
)
from tests.factories import (
    OWNER_ID,
    START_TIME,
    SUBMITTER_ID,
    make_document,
    make_step,
)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture approval_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, approval_service):
            approval_service.submit(...)
            logs = captured_logs()
            assert any(r["message"] == "approval_submitted" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("approval_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "postgres: mark test as requiring PostgreSQL")
    config.addinivalue_line("markers", "slow: mark test as slow (threads, scheduler loop)")


# =============================================================================
# Clock
# =============================================================================


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    """A clock fixed at 2024-01-01T12:00:00Z until advanced."""
    return DeterministicClock(START_TIME)


# =============================================================================
# In-memory wiring
# =============================================================================


@pytest.fixture
def memory_store() -> InMemoryApprovalStore:
    return InMemoryApprovalStore()


@pytest.fixture
def audit_sink(deterministic_clock) -> InMemoryAuditSink:
    return InMemoryAuditSink(deterministic_clock)


@pytest.fixture
def notifier() -> InMemoryNotificationSink:
    return InMemoryNotificationSink()


@pytest.fixture
def lock_registry() -> ApprovalLockRegistry:
    return ApprovalLockRegistry()


@pytest.fixture
def workflow_service(memory_store, deterministic_clock) -> WorkflowService:
    return WorkflowService(memory_store, deterministic_clock)


@pytest.fixture
def service_factory(memory_store, notifier, audit_sink, deterministic_clock, lock_registry):
    """Factory for ApprovalService over the shared in-memory collaborators.

    Keyword arguments override the defaults (counting mode, step
    condition mode, max_attempts, store).
    """

    def _build(
        *,
        quorum_counting=QuorumCounting.DISTINCT_APPROVERS,
        step_condition_mode=StepConditionMode.IGNORE,
        max_attempts=3,
        store=None,
        notification_sink=None,
        audit=None,
    ) -> ApprovalService:
        return ApprovalService(
            store or memory_store,
            notification_sink or notifier,
            audit or audit_sink,
            deterministic_clock,
            locks=lock_registry,
            quorum_counting=quorum_counting,
            step_condition_mode=step_condition_mode,
            max_attempts=max_attempts,
        )

    return _build


@pytest.fixture
def approval_service(service_factory) -> ApprovalService:
    return service_factory()


@pytest.fixture
def create_workflow(workflow_service):
    """Factory fixture creating a template for ``OWNER_ID``.

    Returns a callable; ``steps`` defaults to a single step approved by
    ``manager``.
    """

    def _create(steps=None, *, name="Standard", owner_id=OWNER_ID, **kwargs):
        return workflow_service.create_workflow(
            owner_id,
            name,
            steps if steps is not None else [make_step(1, ["manager"])],
            **kwargs,
        )

    return _create


@pytest.fixture
def submit(approval_service):
    """Factory fixture submitting a document as ``SUBMITTER_ID`` for ``OWNER_ID``."""

    def _submit(document=None, *, service=None, **kwargs):
        kwargs.setdefault("owner_id", OWNER_ID)
        return (service or approval_service).submit(
            document or make_document(), SUBMITTER_ID, **kwargs,
        )

    return _submit


# =============================================================================
# SQL wiring
# =============================================================================


def get_database_url() -> str:
    """Get database URL from environment, or use in-memory SQLite."""
    return os.environ.get("DATABASE_URL", "sqlite://")


@pytest.fixture
def db_engine():
    """Fresh engine and schema per test."""
    engine = init_engine_from_url(get_database_url())
    create_tables(engine)
    yield engine
    drop_tables(engine)
    reset_engine()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory()


@pytest.fixture
def session(session_factory) -> Generator[Session, None, None]:
    """A session on the per-test schema; rolled back at teardown."""
    sess = session_factory()
    yield sess
    sess.rollback()
    sess.close()


@pytest.fixture
def sql_store(session) -> SqlApprovalStore:
    return SqlApprovalStore(session)


@pytest.fixture
def sql_service(session, deterministic_clock, lock_registry) -> ApprovalService:
    """ApprovalService over the SQL store and sinks in ``session``."""
    store = SqlApprovalStore(session)
    return ApprovalService(
        store,
        SqlNotificationSink(session, deterministic_clock),
        SqlAuditSink(session, deterministic_clock),
        deterministic_clock,
        locks=lock_registry,
        workflows=WorkflowService(store, deterministic_clock),
    )


@pytest.fixture
def sql_workflow_service(sql_store, deterministic_clock) -> WorkflowService:
    return WorkflowService(sql_store, deterministic_clock)
