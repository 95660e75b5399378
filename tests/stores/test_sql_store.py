"""
Tests for the SQLAlchemy store and sinks.

Covers:
- Template DTO round trip (steps, conditions, Decimal bounds)
- Request insert/update with compare-and-swap on version
- Partial unique index: one PENDING request per document
- Append-only records and audit entries (ORM listeners)
- Approver query: direct approvers and effective delegations
- Audit and notification rows share the caller's transaction; a failed
  insert rolls back only its own savepoint
- save() locks the request row (SELECT ... FOR UPDATE)
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import event, select
from sqlalchemy.dialects import postgresql

from approval_engines.state_machine import apply_decision, open_request
from approval_kernel.domain.approval import ApprovalStatus, Delegation, Escalation
from approval_kernel.domain.workflow import EscalationAction
from approval_kernel.exceptions import (
    ApprovalNotFoundError,
    DuplicatePendingApprovalError,
    ImmutabilityViolationError,
    OptimisticLockError,
    WorkflowNotFoundError,
)
from approval_kernel.models.approval import ApprovalRecordModel, ApprovalRequestModel
from approval_kernel.models.audit import AuditLogModel, NotificationModel
from approval_kernel.stores.sql import SqlAuditSink, SqlNotificationSink
from tests.factories import (
    OWNER_ID,
    START_TIME,
    SUBMITTER_ID,
    make_document,
    make_record,
    make_step,
    make_template,
    value_between,
)


@pytest.fixture
def template(sql_store):
    return sql_store.create_template(
        make_template(
            [
                make_step(1, ["a", "b"], required_approvals=2, timeout_hours="1.5",
                          escalation_action=EscalationAction.NOTIFY),
                make_step(2, ["c"], conditions=(value_between(10, 20),)),
            ],
            trigger_conditions=(value_between(100, 5000),),
            min_value=Decimal("100"),
            created_at=START_TIME,
            updated_at=START_TIME,
        )
    )


def _new_request(template, document_id="doc-1"):
    return open_request(
        uuid4(), template, make_document(document_id, value="250", region="EU"),
        SUBMITTER_ID, START_TIME, notes="hello",
    ).request


# =============================================================================
# Templates
# =============================================================================


class TestTemplates:

    def test_round_trip(self, sql_store, template):
        loaded = sql_store.get_template(template.id)

        assert loaded == template
        assert loaded.steps[0].timeout_hours == Decimal("1.5")
        assert loaded.steps[1].conditions[0].max_value == Decimal("20")
        assert loaded.created_at.tzinfo is not None

    def test_owner_listing_filters_inactive(self, sql_store, template):
        inactive = sql_store.create_template(
            make_template(name="Old", is_active=False, created_at=START_TIME + timedelta(hours=1)),
        )

        active = sql_store.get_templates_for_owner(OWNER_ID)
        everything = sql_store.get_templates_for_owner(OWNER_ID, active_only=False)

        assert [t.id for t in active] == [template.id]
        assert [t.id for t in everything] == [template.id, inactive.id]

    def test_update_and_delete(self, sql_store, template):
        from dataclasses import replace

        updated = sql_store.update_template(replace(template, name="Renamed", version=2))
        assert sql_store.get_template(template.id).name == "Renamed"
        assert updated.version == 2

        sql_store.delete_template(template.id)
        assert sql_store.get_template(template.id) is None

    def test_update_missing_template(self, sql_store):
        with pytest.raises(WorkflowNotFoundError):
            sql_store.update_template(make_template())

    def test_count_pending_for_template(self, sql_store, template):
        sql_store.save(_new_request(template, "doc-1"))
        sql_store.save(_new_request(template, "doc-2"))

        assert sql_store.count_pending_for_template(template.id) == 2


# =============================================================================
# Requests
# =============================================================================


class TestRequests:

    def test_insert_round_trip(self, sql_store, template):
        saved = sql_store.save(_new_request(template))

        loaded = sql_store.get_approval(saved.id)
        assert loaded.version == 1
        assert loaded.status == ApprovalStatus.PENDING
        assert loaded.document_value == Decimal("250")
        assert loaded.document_attributes == {"region": "EU"}
        assert loaded.notes == "hello"
        assert loaded.submitted_at == START_TIME
        assert sql_store.find_pending_approval_for_document("doc-1").id == saved.id

    def test_update_appends_records_and_bumps_version(self, sql_store, template):
        saved = sql_store.save(_new_request(template))
        record = make_record(1, "a", comment="fine", conditions=("net 30",))

        updated = sql_store.save(apply_decision(saved, template, record).request)

        assert updated.version == 2
        assert len(updated.records) == 1
        stored = updated.records[0]
        assert stored.record_id == record.record_id
        assert stored.comment == "fine"
        assert stored.conditions == ("net 30",)

    def test_stale_version_is_a_retryable_conflict(self, sql_store, template):
        saved = sql_store.save(_new_request(template))
        sql_store.save(apply_decision(saved, template, make_record(1, "a")).request)

        with pytest.raises(OptimisticLockError) as exc_info:
            sql_store.save(apply_decision(saved, template, make_record(1, "b")).request)

        assert exc_info.value.retryable
        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2

    def test_save_locks_the_row_and_reads_do_not(self, session, sql_store, template):
        saved = sql_store.save(_new_request(template))
        selects = []

        def collect(state):
            if state.is_select:
                selects.append(str(state.statement.compile(dialect=postgresql.dialect())))

        event.listen(session, "do_orm_execute", collect)
        try:
            sql_store.get_approval(saved.id)
            reads = list(selects)
            selects.clear()
            sql_store.save(apply_decision(saved, template, make_record(1, "a")).request)
        finally:
            event.remove(session, "do_orm_execute", collect)

        assert not any("FOR UPDATE" in sql for sql in reads)
        locking = [sql for sql in selects if "approval_requests" in sql and "FOR UPDATE" in sql]
        assert len(locking) == 1

    def test_update_of_unknown_request(self, sql_store, template):
        from dataclasses import replace

        with pytest.raises(ApprovalNotFoundError):
            sql_store.save(replace(_new_request(template), version=3))

    def test_second_pending_request_for_document_is_rejected(self, sql_store, template):
        sql_store.save(_new_request(template))

        with pytest.raises(DuplicatePendingApprovalError):
            sql_store.save(_new_request(template))

    def test_decided_requests_do_not_block_a_new_one(self, sql_store, template):
        single = sql_store.create_template(make_template([make_step(1, ["a"])], name="One"))
        first = sql_store.save(_new_request(single))
        sql_store.save(apply_decision(first, single, make_record(1, "a")).request)

        second = sql_store.save(_new_request(single))

        history = sql_store.list_approvals_for_document("doc-1")
        assert {r.id for r in history} == {first.id, second.id}
        assert [r.id for r in sql_store.list_pending_approvals()] == [second.id]


# =============================================================================
# Append-only rows
# =============================================================================


class TestImmutability:

    def test_records_cannot_be_modified(self, session, sql_store, template):
        saved = sql_store.save(_new_request(template))
        sql_store.save(apply_decision(saved, template, make_record(1, "a")).request)

        record = session.scalars(select(ApprovalRecordModel)).one()
        record.comment = "rewritten"

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_requests_cannot_be_deleted(self, session, sql_store, template):
        saved = sql_store.save(_new_request(template))

        session.delete(session.get(ApprovalRequestModel, saved.id))

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_audit_entries_cannot_be_modified(self, session, deterministic_clock):
        sink = SqlAuditSink(session, deterministic_clock)
        sink.record(uuid4(), "a", "SUBMITTED")
        session.flush()

        entry = session.scalars(select(AuditLogModel)).one()
        entry.details = "tampered"

        with pytest.raises(ImmutabilityViolationError):
            session.flush()


# =============================================================================
# Side relations and approver query
# =============================================================================


class TestSideRelations:

    def _delegation(self, approval_id, **kwargs):
        kwargs.setdefault("step_order", 1)
        kwargs.setdefault("delegated_by", "a")
        kwargs.setdefault("delegated_to", "x")
        return Delegation(id=uuid4(), approval_id=approval_id, created_at=START_TIME, **kwargs)

    def test_delegations_and_escalations_round_trip(self, sql_store, template):
        saved = sql_store.save(_new_request(template))
        delegation = sql_store.create_delegation(
            self._delegation(saved.id, reason="vacation",
                             expires_at=START_TIME + timedelta(hours=2)),
        )
        escalation = sql_store.create_escalation(
            Escalation(id=uuid4(), approval_id=saved.id, escalated_by="a",
                       escalated_to="vp", reason="stuck", created_at=START_TIME),
        )

        assert sql_store.list_delegations(saved.id) == [delegation]
        assert sql_store.list_escalations(saved.id) == [escalation]

    def test_pending_for_approver(self, sql_store, template):
        direct = sql_store.save(_new_request(template, "doc-1"))
        delegated = sql_store.save(_new_request(template, "doc-2"))
        sql_store.create_delegation(self._delegation(delegated.id, delegated_to="x"))

        assert {r.id for r in sql_store.list_pending_approvals_for_approver("a", START_TIME)} == {
            direct.id, delegated.id,
        }
        assert [r.id for r in sql_store.list_pending_approvals_for_approver("x", START_TIME)] == [
            delegated.id,
        ]
        assert sql_store.list_pending_approvals_for_approver("c", START_TIME) == []

    def test_expired_or_other_step_delegations_are_ignored(self, sql_store, template):
        saved = sql_store.save(_new_request(template))
        sql_store.create_delegation(
            self._delegation(saved.id, delegated_to="x", expires_at=START_TIME + timedelta(hours=1)),
        )
        sql_store.create_delegation(self._delegation(saved.id, delegated_to="y", step_order=2))

        later = START_TIME + timedelta(hours=2)
        assert sql_store.list_pending_approvals_for_approver("x", later) == []
        assert sql_store.list_pending_approvals_for_approver("y", START_TIME) == []


class TestSinks:

    def test_rows_are_part_of_the_callers_transaction(self, session, sql_store, template, deterministic_clock):
        audit = SqlAuditSink(session, deterministic_clock)
        notifications = SqlNotificationSink(session, deterministic_clock)
        saved = sql_store.save(_new_request(template))

        audit.record(saved.id, "a", "SUBMITTED", "first")
        notifications.notify("a", "approval_request", "Approval Required", "msg",
                             {"approval_id": saved.id, "step_order": 1})

        assert [e.details for e in audit.entries_for(saved.id)] == ["first"]
        row = session.scalars(select(NotificationModel)).one()
        assert row.context == {"approval_id": str(saved.id), "step_order": "1"}
        assert row.is_read is False

        session.rollback()

        assert audit.entries_for(saved.id) == []
        assert sql_store.get_approval(saved.id) is None

    @pytest.mark.parametrize("model", [AuditLogModel, NotificationModel])
    def test_failed_insert_only_rolls_back_its_savepoint(
        self, session, sql_store, template, deterministic_clock, model,
    ):
        audit = SqlAuditSink(session, deterministic_clock)
        notifications = SqlNotificationSink(session, deterministic_clock)
        saved = sql_store.save(_new_request(template))

        def refuse(mapper, connection, target):
            raise RuntimeError("outbox unavailable")

        event.listen(model, "before_insert", refuse)
        try:
            with pytest.raises(RuntimeError):
                if model is AuditLogModel:
                    audit.record(saved.id, "a", "SUBMITTED")
                else:
                    notifications.notify("a", "approval_request", "Approval Required", "msg")
        finally:
            event.remove(model, "before_insert", refuse)

        audit.record(saved.id, "a", "PARTIAL_APPROVAL")
        session.flush()

        assert sql_store.get_approval(saved.id).version == 1
        assert [e.action for e in audit.entries_for(saved.id)] == ["PARTIAL_APPROVAL"]
        assert session.scalars(select(NotificationModel)).all() == []
