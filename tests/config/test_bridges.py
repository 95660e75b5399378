"""
Tests for the config -> kernel bridges.

Covers:
- build_approval_service honours the configured counting mode
- sql_service_scope commits on success and rolls back on error
- A failing audit or notification insert never loses the decision
- install_templates creates, then updates by deterministic id
- build_timeout_scheduler dispatches in its own transactions
"""

from dataclasses import replace

import pytest
from sqlalchemy import event, func, select

from approval_config.bridges import (
    build_approval_service,
    build_timeout_scheduler,
    build_workflow_service,
    install_templates,
    sql_service_scope,
)
from approval_config.loader import parse_template
from approval_config.settings import EngineSettings
from approval_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url, reset_engine
from approval_kernel.domain.approval import ApprovalAction, ApprovalStatus, AuditAction, QuorumCounting
from approval_kernel.models.approval import ApprovalRequestModel
from approval_kernel.models.audit import AuditLogModel, NotificationModel
from tests.factories import OWNER_ID, SUBMITTER_ID, make_document

TEMPLATE = {
    "owner_id": OWNER_ID,
    "name": "Standard",
    "is_default": True,
    "steps": [
        {
            "order": 1,
            "name": "Managers",
            "approver_ids": ["a", "b"],
            "required_approvals": 2,
            "timeout_hours": 2,
            "escalation_action": "AUTO_APPROVE",
        },
    ],
}


@pytest.fixture
def file_session_factory(tmp_path):
    """Session factory on a file database so scopes see each other's commits."""
    engine = init_engine_from_url(f"sqlite:///{tmp_path / 'bridges.db'}")
    create_tables(engine)
    yield get_session_factory()
    reset_engine()


@pytest.fixture
def installed(file_session_factory, deterministic_clock):
    session = file_session_factory()
    install_templates(session, [parse_template(TEMPLATE)], deterministic_clock)
    session.commit()
    session.close()


def _status_of(session_factory, approval_id):
    session = session_factory()
    try:
        return session.scalars(
            select(ApprovalRequestModel.status).where(ApprovalRequestModel.id == approval_id)
        ).one_or_none()
    finally:
        session.close()


class TestInstallTemplates:

    def test_create_then_update(self, file_session_factory, deterministic_clock, captured_logs):
        template = parse_template(TEMPLATE)
        session = file_session_factory()

        first = install_templates(session, [template], deterministic_clock)
        second = install_templates(session, [replace(template, description="v2")], deterministic_clock)
        session.commit()

        assert (first.created, first.updated) == (1, 0)
        assert (second.created, second.updated) == (0, 1)
        stored = build_workflow_service(session, deterministic_clock).get_workflow(OWNER_ID, template.id)
        assert stored.version == 2
        assert stored.description == "v2"
        installed = [r for r in captured_logs() if r["message"] == "templates_installed"]
        assert installed[-1]["updated_count"] == 1
        session.close()


class TestServiceScope:

    def test_commits_on_success(self, installed, file_session_factory, deterministic_clock):
        settings = EngineSettings()

        with sql_service_scope(file_session_factory, settings, deterministic_clock) as service:
            request = service.submit(make_document(), SUBMITTER_ID, owner_id=OWNER_ID)

        assert _status_of(file_session_factory, request.id) == "PENDING"

    def test_rolls_back_on_error(self, installed, file_session_factory, deterministic_clock):
        settings = EngineSettings()

        with pytest.raises(RuntimeError):
            with sql_service_scope(file_session_factory, settings, deterministic_clock) as service:
                request = service.submit(make_document(), SUBMITTER_ID, owner_id=OWNER_ID)
                raise RuntimeError("caller failed")

        assert _status_of(file_session_factory, request.id) is None

    @pytest.mark.parametrize(
        "model, failure_message",
        [(NotificationModel, "notification_failed"), (AuditLogModel, "audit_write_failed")],
    )
    def test_failing_side_effect_keeps_the_decision(
        self, installed, file_session_factory, deterministic_clock, captured_logs,
        model, failure_message,
    ):
        settings = EngineSettings()
        with sql_service_scope(file_session_factory, settings, deterministic_clock) as service:
            request = service.submit(make_document(), SUBMITTER_ID, owner_id=OWNER_ID)

        def refuse(mapper, connection, target):
            raise RuntimeError("side effect store unavailable")

        event.listen(model, "before_insert", refuse)
        try:
            with sql_service_scope(file_session_factory, settings, deterministic_clock) as service:
                service.act(request.id, "a", ApprovalAction.APPROVE)
                outcome = service.act(request.id, "b", ApprovalAction.APPROVE)
        finally:
            event.remove(model, "before_insert", refuse)

        assert outcome.status == ApprovalStatus.APPROVED
        assert _status_of(file_session_factory, request.id) == "APPROVED"
        assert any(r["message"] == failure_message for r in captured_logs())

        session = file_session_factory()
        try:
            approved_audits = session.scalar(
                select(func.count()).select_from(AuditLogModel).where(
                    AuditLogModel.approval_id == request.id,
                    AuditLogModel.action == AuditAction.APPROVED,
                )
            )
            completions = session.scalar(
                select(func.count()).select_from(NotificationModel).where(
                    NotificationModel.user_id == SUBMITTER_ID,
                )
            )
        finally:
            session.close()
        # The side effect that did not fail is still committed.
        if model is NotificationModel:
            assert (approved_audits, completions) == (1, 0)
        else:
            assert (approved_audits, completions) == (0, 1)

    def test_counting_mode_comes_from_settings(self, installed, file_session_factory, deterministic_clock):
        settings = EngineSettings(quorum_counting=QuorumCounting.RAW_RECORDS)
        session = file_session_factory()
        service = build_approval_service(session, settings, deterministic_clock)

        request = service.submit(make_document(), SUBMITTER_ID, owner_id=OWNER_ID)
        service.act(request.id, "a", ApprovalAction.APPROVE)
        outcome = service.act(request.id, "a", ApprovalAction.APPROVE)

        assert outcome.status == ApprovalStatus.APPROVED
        session.rollback()
        session.close()


class TestScheduler:

    def test_scheduler_commits_each_dispatch(self, installed, file_session_factory, deterministic_clock):
        settings = EngineSettings()
        with sql_service_scope(file_session_factory, settings, deterministic_clock) as service:
            request = service.submit(make_document(), SUBMITTER_ID, owner_id=OWNER_ID)
        deterministic_clock.advance_hours(3)

        scheduler = build_timeout_scheduler(file_session_factory, settings, deterministic_clock)

        assert scheduler.scan_and_dispatch() == 1
        assert _status_of(file_session_factory, request.id) == "APPROVED"
