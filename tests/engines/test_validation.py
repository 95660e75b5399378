"""Tests for workflow template validation."""

from decimal import Decimal

import pytest

from approval_engines.validation import template_errors, validate_template
from approval_kernel.domain.workflow import Condition, ConditionType, EscalationAction
from approval_kernel.exceptions import InvalidWorkflowDefinitionError
from tests.factories import make_step, make_template


def test_valid_template_passes():
    template = make_template([
        make_step(1, ["a", "b"], required_approvals=2, timeout_hours=24,
                  escalation_action=EscalationAction.NOTIFY),
        make_step(2, ["c"], require_all_approvers=True),
        make_step(3, ["d"], timeout_hours=8, escalation_action=EscalationAction.REASSIGN,
                  escalation_to_user_id="vp"),
    ])

    validate_template(template)
    assert template_errors(template) == []


@pytest.mark.parametrize(
    "steps, fragment",
    [
        ([], "at least one step"),
        ([make_step(1, ["a"]), make_step(3, ["b"])], "without gaps or duplicates"),
        ([make_step(1, ["a"]), make_step(1, ["b"])], "without gaps or duplicates"),
        ([make_step(2, ["a"])], "without gaps or duplicates"),
        ([make_step(1, [])], "approver_ids must not be empty"),
        (
            [make_step(1, ["a"], require_all_approvers=True, required_approvals=1)],
            "mutually exclusive",
        ),
        ([make_step(1, ["a"], required_approvals=0)], "required_approvals must be at least 1"),
        (
            [make_step(1, ["a"], timeout_hours=-1, escalation_action=EscalationAction.NOTIFY)],
            "timeout_hours must not be negative",
        ),
        ([make_step(1, ["a"], timeout_hours=4)], "requires an escalation_action"),
        (
            [make_step(1, ["a"], escalation_action=EscalationAction.REASSIGN)],
            "REASSIGN requires escalation_to_user_id",
        ),
        (
            [make_step(1, ["a"], conditions=(Condition(type=ConditionType.VALUE_ABOVE),))],
            "VALUE_ABOVE requires a value",
        ),
        (
            [make_step(1, ["a"], conditions=(Condition(type=ConditionType.CUSTOM_FIELD, value="x"),))],
            "CUSTOM_FIELD requires a field name",
        ),
    ],
)
def test_step_problems_are_reported(steps, fragment):
    errors = template_errors(make_template(steps))

    assert any(fragment in e for e in errors), errors


class TestUnreachableQuorums:

    def test_quorum_larger_than_the_approver_list(self):
        errors = template_errors(make_template([make_step(1, ["a", "b"], required_approvals=3)]))

        assert errors == [
            "step 1 (Step 1): required_approvals 3 exceeds the 2 distinct approver(s)",
        ]

    def test_duplicates_do_not_count_toward_the_quorum(self):
        errors = template_errors(make_template([make_step(1, ["a", "a"], required_approvals=2)]))

        assert any("must not contain duplicates" in e for e in errors)
        assert any("exceeds the 1 distinct approver(s)" in e for e in errors)

    def test_require_all_with_duplicate_ids(self):
        with pytest.raises(InvalidWorkflowDefinitionError) as exc_info:
            validate_template(
                make_template([make_step(1, ["a", "b", "a"], require_all_approvers=True)]),
            )

        assert exc_info.value.errors == [
            "step 1 (Step 1): approver_ids must not contain duplicates",
        ]

    def test_quorum_equal_to_the_approver_list_is_valid(self):
        assert template_errors(make_template([make_step(1, ["a", "b"], required_approvals=2)])) == []


def test_between_bounds_are_checked():
    missing = Condition(type=ConditionType.VALUE_BETWEEN, min_value=Decimal("1"))
    inverted = Condition(
        type=ConditionType.VALUE_BETWEEN, min_value=Decimal("10"), max_value=Decimal("1"),
    )

    errors = template_errors(make_template(trigger_conditions=(missing, inverted)))

    assert any("requires min_value and max_value" in e for e in errors)
    assert any("exceeds max_value" in e for e in errors)


def test_template_bounds_are_checked():
    errors = template_errors(make_template(min_value=Decimal("10"), max_value=Decimal("5")))

    assert errors == ["min_value 10 exceeds max_value 5"]


def test_every_problem_is_collected(captured_logs):
    template = make_template(
        [make_step(1, []), make_step(3, ["a"], required_approvals=0)],
        name="Broken",
    )

    with pytest.raises(InvalidWorkflowDefinitionError) as exc_info:
        validate_template(template)

    assert exc_info.value.workflow_name == "Broken"
    assert len(exc_info.value.errors) == 3
    assert exc_info.value.code == "INVALID_WORKFLOW_DEFINITION"

    logged = [r for r in captured_logs() if r["message"] == "workflow_definition_invalid"]
    assert logged and logged[0]["level"] == "ERROR"
    assert logged[0]["workflow_name"] == "Broken"
