"""
Tests for engine settings resolution.

Covers:
- Defaults
- YAML file (with and without the ``approval:`` wrapper)
- Environment overrides on top of the file
- Validation errors for unknown keys and bad values
"""

import logging
from decimal import Decimal
from pathlib import Path

import pytest

from approval_config.settings import CONFIG_FILE_ENV, EngineSettings, get_settings
from approval_kernel.domain.approval import QuorumCounting, StepConditionMode


def _write(tmp_path, text, name="approval.yaml"):
    path = tmp_path / name
    path.write_text(text)
    return path


class TestDefaults:

    def test_defaults(self):
        settings = get_settings(environ={})

        assert settings == EngineSettings()
        assert settings.quorum_counting == QuorumCounting.DISTINCT_APPROVERS
        assert settings.step_condition_mode == StepConditionMode.IGNORE
        assert settings.max_pending_hours is None
        assert settings.max_attempts == 3
        assert settings.log_level_number == logging.INFO


class TestFile:

    def test_plain_mapping(self, tmp_path):
        path = _write(tmp_path, "quorum_counting: raw_records\nmax_pending_hours: 72\n")

        settings = get_settings(path, environ={})

        assert settings.quorum_counting == QuorumCounting.RAW_RECORDS
        assert settings.max_pending_hours == Decimal("72")

    def test_wrapped_mapping(self, tmp_path):
        path = _write(
            tmp_path,
            "approval:\n"
            "  step_condition_mode: SKIP\n"
            "  scan_interval_seconds: 30\n"
            "  templates_dir: /etc/approvals\n",
        )

        settings = get_settings(path, environ={})

        assert settings.step_condition_mode == StepConditionMode.SKIP
        assert settings.scan_interval_seconds == 30.0
        assert settings.templates_dir == Path("/etc/approvals")

    def test_file_named_by_environment(self, tmp_path):
        path = _write(tmp_path, "log_level: debug\n")

        settings = get_settings(environ={CONFIG_FILE_ENV: str(path)})

        assert settings.log_level == "DEBUG"
        assert settings.log_level_number == logging.DEBUG

    def test_empty_file_keeps_defaults(self, tmp_path):
        path = _write(tmp_path, "")

        assert get_settings(path, environ={}) == EngineSettings()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_settings(tmp_path / "nope.yaml", environ={})


class TestEnvironment:

    def test_environment_wins_over_file(self, tmp_path):
        path = _write(tmp_path, "max_attempts: 5\ndatabase_url: sqlite:///file.db\n")

        settings = get_settings(
            path,
            environ={
                "APPROVAL_MAX_ATTEMPTS": "7",
                "APPROVAL_DATABASE_URL": "postgresql://db/approvals",
            },
        )

        assert settings.max_attempts == 7
        assert settings.database_url == "postgresql://db/approvals"

    def test_unrelated_variables_are_ignored(self):
        settings = get_settings(environ={"APPROVALS_SOMETHING": "x", "HOME": "/root"})

        assert settings == EngineSettings()

    def test_none_clears_max_pending_hours(self, tmp_path):
        path = _write(tmp_path, "max_pending_hours: 24\n")

        settings = get_settings(path, environ={"APPROVAL_MAX_PENDING_HOURS": "none"})

        assert settings.max_pending_hours is None


class TestValidation:

    def test_unknown_key(self, tmp_path):
        path = _write(tmp_path, "quorum: 3\n")

        with pytest.raises(ValueError, match="Unknown settings"):
            get_settings(path, environ={})

    @pytest.mark.parametrize(
        "variable, value, fragment",
        [
            ("APPROVAL_QUORUM_COUNTING", "MAJORITY", "quorum_counting"),
            ("APPROVAL_STEP_CONDITION_MODE", "SOMETIMES", "step_condition_mode"),
            ("APPROVAL_SCAN_INTERVAL_SECONDS", "0", "scan_interval_seconds"),
            ("APPROVAL_SCAN_INTERVAL_SECONDS", "often", "scan_interval_seconds"),
            ("APPROVAL_MAX_PENDING_HOURS", "-1", "max_pending_hours"),
            ("APPROVAL_MAX_PENDING_HOURS", "forever", "max_pending_hours"),
            ("APPROVAL_MAX_ATTEMPTS", "0", "max_attempts"),
            ("APPROVAL_LOG_LEVEL", "CHATTY", "log_level"),
        ],
    )
    def test_bad_values_name_the_key(self, variable, value, fragment):
        with pytest.raises(ValueError, match=fragment):
            get_settings(environ={variable: value})
