"""Tests for the operator CLI (scripts/approvals.py).

Covers exit codes as well as output: 0 on success, 1 for engine errors
such as a template id already owned by another owner, 2 for bad input.
"""

from uuid import uuid4

import pytest
from sqlalchemy import select, update

from approval_config.bridges import sql_service_scope
from approval_config.settings import EngineSettings
from approval_kernel.db.engine import get_session_factory, reset_engine, session_scope
from approval_kernel.models.workflow import WorkflowTemplateModel
from scripts.approvals import main
from tests.factories import SUBMITTER_ID, make_document

TEMPLATES_YAML = """\
owner_id: sales-team
workflows:
  - name: Standard
    is_default: true
    steps:
      - order: 1
        name: Manager
        approver_ids: [manager]
  - name: Large deals
    trigger_conditions:
      - type: VALUE_ABOVE
        value: 50000
    steps:
      - order: 1
        name: Finance
        approver_ids: [cfo]
"""


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch):
    for name in ("APPROVAL_CONFIG_FILE", "APPROVAL_DATABASE_URL", "APPROVAL_TEMPLATES_DIR"):
        monkeypatch.delenv(name, raising=False)
    yield
    reset_engine()


@pytest.fixture
def db_args(tmp_path):
    return ["--db-url", f"sqlite:///{tmp_path / 'cli.db'}"]


@pytest.fixture
def templates_file(tmp_path):
    path = tmp_path / "workflows.yaml"
    path.write_text(TEMPLATES_YAML)
    return path


@pytest.fixture
def ready_db(db_args, templates_file):
    assert main([*db_args, "init-db"]) == 0
    assert main([*db_args, "load-templates", str(templates_file)]) == 0
    return db_args


def test_init_db(db_args, capsys):
    assert main([*db_args, "init-db"]) == 0
    assert "Tables created." in capsys.readouterr().out


def test_load_templates_creates_then_updates(db_args, templates_file, capsys):
    main([*db_args, "init-db"])
    capsys.readouterr()

    assert main([*db_args, "load-templates", str(templates_file)]) == 0
    assert "2 created, 0 updated" in capsys.readouterr().out

    assert main([*db_args, "load-templates", str(templates_file)]) == 0
    assert "0 created, 2 updated" in capsys.readouterr().out


def test_load_templates_needs_a_path(db_args, capsys):
    assert main([*db_args, "load-templates"]) == 2
    assert "templates_dir is not set" in capsys.readouterr().err


def test_load_templates_reports_invalid_files(db_args, tmp_path, capsys):
    bad = tmp_path / "bad.yaml"
    bad.write_text("owner_id: t\nname: Gappy\nsteps: [{order: 2, name: S, approver_ids: [a]}]\n")
    main([*db_args, "init-db"])

    assert main([*db_args, "load-templates", str(bad)]) == 1
    assert "ERROR:" in capsys.readouterr().err


def test_invalid_settings_exit_code(db_args, monkeypatch, capsys):
    monkeypatch.setenv("APPROVAL_MAX_ATTEMPTS", "0")

    assert main([*db_args, "init-db"]) == 2
    assert "Invalid settings" in capsys.readouterr().err


def test_pending_lists_requests(ready_db, capsys):
    with sql_service_scope(get_session_factory(), EngineSettings()) as service:
        request = service.submit(make_document("deal-1", value="90000"), SUBMITTER_ID, owner_id="sales-team")
    capsys.readouterr()

    assert main([*ready_db, "pending", "cfo"]) == 0
    out = capsys.readouterr().out
    assert str(request.id) in out
    assert "1 pending." in out

    assert main([*ready_db, "pending", "manager"]) == 0
    assert "0 pending." in capsys.readouterr().out


def test_trail(ready_db, capsys):
    with sql_service_scope(get_session_factory(), EngineSettings()) as service:
        request = service.submit(make_document(), SUBMITTER_ID, owner_id="sales-team", notes="first try")
    capsys.readouterr()

    assert main([*ready_db, "trail", str(request.id)]) == 0
    out = capsys.readouterr().out
    assert "SUBMITTED" in out
    assert "first try" in out


def test_trail_of_unknown_approval(ready_db, capsys):
    assert main([*ready_db, "trail", str(uuid4())]) == 1
    assert "not found" in capsys.readouterr().err


def test_scan_timeouts(ready_db, capsys):
    assert main([*ready_db, "scan-timeouts"]) == 0
    assert "Dispatched 0 timeout action(s)." in capsys.readouterr().out


def test_run_scheduler_rejects_non_positive_interval(ready_db, capsys):
    assert main([*ready_db, "run-scheduler", "--interval", "0"]) == 2


def test_load_templates_owned_by_someone_else(ready_db, templates_file, capsys):
    with session_scope() as session:
        session.execute(update(WorkflowTemplateModel).values(owner_id="other-team"))
    capsys.readouterr()

    assert main([*ready_db, "load-templates", str(templates_file)]) == 1
    assert "does not own workflow" in capsys.readouterr().err
    with session_scope() as session:
        owners = session.scalars(select(WorkflowTemplateModel.owner_id)).all()
    assert set(owners) == {"other-team"}
