"""
Tests for the command-line tool.

Bookkeeping commands run against a temporary SQLite file; check and update
commands have their async entry points patched.
"""

from unittest.mock import AsyncMock

import pytest

import cli
from database import DatabaseManager


@pytest.fixture
def db_url(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setenv("DOCKPILOT_DATABASE_URL", url)
    monkeypatch.setattr(cli, "setup_logging", lambda *args, **kwargs: None)
    return url


@pytest.mark.unit
class TestBookkeeping:
    def test_register_stack_service_and_rule(self, db_url, capsys):
        assert cli.main(["add-stack", "media", "-f", "/opt/media/compose.yml", "-p", "media"]) == 0
        assert cli.main(["add-service", "1", "web", "nginx:1.25", "--no-auto-rollback"]) == 0
        assert cli.main(["ignore", "1", "semver", ">=2", "--note", "stay on 1.x"]) == 0

        db = DatabaseManager(db_url)
        stack = db.get_stack_target(1)
        assert stack.compose_files == ["/opt/media/compose.yml"]
        assert stack.services[0].image == "nginx:1.25"
        assert stack.services[0].auto_rollback is False
        assert db.list_ignore_rules(1)[0].value == ">=2"
        assert "registered with id 1" in capsys.readouterr().out

    def test_unknown_parent(self, db_url, capsys):
        assert cli.main(["add-service", "9", "web", "nginx"]) == 1
        assert cli.main(["ignore", "9", "exact", "1.0"]) == 1
        assert "not found" in capsys.readouterr().out

    def test_unknown_rule_kind_rejected_by_parser(self, db_url):
        with pytest.raises(SystemExit):
            cli.main(["ignore", "1", "glob", "1.*"])


@pytest.mark.unit
class TestCycles:
    def test_check_prints_summary(self, db_url, monkeypatch, capsys):
        monkeypatch.setattr(cli, "run_check", AsyncMock(return_value={"servicesChecked": 3}))
        assert cli.main(["check"]) == 0
        assert '"servicesChecked": 3' in capsys.readouterr().out

    def test_failed_update_exit_code(self, db_url, monkeypatch):
        monkeypatch.setattr(cli, "run_update", AsyncMock(return_value={"status": "rolled_back"}))
        assert cli.main(["update", "--stack", "1"]) == 2

    def test_explicit_tag_needs_service_scope(self, db_url, capsys):
        assert cli.main(["update", "--stack", "1", "--tag", "1.27"]) == 1
        assert "--tag/--digest require --service" in capsys.readouterr().out

    def test_scope_flags_exclusive(self, db_url):
        with pytest.raises(SystemExit):
            cli.main(["check", "--stack", "1", "--service", "2"])
