"""
Shared pytest fixtures for DockPilot tests.

Fixtures provided:
- test_db: DatabaseManager on a temporary SQLite file
- test_stack: A registered stack with two services
- fake_runner: Recording CommandRunner with scripted results (see fakes.py)
- supervisor_settings: SupervisorSettings pointing at a temporary state file

Nothing here talks to docker or a registry; every external command goes
through FakeRunner and registry HTTP is patched at RegistryAdapter._send.
"""

import os
import sys
from typing import Dict

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.dirname(__file__))

from config.settings import SupervisorSettings
from database import DatabaseManager
from fakes import FakeRunner


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture(scope="function")
def test_db(tmp_path):
    """
    Create a temporary SQLite database for testing.

    Each test gets its own file so tests don't affect each other.
    """
    db = DatabaseManager(f"sqlite:///{tmp_path / 'dockpilot.db'}")
    yield db
    db.engine.dispose()


@pytest.fixture
def test_stack(test_db, tmp_path) -> Dict[str, int]:
    """
    Stack "media" with services web (nginx:1.25) and db (postgres:15).

    Returns the ids: {"stack", "web", "db"}.
    """
    compose_file = tmp_path / "compose.yml"
    compose_file.write_text("services:\n  web:\n    image: nginx:1.25\n  db:\n    image: postgres:15\n")
    stack_id = test_db.add_stack("media", [str(compose_file)], project_name="media")
    web_id = test_db.add_service(stack_id, "web", "nginx:1.25")
    db_id = test_db.add_service(stack_id, "db", "postgres:15")
    return {"stack": stack_id, "web": web_id, "db": db_id}


@pytest.fixture
def supervisor_settings(tmp_path) -> SupervisorSettings:
    return SupervisorSettings(
        target_image_repo="ghcr.io/acme/dockpilot",
        target_compose_files=[],
        state_path=str(tmp_path / "supervisor" / "self-upgrade.json"),
    )
