"""
Unit tests for the compose command builder and image override fragments.
"""

import os

import pytest
import yaml

from deployment.compose_client import (
    ComposeOverrideError,
    ComposeProject,
    is_docker_cli,
    is_valid_service_name,
    render_image_override,
    sanitize_project_name,
    write_image_override,
    write_temp_image_override,
)


@pytest.mark.unit
class TestComposeProject:
    def test_docker_plugin_args(self):
        project = ComposeProject(binary="docker", files=["/s/compose.yml"], project_name="media",
                                 env_file="/s/.env")
        spec = project.pull("web", ["/tmp/override.yml"])
        assert spec.program == "docker"
        assert spec.args == [
            "compose", "--project-name", "media",
            "-f", "/s/compose.yml", "-f", "/tmp/override.yml",
            "--env-file", "/s/.env",
            "pull", "web",
        ]

    def test_standalone_binary_has_no_compose_subcommand(self):
        project = ComposeProject(binary="docker-compose", files=["a.yml"])
        assert project.ps_quiet("web").args == ["-f", "a.yml", "ps", "-q", "web"]

    def test_up_variants(self):
        project = ComposeProject(binary="docker-compose", files=["a.yml"])
        assert project.up("web").args[-3:] == ["up", "-d", "web"]
        assert project.up_no_pull("web").args[-5:] == ["up", "-d", "--pull", "never", "web"]
        assert project.up_force_pull("web", ["o.yml"]).args == [
            "-f", "a.yml", "-f", "o.yml", "up", "-d", "--no-deps", "--pull", "always", "web",
        ]

    def test_env_passed_through(self):
        project = ComposeProject(files=["a.yml"], env={"DOCKER_HOST": "tcp://h"})
        assert project.up("web").env == {"DOCKER_HOST": "tcp://h"}


@pytest.mark.unit
class TestHelpers:
    def test_is_docker_cli(self):
        assert is_docker_cli("docker")
        assert is_docker_cli("/usr/bin/docker")
        assert not is_docker_cli("docker-compose")
        assert not is_docker_cli("podman")

    def test_sanitize_project_name(self):
        assert sanitize_project_name("My Stack!") == "my-stack"
        assert sanitize_project_name("!!!") == "dockpilot"

    def test_service_names(self):
        assert is_valid_service_name("web-1")
        assert not is_valid_service_name("-web")
        assert not is_valid_service_name("")


@pytest.mark.unit
class TestImageOverride:
    def test_render(self):
        assert yaml.safe_load(render_image_override("web", "nginx@sha256:abc")) == {
            "services": {"web": {"image": "nginx@sha256:abc"}}
        }

    def test_write_fixed_path_replaces_file(self, tmp_path):
        path = tmp_path / "sup" / "self-upgrade.override.yml"
        write_image_override(str(path), "app", "repo:1")
        write_image_override(str(path), "app", "repo:2")
        assert yaml.safe_load(path.read_text())["services"]["app"]["image"] == "repo:2"
        assert sorted(os.listdir(path.parent)) == ["self-upgrade.override.yml"]

    def test_write_fixed_path_error(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        with pytest.raises(ComposeOverrideError):
            write_image_override(str(blocker / "override.yml"), "app", "repo:1")

    def test_write_temp(self):
        path = write_temp_image_override("web", "nginx:1.27")
        try:
            assert yaml.safe_load(open(path).read())["services"]["web"]["image"] == "nginx:1.27"
        finally:
            os.unlink(path)
