"""
Unit tests for docker CLI command builders and output parsers.
"""

import json

import pytest

from utils.docker_cli import (
    DockerCli,
    digest_for_repo,
    parse_container_inspect,
    parse_ps_lines,
    parse_repo_digests,
)
from fakes import container_inspect_json


@pytest.mark.unit
class TestDockerCliBuilders:
    def test_specs_carry_binary_and_env(self):
        docker = DockerCli(binary="/usr/local/bin/docker", env={"DOCKER_HOST": "unix:///x.sock"})
        spec = docker.pull("nginx:1.27")
        assert spec.program == "/usr/local/bin/docker"
        assert spec.args == ["pull", "nginx:1.27"]
        assert spec.env == {"DOCKER_HOST": "unix:///x.sock"}

    def test_inspect_formats(self):
        docker = DockerCli()
        assert docker.health_status("c1").args == ["inspect", "--format", "{{.State.Health.Status}}", "c1"]
        assert docker.image_id("c1").args == ["inspect", "--format", "{{.Image}}", "c1"]
        assert docker.inspect_json("c1").args == ["inspect", "c1", "--format", "{{json .}}"]

    def test_tag(self):
        assert DockerCli().tag("sha256:old", "nginx:1.25").args == ["image", "tag", "sha256:old", "nginx:1.25"]


@pytest.mark.unit
class TestParsers:
    def test_ps_lines_skip_garbage(self):
        stdout = "\n".join([
            json.dumps({"ID": "a1", "Image": "nginx:1.25"}),
            "not json",
            "",
            json.dumps({"ID": "b2", "Image": "ghcr.io/acme/dockpilot:1.0"}),
            json.dumps({"Image": "no-id"}),
        ])
        containers = parse_ps_lines(stdout)
        assert [(c.id, c.image) for c in containers] == [("a1", "nginx:1.25"), ("b2", "ghcr.io/acme/dockpilot:1.0")]

    def test_container_inspect(self):
        details = parse_container_inspect(container_inspect_json(
            env=["DOCKPILOT_HTTP_ADDR=0.0.0.0:9000", "NOVALUE"],
            networks={"dockpilot_default": "172.20.0.5", "other": ""},
        ))
        assert details.id == "c0ffee000001"
        assert details.image_id == "sha256:1111"
        assert details.config_image == "ghcr.io/acme/dockpilot:1.0.0"
        assert details.labels["com.docker.compose.service"] == "dockpilot"
        assert details.env == {"DOCKPILOT_HTTP_ADDR": "0.0.0.0:9000"}
        assert details.networks == {"dockpilot_default": "172.20.0.5", "other": ""}

    def test_container_inspect_array_form(self):
        details = parse_container_inspect("[" + container_inspect_json() + "]")
        assert details.id == "c0ffee000001"

    def test_container_inspect_rejects_empty_array(self):
        with pytest.raises(ValueError):
            parse_container_inspect("[]")

    def test_repo_digests(self):
        stdout = json.dumps({"RepoDigests": ["ghcr.io/acme/dockpilot@sha256:abc", "other/repo@sha256:def"]})
        digests = parse_repo_digests(stdout)
        assert digest_for_repo(digests, "ghcr.io/acme/dockpilot") == "sha256:abc"
        assert digest_for_repo(digests, "ghcr.io/acme/missing") is None
