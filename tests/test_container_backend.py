from __future__ import annotations

import time

import pytest

from fakes import FakeDocker, make_config
from src.engine.capabilities import EngineCapabilities
from src.engine.container_backend import (
    LABEL_RUNNER_ID,
    ContainerBackend,
    ContainerLaunchConfig,
    container_name,
)
from src.engine.errors import ContainerRuntimeUnavailable, ImagePullError
from src.engine.models import ContainerOptions, Observed, Runner, RunnerMode, RunnerStatus, Scope, ScopeType


def _backend(docker: FakeDocker) -> ContainerBackend:
    backend = ContainerBackend(make_config("/tmp/unused").docker, EngineCapabilities(), client_factory=lambda: docker)
    assert backend.is_docker_available() is True
    return backend


def _runner(runner_id: str = "runner_c1") -> Runner:
    return Runner(
        runner_id=runner_id,
        name=f"ap-{runner_id}",
        mode=RunnerMode.CONTAINER,
        status=RunnerStatus.CONFIGURING,
        scope=Scope(scope_type=ScopeType.REPO, target="octo/widgets", credential_id="cred_1"),
        labels=("docker",),
        ephemeral=False,
        created_at=time.time(),
        updated_at=time.time(),
    )


def _launch(**kwargs) -> ContainerLaunchConfig:
    return ContainerLaunchConfig(
        registration_url="https://github.test/octo/widgets",
        registration_token="reg-1",
        scope_type=ScopeType.REPO,
        target="octo/widgets",
        labels=("docker",),
        **kwargs,
    )


def test_pull_is_idempotent_and_arch_aware() -> None:
    docker = FakeDocker()
    backend = _backend(docker)
    assert backend.pull_runner_image(arch="x64") == "example/runner:latest"
    assert docker.api.pulls == [("example/runner", "latest", "linux/amd64")]

    backend.pull_runner_image(arch="x64")
    assert len(docker.api.pulls) == 1

    # Present but for another architecture: pulled again.
    backend.pull_runner_image(arch="arm64")
    assert docker.api.pulls[-1] == ("example/runner", "latest", "linux/arm64")


def test_pull_error_in_stream() -> None:
    docker = FakeDocker()
    docker.pull_error = "manifest unknown"
    backend = _backend(docker)
    with pytest.raises(ImagePullError) as exc_info:
        backend.pull_runner_image("example/missing:1")
    assert "manifest unknown" in exc_info.value.cause


def test_create_start_stop_remove() -> None:
    docker = FakeDocker()
    backend = _backend(docker)
    runner = _runner()
    options = ContainerOptions(enable_kvm=True, enable_docker_socket=True)
    container_id = backend.create_docker_runner(runner, "example/runner:latest", _launch(options=options))

    container = docker.containers.by_id[container_id]
    assert container.name == container_name(runner.runner_id)
    assert container.labels[LABEL_RUNNER_ID] == runner.runner_id
    assert container.kwargs["environment"]["REPO_URL"] == "https://github.test/octo/widgets"
    assert container.kwargs["environment"]["LABELS"] == "docker"
    assert container.kwargs["devices"] == ["/dev/kvm:/dev/kvm:rwm"]
    assert "/var/run/docker.sock" in container.kwargs["volumes"]
    assert container.kwargs["restart_policy"] == {"Name": "unless-stopped"}
    assert "privileged" not in container.kwargs

    assert backend.get_container_status(container_id).observed == Observed.STOPPED
    backend.start_docker_runner(container_id)
    assert backend.get_container_status(container_id).observed == Observed.RUNNING
    assert backend.find_runner_container(runner.runner_id) == container_id
    assert "Listening for Jobs" in backend.get_container_logs(container_id, tail=10)

    assert backend.stop_docker_runner(container_id) is True
    assert backend.stop_docker_runner(container_id) is False

    backend.remove_docker_runner(container_id)
    backend.remove_docker_runner(container_id)
    assert backend.get_container_status(container_id).observed == Observed.MISSING
    assert backend.find_runner_container(runner.runner_id) is None


def test_ephemeral_org_container_settings_and_leftover_replaced() -> None:
    docker = FakeDocker()
    backend = _backend(docker)
    runner = _runner("runner_c2")
    first = backend.create_docker_runner(runner, "example/runner:latest", _launch())
    org = ContainerLaunchConfig(
        registration_url="https://github.test/octo",
        registration_token="reg-2",
        scope_type=ScopeType.ORG,
        target="octo",
        ephemeral=True,
    )
    second = backend.create_docker_runner(runner, "example/runner:latest", org)
    assert first not in docker.containers.by_id
    container = docker.containers.by_id[second]
    assert container.kwargs["auto_remove"] is True
    assert container.kwargs["environment"]["ORG_NAME"] == "octo"
    assert container.kwargs["environment"]["EPHEMERAL"] == "true"

    managed = backend.list_action_packer_containers()
    assert [(m.container_id, m.runner_id) for m in managed] == [(second, "runner_c2")]


def test_runtime_loss_fails_fast() -> None:
    docker = FakeDocker()
    backend = _backend(docker)
    docker.down = True

    with pytest.raises(ContainerRuntimeUnavailable):
        backend.get_container_status("a" * 64)
    assert backend.capabilities.docker_available is False

    # Later calls fail without touching the daemon.
    docker.down = False
    with pytest.raises(ContainerRuntimeUnavailable):
        backend.list_action_packer_containers()
    assert backend.get_docker_info() is None

    assert backend.is_docker_available() is True
    assert backend.list_action_packer_containers() == []
