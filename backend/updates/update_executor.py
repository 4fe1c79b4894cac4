"""
Update Executor Service

Applies a new image to compose services, one service at a time:
1. Find the running container
2. Record its image id
3. Pull and re-create the service with an image override
4. Verify health
5. Re-tag the old image and re-create again if health fails

The whole job stops at the first service that needs a rollback.
"""

import logging
import os
import threading
from typing import Dict, List, Optional

from deployment.compose_client import (
    ComposeOverrideError,
    ComposeProject,
    is_valid_service_name,
    write_temp_image_override,
)
from updates.image_ref import apply_reference, tag_reference
from updates.types import (
    ArchMatch,
    ServiceTarget,
    StackTarget,
    UpdateJob,
    UpdateOutcome,
    UpdateScope,
)
from utils.command_runner import CommandError, CommandRunner, CommandTimeoutError, run_checked
from utils.container_health import (
    HEALTH_POLL_INTERVAL_SECONDS,
    HEALTH_TIMEOUT_SECONDS,
    HealthCheckResult,
    container_has_healthcheck,
    wait_for_container_health,
)
from utils.docker_cli import DockerCli

logger = logging.getLogger(__name__)

PS_TIMEOUT_SECONDS = 30
INSPECT_TIMEOUT_SECONDS = 10
PULL_TIMEOUT_SECONDS = 300
UP_TIMEOUT_SECONDS = 300


class UpdateValidationError(ValueError):
    """Update request rejected before anything ran"""
    pass


class _ServiceFailed(Exception):
    """Apply or health check of one service failed; rollback decides the outcome"""
    pass


class UpdateExecutor:
    """
    Service that executes compose service updates with automatic rollback.

    All docker / compose calls go through the injected CommandRunner.

    Usage:
        executor = UpdateExecutor(SubprocessCommandRunner())
        outcome = await executor.execute(stack, UpdateJob(scope=UpdateScope.STACK, stack_id=stack.id))
    """

    def __init__(
        self,
        runner: CommandRunner,
        compose_bin: str = "docker",
        docker_bin: str = "docker",
        env: Optional[Dict[str, str]] = None,
        health_timeout: float = HEALTH_TIMEOUT_SECONDS,
        health_interval: float = HEALTH_POLL_INTERVAL_SECONDS,
    ):
        self.runner = runner
        self.compose_bin = compose_bin
        self.env = dict(env or {})
        self.docker = DockerCli(binary=docker_bin, env=self.env)
        self.health_timeout = health_timeout
        self.health_interval = health_interval

        self.updating_stacks = set()
        self._update_lock = threading.Lock()  # atomic check-and-set on updating_stacks

    def is_stack_updating(self, stack_id: int) -> bool:
        return stack_id in self.updating_stacks

    def _project(self, stack: StackTarget) -> ComposeProject:
        return ComposeProject(
            binary=self.compose_bin,
            files=list(stack.compose_files),
            project_name=stack.project_name,
            env_file=stack.env_file,
            env=self.env,
        )

    def select_services(self, stack: StackTarget, job: UpdateJob) -> List[ServiceTarget]:
        """
        Services a job touches within one stack.

        An explicit service is taken as is. Stack/all scope skips archived
        services, ignore-matched candidates, services without a candidate and,
        unless allowed, candidates built for other platforms.
        """
        if job.scope == UpdateScope.SERVICE:
            return [s for s in stack.services if s.id == job.service_id]

        selected = []
        for service in stack.services:
            if service.archived:
                continue
            if service.ignore_matched:
                continue
            if service.candidate is None:
                continue
            if service.candidate.arch_match == ArchMatch.MISMATCH and not job.allow_arch_mismatch:
                logger.info(f"Skipping {stack.name}/{service.name}: candidate {service.candidate.tag} "
                            f"does not offer this platform")
                continue
            selected.append(service)
        return selected

    @staticmethod
    def target_image(service: ServiceTarget, job: UpdateJob) -> Optional[str]:
        """
        Image the service should run: explicit digest > explicit tag >
        candidate digest > candidate tag, on the service's stripped reference.
        """
        if job.target_digest:
            return apply_reference(service.image, digest=job.target_digest)
        if job.target_tag:
            return apply_reference(service.image, tag=job.target_tag)
        if service.candidate is not None:
            if service.candidate.digest:
                return apply_reference(service.image, digest=service.candidate.digest)
            return apply_reference(service.image, tag=service.candidate.tag)
        return None

    async def execute(self, stack: StackTarget, job: UpdateJob) -> UpdateOutcome:
        """
        Run one job against one stack.

        Returns:
            UpdateOutcome: success, rolled_back, or failed with a reason
            (pull_failed, health_check_failed, rollback_failed)

        Raises:
            UpdateValidationError: invalid service names or stack already updating
        """
        services = self.select_services(stack, job)

        if job.dry_run:
            logger.info(f"Dry run for stack {stack.name}: {len(services)} service(s) would be updated")
            return UpdateOutcome.success_result({
                "stack": stack.name,
                "dryRun": True,
                "services": len(services),
                "serviceNames": [s.name for s in services],
            })

        for service in services:
            if not is_valid_service_name(service.name):
                raise UpdateValidationError(f"Invalid compose service name: {service.name!r}")

        with self._update_lock:
            if stack.id in self.updating_stacks:
                raise UpdateValidationError(f"Stack {stack.name} is already being updated")
            self.updating_stacks.add(stack.id)

        try:
            return await self._apply(stack, services, job)
        finally:
            with self._update_lock:
                self.updating_stacks.discard(stack.id)

    async def _apply(self, stack: StackTarget, services: List[ServiceTarget], job: UpdateJob) -> UpdateOutcome:
        project = self._project(stack)
        summary = {
            "stack": stack.name,
            "changedServices": [],
            "skippedServices": [],
            "oldImageIds": {},
            "newImageIds": {},
        }

        for service in services:
            image_ref = self.target_image(service, job)
            if image_ref is None:
                logger.info(f"{stack.name}/{service.name}: no target image, skipping")
                summary["skippedServices"].append(service.name)
                continue

            try:
                container_id = await self._running_container(project, service.name)
                old_image_id = await self._image_id(container_id) if container_id else ""
            except (CommandError, CommandTimeoutError) as e:
                logger.error(f"Could not inspect {stack.name}/{service.name}: {e}")
                summary["failedService"] = service.name
                summary["error"] = str(e)
                return UpdateOutcome.failure_result("command_failed", summary)

            if not container_id:
                logger.info(f"{stack.name}/{service.name}: no running container, skipping")
                summary["skippedServices"].append(service.name)
                continue

            logger.info(f"Updating {stack.name}/{service.name} to {image_ref} (current image {old_image_id[:19]})")

            try:
                override_path = write_temp_image_override(service.name, image_ref)
            except ComposeOverrideError as e:
                logger.error(str(e))
                return UpdateOutcome.failure_result("override_failed", summary)

            try:
                try:
                    await run_checked(self.runner, project.pull(service.name, [override_path]), PULL_TIMEOUT_SECONDS)
                except (CommandError, CommandTimeoutError) as e:
                    logger.error(f"Pull failed for {stack.name}/{service.name}: {e}")
                    summary["failedService"] = service.name
                    return UpdateOutcome.failure_result("pull_failed", summary)

                try:
                    await run_checked(self.runner, project.up(service.name, [override_path]), UP_TIMEOUT_SECONDS)
                    new_container_id = await self._verify_health(project, service.name)
                except _ServiceFailed as e:
                    logger.error(f"Update of {stack.name}/{service.name} failed: {e}")
                    return await self._recover(project, stack, service, old_image_id, summary)
                except (CommandError, CommandTimeoutError) as e:
                    logger.error(f"Apply failed for {stack.name}/{service.name}: {e}")
                    return await self._recover(project, stack, service, old_image_id, summary)
            finally:
                _remove_quietly(override_path)

            summary["changedServices"].append(service.name)
            summary["oldImageIds"][service.name] = old_image_id
            try:
                summary["newImageIds"][service.name] = await self._image_id(new_container_id)
            except (CommandError, CommandTimeoutError) as e:
                logger.warning(f"Could not read new image id of {stack.name}/{service.name}: {e}")
                summary["newImageIds"][service.name] = ""
            logger.info(f"Updated {stack.name}/{service.name} successfully")

        return UpdateOutcome.success_result(summary)

    async def _running_container(self, project: ComposeProject, service: str) -> Optional[str]:
        output = await run_checked(self.runner, project.ps_quiet(service), PS_TIMEOUT_SECONDS)
        for line in output.stdout.splitlines():
            if line.strip():
                return line.strip()
        return None

    async def _image_id(self, container_id: str) -> str:
        output = await run_checked(self.runner, self.docker.image_id(container_id), INSPECT_TIMEOUT_SECONDS)
        return output.stdout.strip()

    async def _verify_health(self, project: ComposeProject, service: str) -> str:
        """
        Wait for the re-created container; returns its id.

        Raises:
            _ServiceFailed: container missing, unhealthy or not healthy in time
        """
        # up replaced the container, so look it up again
        container_id = await self._running_container(project, service)
        if not container_id:
            raise _ServiceFailed(f"no running container for {service} after apply")

        if not await container_has_healthcheck(self.runner, self.docker, container_id):
            logger.info(f"Container {container_id} has no health check, assuming healthy")
            return container_id

        result = await wait_for_container_health(
            self.runner, self.docker, container_id,
            timeout=self.health_timeout, interval=self.health_interval,
        )
        if result != HealthCheckResult.HEALTHY:
            raise _ServiceFailed(f"health check {result.value}")
        return container_id

    async def _recover(
        self,
        project: ComposeProject,
        stack: StackTarget,
        service: ServiceTarget,
        old_image_id: str,
        summary: dict,
    ) -> UpdateOutcome:
        summary["failedService"] = service.name

        if not service.auto_rollback:
            logger.warning(f"Automatic rollback disabled for {stack.name}/{service.name}")
            return UpdateOutcome.failure_result("health_check_failed", summary)

        logger.warning(f"Rolling back {stack.name}/{service.name} to image {old_image_id[:19]}")
        try:
            # A digest-only image already resolves to the old image
            retag = tag_reference(service.image)
            if retag:
                await run_checked(self.runner, self.docker.tag(old_image_id, retag), INSPECT_TIMEOUT_SECONDS)
            await run_checked(self.runner, project.up_no_pull(service.name), UP_TIMEOUT_SECONDS)
            await self._verify_health(project, service.name)
        except (_ServiceFailed, CommandError, CommandTimeoutError) as e:
            logger.error(f"Rollback of {stack.name}/{service.name} failed: {e}")
            summary["changedCount"] = len(summary["changedServices"])
            return UpdateOutcome.failure_result("rollback_failed", summary)

        logger.info(f"Rolled back {stack.name}/{service.name}")
        summary["rolledBackService"] = service.name
        return UpdateOutcome.rolled_back_result(summary, "health_check_failed")


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove compose override {path}: {e}")
