"""
Shared container health check utility.

Used by the update executor both after applying a new image and after
rolling back to the previous one. Status is read through the docker CLI.
"""

import asyncio
import enum
import logging
import time

from utils.command_runner import CommandRunner, CommandError, CommandTimeoutError, run_checked
from utils.docker_cli import DockerCli

logger = logging.getLogger(__name__)

HEALTH_TIMEOUT_SECONDS = 90
HEALTH_POLL_INTERVAL_SECONDS = 2
INSPECT_TIMEOUT_SECONDS = 10


class HealthCheckResult(enum.Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TIMEOUT = "timeout"

    @property
    def ok(self) -> bool:
        return self is HealthCheckResult.HEALTHY


async def container_has_healthcheck(
    runner: CommandRunner,
    docker: DockerCli,
    container_id: str,
) -> bool:
    """True if the container declares a HEALTHCHECK"""
    output = await run_checked(runner, docker.has_healthcheck(container_id), INSPECT_TIMEOUT_SECONDS)
    return output.stdout.strip() == "1"


async def wait_for_container_health(
    runner: CommandRunner,
    docker: DockerCli,
    container_id: str,
    timeout: float = HEALTH_TIMEOUT_SECONDS,
    interval: float = HEALTH_POLL_INTERVAL_SECONDS,
) -> HealthCheckResult:
    """
    Poll a container's health status until it settles or the deadline passes.

    1. "healthy" returns HEALTHY as soon as it is seen
    2. "unhealthy" returns UNHEALTHY immediately, no further waiting
    3. Anything else ("starting", empty, inspect errors) keeps polling;
       whatever is seen at the deadline counts as TIMEOUT

    Args:
        runner: Command runner
        docker: docker CLI builder
        container_id: Container to watch
        timeout: Deadline in seconds
        interval: Delay between polls in seconds

    Returns:
        HealthCheckResult
    """
    start_time = time.monotonic()
    last_status = ""

    while True:
        try:
            output = await run_checked(runner, docker.health_status(container_id), INSPECT_TIMEOUT_SECONDS)
            last_status = output.stdout.strip()
        except (CommandError, CommandTimeoutError) as e:
            logger.debug(f"Health inspect failed for {container_id}: {e}")
            last_status = ""

        if last_status == "healthy":
            logger.info(f"Container {container_id} is healthy")
            return HealthCheckResult.HEALTHY
        if last_status == "unhealthy":
            logger.error(f"Container {container_id} is unhealthy")
            return HealthCheckResult.UNHEALTHY

        if time.monotonic() - start_time >= timeout:
            break

        logger.debug(f"Container {container_id} health status: {last_status or 'none'}, waiting...")
        await asyncio.sleep(interval)

    logger.error(
        f"Health check timeout after {timeout}s for container {container_id} "
        f"(last status: {last_status or 'none'})"
    )
    return HealthCheckResult.TIMEOUT
