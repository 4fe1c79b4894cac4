"""
Update job runner.

Turns an UpdateJob (service / stack / all) into UpdateExecutor runs, one
stack after another, stopping at the first stack that did not fully succeed.
"""

import logging
from typing import Dict, List, Optional, TYPE_CHECKING

from updates.image_ref import ImageReference, ImageReferenceError
from updates.registry_adapter import RegistryAdapter, RegistryError, compute_arch_match
from updates.types import ArchMatch, StackTarget, UpdateJob, UpdateOutcome, UpdateScope, UpdateStatus
from updates.update_executor import UpdateExecutor, UpdateValidationError
from utils.command_runner import CommandError, CommandTimeoutError

if TYPE_CHECKING:
    from database import DatabaseManager

logger = logging.getLogger(__name__)


class UpdateJobRunner:
    def __init__(
        self,
        db: 'DatabaseManager',
        executor: UpdateExecutor,
        registry: Optional[RegistryAdapter] = None,
        host_platform: str = "linux/amd64",
    ):
        self.db = db
        self.executor = executor
        self.registry = registry
        self.host_platform = host_platform

    def _resolve_stacks(self, job: UpdateJob) -> List[StackTarget]:
        if job.scope == UpdateScope.ALL:
            return self.db.list_stack_targets()

        if job.scope == UpdateScope.SERVICE:
            if job.service_id is None:
                raise UpdateValidationError("service_id is required for a service update")
            stack_id = self.db.get_service_stack_id(job.service_id)
            if stack_id is None:
                raise UpdateValidationError(f"Service {job.service_id} not found")
        else:
            stack_id = job.stack_id
            if stack_id is None:
                raise UpdateValidationError("stack_id is required for a stack update")

        stack = self.db.get_stack_target(stack_id)
        if stack is None:
            raise UpdateValidationError(f"Stack {stack_id} not found")
        return [stack]

    async def _check_service_platform(self, stack: StackTarget, job: UpdateJob) -> None:
        """
        Refuse a single-service update whose target lacks this platform.

        Explicit targets are looked up in the registry; otherwise the stored
        candidate verdict is used.
        """
        if job.allow_arch_mismatch:
            return

        service = next((s for s in stack.services if s.id == job.service_id), None)
        if service is None:
            raise UpdateValidationError(f"Service {job.service_id} not found in stack {stack.name}")

        explicit = job.target_digest or job.target_tag
        if explicit and self.registry is not None:
            try:
                image = ImageReference.parse(service.image)
                manifest = await self.registry.get_manifest(image, explicit, self.host_platform)
            except (ImageReferenceError, RegistryError) as e:
                logger.warning(f"Could not verify platform of {service.image} -> {explicit}: {e}")
                return
            arch_match = compute_arch_match(self.host_platform, manifest.architectures)
            target = explicit
        elif not explicit and service.candidate is not None:
            arch_match = service.candidate.arch_match
            target = service.candidate.tag
        else:
            return

        if arch_match == ArchMatch.MISMATCH:
            raise UpdateValidationError(
                f"{target} is not built for {self.host_platform}; "
                f"set allow_arch_mismatch to update anyway"
            )

    async def run(self, job: UpdateJob) -> Dict:
        """
        Execute a job.

        Returns:
            {status, mode, stacks: [{stackId, status, summary, reason?}]}

        Raises:
            UpdateValidationError: unknown target or platform mismatch
        """
        stacks = self._resolve_stacks(job)
        if job.scope == UpdateScope.SERVICE:
            await self._check_service_platform(stacks[0], job)

        results = []
        status = UpdateStatus.SUCCESS
        for stack in stacks:
            try:
                outcome = await self.executor.execute(stack, job)
            except (CommandError, CommandTimeoutError) as e:
                logger.error(f"Update of stack {stack.name} aborted: {e}")
                outcome = UpdateOutcome.failure_result("command_failed", {"stack": stack.name, "error": str(e)})

            results.append({"stackId": stack.id, **outcome.to_dict()})
            if not outcome.success:
                status = outcome.status
                logger.warning(f"Stopping update job after stack {stack.name}: {outcome.status.value}")
                break

        return {"status": status.value, "mode": job.mode.value, "stacks": results}
