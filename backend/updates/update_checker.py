"""
Update Checker Service

Check cycle: for every service in scope, list the registry's tags, pick an
upgrade candidate, resolve its digest for the host platform and store the
verdict. Verdicts are recomputed from scratch on every cycle.
"""

import logging
from typing import Dict, List, Optional, Tuple, TYPE_CHECKING

from updates.candidates import resolve_candidate
from updates.ignore_rules import IgnoreRuleMatcher, is_strict_semver
from updates.image_ref import ImageReference, ImageReferenceError
from updates.registry_adapter import RegistryAdapter, RegistryError, compute_arch_match
from updates.types import Candidate, ServiceTarget, StackTarget, UpdateScope

if TYPE_CHECKING:
    from database import DatabaseManager

logger = logging.getLogger(__name__)


class UpdateChecker:
    """
    Service that checks compose services for newer images.

    Workflow:
    1. Resolve the stacks in scope
    2. For each service:
       - Parse its image and load its ignore rules
       - List tags and pick a candidate (ignored tags only as a last resort)
       - Resolve current and candidate manifests for the host platform
       - Drop the candidate if it is the image already running
    3. Store the verdict
    """

    def __init__(self, db: 'DatabaseManager', registry: RegistryAdapter, host_platform: str):
        self.db = db
        self.registry = registry
        self.host_platform = host_platform

    def _stacks_in_scope(
        self,
        scope: UpdateScope,
        stack_id: Optional[int],
        service_id: Optional[int],
    ) -> List[StackTarget]:
        if scope == UpdateScope.ALL:
            return self.db.list_stack_targets()

        if scope == UpdateScope.SERVICE:
            stack_id = self.db.get_service_stack_id(service_id) if service_id is not None else None
        if stack_id is None:
            raise ValueError(f"Unknown {scope.value} for check")

        stack = self.db.get_stack_target(stack_id)
        if stack is None:
            raise ValueError(f"Stack {stack_id} not found")
        if scope == UpdateScope.SERVICE:
            stack.services = [s for s in stack.services if s.id == service_id]
        return [stack]

    async def check(
        self,
        scope: UpdateScope = UpdateScope.ALL,
        stack_id: Optional[int] = None,
        service_id: Optional[int] = None,
    ) -> Dict:
        """
        Run one check cycle.

        Returns:
            {hostPlatform, scope, stackIds, servicesChecked, servicesWithCandidate}

        Raises:
            ValueError: stack or service does not exist
        """
        stacks = self._stacks_in_scope(UpdateScope(scope), stack_id, service_id)
        checked = 0
        with_candidate = 0

        for stack in stacks:
            for service in stack.services:
                if service.archived:
                    continue
                result = await self.check_service(service)
                if result is None:
                    continue
                candidate, current_digest, ignore_match = result
                self.db.store_check_result(service.id, candidate, current_digest, ignore_match)
                checked += 1
                if candidate is not None:
                    with_candidate += 1

        logger.info(f"Check cycle finished: {checked} service(s) checked, {with_candidate} with a candidate")
        return {
            "hostPlatform": self.host_platform,
            "scope": UpdateScope(scope).value,
            "stackIds": [s.id for s in stacks],
            "servicesChecked": checked,
            "servicesWithCandidate": with_candidate,
        }

    async def check_service(
        self,
        service: ServiceTarget,
    ) -> Optional[Tuple[Optional[Candidate], Optional[str], Optional[Tuple[int, str]]]]:
        """
        Compute the verdict for one service.

        Returns:
            (candidate, current_digest, ignore_match) or None when the registry
            could not be queried (the previous verdict is kept)
        """
        try:
            image = ImageReference.parse(service.image)
        except ImageReferenceError as e:
            logger.warning(f"Skipping service {service.name}: {e}")
            return None

        if image.is_digest:
            logger.debug(f"Service {service.name} is pinned to a digest, nothing to compare")
            return None, image.reference, None

        matcher = IgnoreRuleMatcher(self.db.list_ignore_rules(service.id))

        try:
            tags = await self.registry.list_tags(image)
        except RegistryError as e:
            logger.warning(f"Could not list tags for {image.name}: {e}")
            return None

        current_digest = image.digest
        if current_digest is None and is_strict_semver(image.reference):
            # A moving tag's registry digest says nothing about what is running
            try:
                current = await self.registry.get_manifest(image, image.reference, self.host_platform)
                current_digest = current.digest
            except RegistryError as e:
                logger.warning(f"Could not resolve current manifest of {image}: {e}")

        candidate_tag = resolve_candidate(image.reference, tags, matcher.is_ignored)
        if not candidate_tag:
            return None, current_digest, None

        try:
            manifest = await self.registry.get_manifest(image, candidate_tag, self.host_platform)
            candidate = Candidate(
                tag=candidate_tag,
                digest=manifest.digest,
                arch_match=compute_arch_match(self.host_platform, manifest.architectures),
                architectures=manifest.architectures,
            )
        except RegistryError as e:
            logger.warning(f"Could not resolve manifest of {image.name}:{candidate_tag}: {e}")
            candidate = Candidate(tag=candidate_tag)

        if current_digest and candidate.digest == current_digest:
            logger.debug(f"{service.name}: {candidate_tag} is the image already running")
            return None, current_digest, None

        ignore_match = None
        rule = matcher.first_match(candidate_tag)
        if rule is not None:
            ignore_match = (rule.id, f"matched ignore rule for tag {candidate_tag}")

        logger.info(f"{service.name}: candidate {candidate_tag} ({candidate.arch_match.value})"
                    f"{' [ignored]' if ignore_match else ''}")
        return candidate, current_digest, ignore_match
