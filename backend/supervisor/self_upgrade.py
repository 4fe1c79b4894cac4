"""
Self-upgrade supervisor.

Runs pull / apply / health / rollback against this application's own
container, one operation at a time, with every transition persisted so a
restarted supervisor can tell that an operation was interrupted.

Concurrency:
    A single asyncio.Lock guards the in-memory state, the running key and
    every write of the state file. Background tasks take the lock only to
    read or mutate state, never around docker or HTTP calls, so status reads
    stay fast while a pull is in progress.
"""

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional, Set

import httpx

from config.settings import SupervisorSettings
from deployment.compose_client import ComposeOverrideError, ComposeProject, write_image_override
from supervisor.state_machine import SelfUpgradeStateMachine
from supervisor.state_store import (
    ImageTarget,
    SelfUpgradeRequest,
    SelfUpgradeState,
    StateStore,
    SupervisorState,
    utc_timestamp,
)
from supervisor.target_resolver import TargetResolutionError, TargetResolver, TargetRuntime
from updates.image_ref import normalize_digest
from utils.command_runner import CommandError, CommandRunner, CommandTimeoutError, run_checked
from utils.docker_cli import DockerCli, digest_for_repo, parse_repo_digests

logger = logging.getLogger(__name__)

VALID_MODES = ("apply", "dry-run")

PULL_TIMEOUT_SECONDS = 300
APPLY_TIMEOUT_SECONDS = 600
INSPECT_TIMEOUT_SECONDS = 10
HEALTH_TIMEOUT_SECONDS = 180
HEALTH_POLL_INTERVAL_SECONDS = 0.7
HEALTH_REQUEST_TIMEOUT_SECONDS = 0.8
VERSION_REQUEST_TIMEOUT_SECONDS = 2

OVERRIDE_FILE_NAME = "self-upgrade.override.yml"
INTERRUPTED_MESSAGE = "supervisor restarted; previous operation interrupted"


class SelfUpgradeConflict(Exception):
    """Another operation is running, or nothing to roll back to"""
    pass


class SelfUpgradeInvalidRequest(ValueError):
    """Request rejected before any state change"""
    pass


class StepFailed(Exception):
    """A pull / apply / health step failed"""

    def __init__(self, step: str, message: str):
        super().__init__(message)
        self.step = step
        self.message = message


@dataclass(frozen=True)
class StartKey:
    """Identity of a start request; equal keys replay the same operation"""
    tag: str
    digest: Optional[str]
    mode: str
    rollback_on_failure: bool

    @classmethod
    def from_request(cls, request: SelfUpgradeRequest) -> 'StartKey':
        return cls(
            tag=request.target.tag.strip(),
            digest=normalize_digest(request.target.digest),
            mode=request.mode,
            rollback_on_failure=request.rollback_on_failure,
        )


def rollback_image_ref(repo: str, previous: ImageTarget) -> str:
    """
    Image to return to after a failed upgrade; digest wins over tag.

    Raises:
        SelfUpgradeConflict: no digest and the tag is empty or "unknown"

    Examples:
        >>> rollback_image_ref("ghcr.io/a/b", ImageTarget(tag="1.2", digest="sha256:abc"))
        'ghcr.io/a/b@sha256:abc'
        >>> rollback_image_ref("ghcr.io/a/b", ImageTarget(tag="1.2"))
        'ghcr.io/a/b:1.2'
        >>> rollback_image_ref("ghcr.io/a/b", ImageTarget(tag="ghcr.io/a/b:1.2"))
        'ghcr.io/a/b:1.2'
    """
    digest = normalize_digest(previous.digest)
    if digest:
        return f"{repo}@{digest}"

    tag = (previous.tag or "").strip()
    if not tag or tag == "unknown":
        raise SelfUpgradeConflict("No previous image recorded; nothing to roll back to")

    # Already a full reference (recorded from the running container)
    if tag == repo or tag.startswith(f"{repo}:") or tag.startswith(f"{repo}@"):
        return tag
    if any(ch in tag for ch in "/:@"):
        return tag
    return f"{repo}:{tag}"


def target_image_ref(repo: str, target: ImageTarget) -> str:
    digest = normalize_digest(target.digest)
    if digest:
        return f"{repo}@{digest}"
    return f"{repo}:{target.tag.strip()}"


class SelfUpgradeSupervisor:
    """
    Single-flight self-upgrade operations with crash recovery.

    Usage:
        supervisor = SelfUpgradeSupervisor.create(settings, SubprocessCommandRunner())
        op_id = await supervisor.start(SelfUpgradeRequest(target=ImageTarget(tag="2.1.0")))
        state = await supervisor.get_state()
    """

    def __init__(
        self,
        settings: SupervisorSettings,
        runner: CommandRunner,
        store: StateStore,
        state: SelfUpgradeState,
        resolver: Optional[TargetResolver] = None,
        health_timeout: float = HEALTH_TIMEOUT_SECONDS,
        health_interval: float = HEALTH_POLL_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.runner = runner
        self.store = store
        self.resolver = resolver or TargetResolver(runner, settings)
        self.docker = DockerCli(binary=settings.docker_bin, env=settings.command_env())
        self.machine = SelfUpgradeStateMachine()
        self.health_timeout = health_timeout
        self.health_interval = health_interval
        self.clock = clock
        self.http_transport = http_transport

        self._state = state
        self._lock = asyncio.Lock()
        self._running_key: Optional[StartKey] = None
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def create(cls, settings: SupervisorSettings, runner: CommandRunner, **kwargs) -> 'SelfUpgradeSupervisor':
        """
        Load persisted state and recover an interrupted operation.

        Must run before any request is served.

        Raises:
            StateStoreError: state file unreadable or malformed
        """
        store = kwargs.pop('store', None) or StateStore(settings.state_path)
        state = store.load()
        if recover_interrupted(state):
            store.save(state)
        return cls(settings, runner, store, state, **kwargs)

    @property
    def override_path(self) -> str:
        return os.path.join(self.store.directory, OVERRIDE_FILE_NAME)

    # State access

    async def get_state(self) -> SelfUpgradeState:
        async with self._lock:
            return self._state.model_copy(deep=True)

    async def _mutate(self, op_id: str, mutate: Callable[[SelfUpgradeState], None]) -> bool:
        """Apply a change to the current operation and persist it"""
        async with self._lock:
            if self._state.op_id != op_id:
                logger.warning(f"Ignoring update for stale operation {op_id}")
                return False
            mutate(self._state)
            self._state.updated_at = utc_timestamp()
            self.store.save(self._state)
            if self._state.state != SupervisorState.RUNNING:
                self._running_key = None
            return True

    async def _progress(self, op_id: str, step: str, message: str, level: str = "INFO"):
        def apply(state: SelfUpgradeState):
            state.set_progress(step, message)
            state.log(level, message)
        logger.info(f"Self-upgrade {op_id}: [{step}] {message}")
        await self._mutate(op_id, apply)

    async def _finish(self, op_id: str, to_state: SupervisorState, step: str, message: str, level: str = "INFO"):
        def apply(state: SelfUpgradeState):
            self.machine.transition(state, to_state)
            state.set_progress(step, message)
            state.log(level, message)
        await self._mutate(op_id, apply)

    # Operations

    async def start(self, request: SelfUpgradeRequest) -> str:
        """
        Start an upgrade, or return the running operation for the same request.

        Raises:
            SelfUpgradeInvalidRequest: empty tag or unknown mode
            SelfUpgradeConflict: a different operation is running
        """
        if not request.target.tag or not request.target.tag.strip():
            raise SelfUpgradeInvalidRequest("target.tag must not be empty")
        if request.mode not in VALID_MODES:
            raise SelfUpgradeInvalidRequest(f"mode must be one of {', '.join(VALID_MODES)}")

        key = StartKey.from_request(request)

        async with self._lock:
            if self._state.state == SupervisorState.RUNNING:
                if self._running_key == key:
                    logger.info(f"Replaying running self-upgrade {self._state.op_id}")
                    return self._state.op_id
                raise SelfUpgradeConflict(f"Self-upgrade {self._state.op_id} is already running")

            op_id = f"sup_{uuid.uuid4().hex}"
            now = utc_timestamp()
            state = SelfUpgradeState(
                op_id=op_id,
                state=self._state.state,
                request=request.model_copy(deep=True),
                target=ImageTarget(tag=key.tag, digest=key.digest),
                started_at=now,
                updated_at=now,
            )
            self.machine.transition(state, SupervisorState.RUNNING)
            state.set_progress("precheck", "starting")
            state.log("INFO", f"self-upgrade requested: {key.tag}"
                              f"{' @ ' + key.digest if key.digest else ''} ({key.mode})")

            self.store.save(state)
            self._state = state
            self._running_key = key
            self._spawn(op_id, self._run_operation(op_id, request))

        logger.info(f"Started self-upgrade {op_id} to {key.tag} ({key.mode})")
        return op_id

    async def rollback(self, op_id: str) -> None:
        """
        Manually roll back the last operation.

        Raises:
            SelfUpgradeConflict: an operation is running, or no previous image
            SelfUpgradeInvalidRequest: op_id is not the stored operation
        """
        async with self._lock:
            if self._state.state == SupervisorState.RUNNING:
                raise SelfUpgradeConflict(f"Self-upgrade {self._state.op_id} is still running")
            if not op_id or op_id != self._state.op_id:
                raise SelfUpgradeInvalidRequest(f"Unknown operation {op_id!r}")
            previous = self._state.previous
            if not normalize_digest(previous.digest) and previous.tag in ("", "unknown"):
                raise SelfUpgradeConflict("No previous image recorded; nothing to roll back to")

            self.machine.transition(self._state, SupervisorState.RUNNING)
            self._state.set_progress("rollback", "manual rollback requested")
            self._state.log("WARN", "manual rollback requested")
            self.store.save(self._state)
            self._running_key = None
            self._spawn(op_id, self._run_rollback(op_id))

    def _spawn(self, op_id: str, coro) -> None:
        task = asyncio.create_task(self._guard(op_id, coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, op_id: str, coro) -> None:
        try:
            await coro
        except Exception as e:
            logger.error(f"Self-upgrade {op_id} crashed: {e}", exc_info=True)
            await self.mark_failed_if_running(op_id, f"internal error: {e}")

    async def mark_failed_if_running(self, op_id: str, message: str) -> None:
        def apply(state: SelfUpgradeState):
            if state.state == SupervisorState.RUNNING:
                self.machine.transition(state, SupervisorState.FAILED)
                state.set_progress(state.progress.step, message)
                state.log("ERROR", message)
        await self._mutate(op_id, apply)

    async def wait_idle(self) -> None:
        """Wait for background operations (used on shutdown and in tests)"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Execution

    async def _run_operation(self, op_id: str, request: SelfUpgradeRequest) -> None:
        repo = self.settings.target_image_repo
        image_ref = target_image_ref(repo, request.target)

        try:
            target = await self.resolver.resolve()
        except TargetResolutionError as e:
            await self._finish(op_id, SupervisorState.FAILED, "precheck", f"target resolution failed: {e}", "ERROR")
            return

        previous = ImageTarget(
            tag=target.current_image_ref or "unknown",
            digest=await self._repo_digest(target.current_image_id, repo),
        )

        def record_previous(state: SelfUpgradeState):
            state.previous = previous
            state.log("INFO", f"current image {previous.tag}"
                              f"{' (' + previous.digest + ')' if previous.digest else ''}")
        await self._mutate(op_id, record_previous)

        try:
            await self._progress(op_id, "pull", f"pulling {image_ref}")
            await self._run_step("pull", self.docker.pull(image_ref), PULL_TIMEOUT_SECONDS)

            if request.mode == "dry-run":
                await self._finish(op_id, SupervisorState.SUCCEEDED, "done", "dry-run completed")
                return

            await self._progress(op_id, "apply", f"re-creating {target.compose_service} with {image_ref}")
            await self._apply_image(target, image_ref)

            await self._progress(op_id, "wait_healthy", "waiting for health endpoint")
            healthy = await self._wait_healthy()
            if healthy is None:
                raise StepFailed("wait_healthy", f"not healthy within {self.health_timeout:g}s")
        except StepFailed as e:
            message = f"{e.step} failed: {e.message}"
            # A dry run never touched the running container
            if request.rollback_on_failure and request.mode == "apply":
                await self._begin_automatic_rollback(op_id, e.step, message)
            else:
                await self._finish(op_id, SupervisorState.FAILED, e.step, message, "ERROR")
            return

        await self._progress(op_id, "postcheck", "checking version")
        version = await self._fetch_version(healthy)
        message = f"upgraded to {image_ref}" + (f" (version {version})" if version else "")
        await self._finish(op_id, SupervisorState.SUCCEEDED, "done", message)

    async def _begin_automatic_rollback(self, op_id: str, step: str, message: str) -> None:
        """
        Record the failure and re-enter running for the rollback.

        Both hops happen in one update so the operation never leaves
        running and a replayed start still finds it.
        """
        def apply(state: SelfUpgradeState):
            self.machine.transition(state, SupervisorState.FAILED)
            state.set_progress(step, message)
            state.log("ERROR", message)
            self.machine.transition(state, SupervisorState.RUNNING)
            state.set_progress("rollback", "automatic rollback")
            state.log("WARN", "automatic rollback started")
        if await self._mutate(op_id, apply):
            await self._run_rollback(op_id)

    async def _run_rollback(self, op_id: str) -> None:
        state = await self.get_state()
        repo = self.settings.target_image_repo
        try:
            image_ref = rollback_image_ref(repo, state.previous)
        except SelfUpgradeConflict as e:
            await self._finish(op_id, SupervisorState.FAILED, "rollback", f"rollback failed: {e}", "ERROR")
            return

        try:
            await self._progress(op_id, "rollback", f"rolling back to {image_ref}")
            try:
                target = await self.resolver.resolve()
            except TargetResolutionError as e:
                raise StepFailed("rollback", f"target resolution failed: {e}")
            await self._apply_image(target, image_ref, step="rollback")
            healthy = await self._wait_healthy()
            if healthy is None:
                raise StepFailed("rollback", f"not healthy within {self.health_timeout:g}s")
        except StepFailed as e:
            await self._finish(op_id, SupervisorState.FAILED, "rollback", f"rollback failed: {e.message}", "ERROR")
            return

        await self._finish(op_id, SupervisorState.ROLLED_BACK, "done", f"rolled back to {image_ref}", "WARN")

    async def _run_step(self, step: str, spec, timeout: float) -> None:
        try:
            await run_checked(self.runner, spec, timeout)
        except (CommandError, CommandTimeoutError) as e:
            raise StepFailed(step, str(e)) from e

    async def _apply_image(self, target: TargetRuntime, image_ref: str, step: str = "apply") -> None:
        try:
            write_image_override(self.override_path, target.compose_service, image_ref)
        except ComposeOverrideError as e:
            raise StepFailed(step, str(e)) from e

        project = ComposeProject(
            binary=self.settings.compose_bin,
            files=list(target.compose_files),
            project_name=target.compose_project,
            env=self.settings.command_env(),
        )
        await self._run_step(
            step,
            project.up_force_pull(target.compose_service, [self.override_path]),
            APPLY_TIMEOUT_SECONDS,
        )

    async def _repo_digest(self, image_id: str, repo: str) -> Optional[str]:
        if not image_id:
            return None
        try:
            output = await run_checked(self.runner, self.docker.image_inspect_json(image_id), INSPECT_TIMEOUT_SECONDS)
            return digest_for_repo(parse_repo_digests(output.stdout), repo)
        except (CommandError, CommandTimeoutError, ValueError) as e:
            logger.warning(f"Could not read repo digest of {image_id[:19]}: {e}")
            return None

    async def _http_status(self, url: str, timeout: float) -> Optional[int]:
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.http_transport) as client:
                response = await client.get(url)
                return response.status_code
        except httpx.HTTPError as e:
            logger.debug(f"GET {url} failed: {e}")
            return None

    async def _wait_healthy(self) -> Optional[TargetRuntime]:
        """
        Poll /api/health until it answers 2xx or the deadline passes.

        The target is re-resolved on every poll; compose replaces the
        container and its address while this runs.
        """
        deadline = self.clock() + self.health_timeout
        while True:
            try:
                target = await self.resolver.resolve()
            except TargetResolutionError as e:
                logger.debug(f"Target not resolvable yet: {e}")
                target = None

            if target is not None:
                status = await self._http_status(f"{target.base_url}/api/health", HEALTH_REQUEST_TIMEOUT_SECONDS)
                if status is not None and 200 <= status < 300:
                    return target

            if self.clock() >= deadline:
                return None
            await asyncio.sleep(self.health_interval)

    async def _fetch_version(self, target: TargetRuntime) -> Optional[str]:
        """Best effort; a missing version never fails the upgrade"""
        url = f"{target.base_url}/api/version"
        try:
            timeout = VERSION_REQUEST_TIMEOUT_SECONDS
            async with httpx.AsyncClient(timeout=timeout, transport=self.http_transport) as client:
                response = await client.get(url)
                if response.status_code != 200:
                    return None
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Version fetch from {url} failed: {e}")
            return None
        if isinstance(data, dict):
            version = data.get("version")
            return str(version) if version else None
        return None


def recover_interrupted(state: SelfUpgradeState) -> bool:
    """
    Reclassify a persisted `running` state as `failed`.

    Returns True when the state was changed and must be written back.
    """
    if state.state != SupervisorState.RUNNING:
        return False

    logger.error(f"Self-upgrade {state.op_id} was interrupted by a restart")
    SelfUpgradeStateMachine().transition(state, SupervisorState.FAILED)
    state.set_progress("postcheck", INTERRUPTED_MESSAGE)
    state.log("ERROR", INTERRUPTED_MESSAGE)
    return True
