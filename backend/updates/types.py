"""
Shared types for update checks and update execution.

This module contains dataclasses and enums passed between the check cycle,
the job runner and UpdateExecutor.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ArchMatch(str, Enum):
    """Does a candidate image offer the host's platform?"""
    MATCH = "match"
    MISMATCH = "mismatch"
    UNKNOWN = "unknown"


class UpdateScope(str, Enum):
    SERVICE = "service"
    STACK = "stack"
    ALL = "all"


class UpdateMode(str, Enum):
    APPLY = "apply"
    DRY_RUN = "dry-run"


class UpdateStatus(str, Enum):
    SUCCESS = "success"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


@dataclass
class ManifestInfo:
    """Digest and platforms of one image reference"""
    digest: Optional[str] = None
    architectures: List[str] = field(default_factory=list)


@dataclass
class Candidate:
    """
    Proposed next version for a service.

    Recomputed from scratch on every check cycle.
    """
    tag: str
    digest: Optional[str] = None
    arch_match: ArchMatch = ArchMatch.UNKNOWN
    architectures: List[str] = field(default_factory=list)


@dataclass
class ServiceTarget:
    """
    A compose service as the executor sees it.

    image is the raw image string from the compose file (e.g. "nginx:1.25").
    """
    id: int
    name: str
    image: str
    archived: bool = False
    candidate: Optional[Candidate] = None
    ignore_matched: bool = False
    auto_rollback: bool = True


@dataclass
class StackTarget:
    """A compose project and the services it declares"""
    id: int
    name: str
    compose_files: List[str]
    project_name: Optional[str] = None
    env_file: Optional[str] = None
    services: List[ServiceTarget] = field(default_factory=list)


@dataclass
class UpdateJob:
    """
    One update request.

    Exists only for the duration of one execution.
    """
    scope: UpdateScope
    mode: UpdateMode = UpdateMode.APPLY
    stack_id: Optional[int] = None
    service_id: Optional[int] = None
    target_tag: Optional[str] = None
    target_digest: Optional[str] = None
    allow_arch_mismatch: bool = False

    @property
    def dry_run(self) -> bool:
        return self.mode == UpdateMode.DRY_RUN


@dataclass
class UpdateOutcome:
    """
    Terminal result of one update job.

    Expected failures (health check, rollback) are reported here rather than
    raised.
    """
    status: UpdateStatus
    summary: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == UpdateStatus.SUCCESS

    @classmethod
    def success_result(cls, summary: Dict[str, Any]) -> 'UpdateOutcome':
        return cls(status=UpdateStatus.SUCCESS, summary=summary)

    @classmethod
    def rolled_back_result(cls, summary: Dict[str, Any], reason: str) -> 'UpdateOutcome':
        return cls(status=UpdateStatus.ROLLED_BACK, summary=summary, reason=reason)

    @classmethod
    def failure_result(cls, reason: str, summary: Optional[Dict[str, Any]] = None) -> 'UpdateOutcome':
        return cls(status=UpdateStatus.FAILED, summary=summary or {}, reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        result = {"status": self.status.value, "summary": self.summary}
        if self.reason:
            result["reason"] = self.reason
        return result
