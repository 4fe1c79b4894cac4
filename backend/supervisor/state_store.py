"""
Persisted self-upgrade state.

The state file is JSON with camelCase keys. It is the crash-recovery
boundary: every transition is written to a temporary file in the same
directory and renamed over the real path, so readers never see a partial
file.
"""

import enum
import logging
import os
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def utc_timestamp() -> str:
    """RFC 3339 timestamp, UTC, millisecond precision"""
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


class SupervisorState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ImageTarget(CamelModel):
    tag: str
    digest: Optional[str] = None


class Progress(CamelModel):
    step: str
    message: str


class LogEntry(CamelModel):
    ts: str
    level: str
    msg: str


class SelfUpgradeRequest(CamelModel):
    """POST body of a self-upgrade; mode is validated by the supervisor"""
    target: ImageTarget
    mode: str = "apply"
    rollback_on_failure: bool = False


class SelfUpgradeState(CamelModel):
    schema_version: int = SCHEMA_VERSION
    op_id: str = ""
    state: SupervisorState = SupervisorState.IDLE
    request: Optional[SelfUpgradeRequest] = None
    target: ImageTarget = Field(default_factory=lambda: ImageTarget(tag="latest"))
    previous: ImageTarget = Field(default_factory=lambda: ImageTarget(tag="unknown"))
    started_at: str = ""
    updated_at: str = ""
    progress: Progress = Field(default_factory=lambda: Progress(step="done", message="idle"))
    logs: List[LogEntry] = Field(default_factory=list)

    def log(self, level: str, msg: str) -> None:
        ts = utc_timestamp()
        self.logs.append(LogEntry(ts=ts, level=level, msg=msg))
        self.updated_at = ts

    def set_progress(self, step: str, message: str) -> None:
        self.progress = Progress(step=step, message=message)
        self.updated_at = utc_timestamp()

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


class StateStoreError(Exception):
    """State file exists but cannot be read or written"""
    pass


class StateStore:
    """
    Loads and atomically stores SelfUpgradeState at a fixed path.

    Usage:
        store = StateStore("/app/data/supervisor/self-upgrade.json")
        state = store.load()
        store.save(state)
    """

    def __init__(self, path: str):
        self.path = path

    @property
    def directory(self) -> str:
        return os.path.dirname(os.path.abspath(self.path))

    @property
    def temp_path(self) -> str:
        return os.path.join(self.directory, f".{os.path.basename(self.path)}.tmp")

    def load(self) -> SelfUpgradeState:
        """
        Read the state file; a missing file is a fresh idle state.

        Raises:
            StateStoreError: unreadable file or malformed JSON
        """
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                raw = f.read()
        except FileNotFoundError:
            logger.info(f"No self-upgrade state at {self.path}, starting idle")
            return SelfUpgradeState()
        except OSError as e:
            raise StateStoreError(f"Cannot read self-upgrade state {self.path}: {e}") from e

        try:
            return SelfUpgradeState.model_validate_json(raw)
        except ValidationError as e:
            raise StateStoreError(f"Malformed self-upgrade state {self.path}: {e}") from e

    def save(self, state: SelfUpgradeState) -> None:
        """
        Write to the temp path, fsync, then rename over the real path.

        The rename is the only operation touching the real path.
        """
        try:
            os.makedirs(self.directory, exist_ok=True)
            with open(self.temp_path, 'w', encoding='utf-8') as f:
                f.write(state.to_json())
                f.flush()
                os.fsync(f.fileno())
            os.replace(self.temp_path, self.path)
        except OSError as e:
            raise StateStoreError(f"Cannot write self-upgrade state {self.path}: {e}") from e
