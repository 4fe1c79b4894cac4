"""
Self-upgrade supervisor for DockPilot

Upgrades the container running DockPilot itself, with persisted state,
health verification and rollback.
"""

from .self_upgrade import SelfUpgradeConflict, SelfUpgradeInvalidRequest, SelfUpgradeSupervisor
from .state_store import SelfUpgradeRequest, SelfUpgradeState, StateStore, SupervisorState

__all__ = [
    "SelfUpgradeConflict",
    "SelfUpgradeInvalidRequest",
    "SelfUpgradeSupervisor",
    "SelfUpgradeRequest",
    "SelfUpgradeState",
    "StateStore",
    "SupervisorState",
]
