"""
Self-upgrade state machine

Validates state transitions of the persisted self-upgrade operation.

State Flow:
    idle -> running -> succeeded
                    |-> failed -> running (rollback or new start)
                    |-> rolled_back -> running (new start)
    succeeded -> running (new start or manual rollback)

A process start that finds `running` on disk moves it to `failed`; nothing
is resumed.

Usage:
    sm = SelfUpgradeStateMachine()

    if sm.can_transition(state.state, SupervisorState.RUNNING):
        sm.transition(state, SupervisorState.RUNNING)
"""

import logging

from supervisor.state_store import SelfUpgradeState, SupervisorState, utc_timestamp

logger = logging.getLogger(__name__)


class InvalidTransition(RuntimeError):
    pass


class SelfUpgradeStateMachine:
    """
    State machine for the self-upgrade lifecycle.

    Only `running` can end an operation; every other state can only start one.
    """

    VALID_TRANSITIONS = {
        SupervisorState.IDLE: [SupervisorState.RUNNING],
        SupervisorState.RUNNING: [SupervisorState.SUCCEEDED, SupervisorState.FAILED, SupervisorState.ROLLED_BACK],
        SupervisorState.SUCCEEDED: [SupervisorState.RUNNING],
        SupervisorState.FAILED: [SupervisorState.RUNNING],
        SupervisorState.ROLLED_BACK: [SupervisorState.RUNNING],
    }

    TERMINAL_STATES = {SupervisorState.SUCCEEDED, SupervisorState.FAILED, SupervisorState.ROLLED_BACK}

    def can_transition(self, from_state: SupervisorState, to_state: SupervisorState) -> bool:
        """
        Examples:
            >>> sm = SelfUpgradeStateMachine()
            >>> sm.can_transition(SupervisorState.IDLE, SupervisorState.RUNNING)
            True
            >>> sm.can_transition(SupervisorState.IDLE, SupervisorState.SUCCEEDED)
            False
        """
        return to_state in self.VALID_TRANSITIONS.get(from_state, [])

    def transition(self, state: SelfUpgradeState, to_state: SupervisorState) -> None:
        """
        Move the state object to to_state and stamp updated_at.

        Raises:
            InvalidTransition: transition not in VALID_TRANSITIONS
        """
        from_state = state.state
        if not self.can_transition(from_state, to_state):
            logger.error(f"Invalid self-upgrade transition for {state.op_id or '<none>'}: "
                         f"{from_state.value} -> {to_state.value}")
            raise InvalidTransition(f"{from_state.value} -> {to_state.value}")

        state.state = to_state
        state.updated_at = utc_timestamp()
        logger.info(f"Self-upgrade {state.op_id} transitioned: {from_state.value} -> {to_state.value}")

    def is_terminal(self, state: SupervisorState) -> bool:
        return state in self.TERMINAL_STATES
