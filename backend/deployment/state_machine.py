"""
Deployment state machine for CodeDrop

Owns the allowed status transitions of a deployment record. The store
consults it before every status change, and refuses anything outside
the graph before any filesystem effect is attempted.

State Flow:
    pending -> deployed -> rolled_back
            |-> rejected
            |-> failed

Usage:
    sm = DeploymentStateMachine()

    # Check if transition is valid
    if sm.can_transition(record.status, 'deployed'):
        ...

    # Or raise StateError naming both states
    sm.require_transition(record.id, record.status, 'deployed')
"""

from typing import Dict, List
import logging

from .exceptions import StateError
from .models import DeploymentStatus

logger = logging.getLogger(__name__)


class DeploymentStateMachine:
    """
    State machine for deployment lifecycle management.

    Statuses only move forward along VALID_TRANSITIONS. The only way
    back from 'deployed' is an explicit rollback.
    """

    # Valid state transitions (from_state -> to_state)
    VALID_TRANSITIONS = {
        'pending': ['deployed', 'rejected', 'failed'],
        'deployed': ['rolled_back'],
        'rejected': [],  # Terminal state
        'rolled_back': [],  # Terminal state
        'failed': [],  # Terminal state
    }

    # Valid deployment states
    VALID_STATES = {status.value for status in DeploymentStatus}

    # Initial state on successful creation
    INITIAL_STATE = DeploymentStatus.PENDING.value

    # Audit-trail columns each target state may set alongside the status
    TRANSITION_FIELDS = {
        'deployed': {'reviewed_by', 'reviewed_at', 'deployed_at'},
        'rejected': {'reviewed_by', 'reviewed_at'},
        'failed': {'reviewed_by', 'reviewed_at', 'validation_result'},
        'rolled_back': {'rolled_back_at'},
    }

    def can_transition(self, from_state: str, to_state: str) -> bool:
        """
        Check if a state transition is valid.

        Args:
            from_state: Current deployment state
            to_state: Desired target state

        Returns:
            True if transition is allowed, False otherwise

        Examples:
            >>> sm = DeploymentStateMachine()
            >>> sm.can_transition('pending', 'deployed')
            True
            >>> sm.can_transition('rejected', 'deployed')
            False
            >>> sm.can_transition('pending', 'rolled_back')
            False
        """
        if from_state not in self.VALID_STATES:
            logger.warning(f"Invalid from_state: {from_state}")
            return False

        if to_state not in self.VALID_STATES:
            logger.warning(f"Invalid to_state: {to_state}")
            return False

        return to_state in self.VALID_TRANSITIONS.get(from_state, [])

    def require_transition(self, deployment_id: int, from_state: str, to_state: str) -> None:
        """
        Raise StateError unless from_state -> to_state is allowed.

        Raises:
            StateError: Naming both the current and the requested state
        """
        if not self.can_transition(from_state, to_state):
            logger.error(
                f"Invalid state transition for deployment {deployment_id}: "
                f"{from_state} -> {to_state}"
            )
            raise StateError(deployment_id, from_state, to_state)

    def allowed_fields(self, to_state: str) -> set:
        """Columns that may be written together with a transition to to_state"""
        return set(self.TRANSITION_FIELDS.get(to_state, set()))

    def validate_state(self, state: str) -> bool:
        """
        Validate that a state is a recognized deployment state.

        Examples:
            >>> sm = DeploymentStateMachine()
            >>> sm.validate_state('deployed')
            True
            >>> sm.validate_state('approved')
            False
        """
        return state in self.VALID_STATES

    def get_valid_next_states(self, current_state: str) -> List[str]:
        """
        Get list of valid states that can be transitioned to from current state.

        Examples:
            >>> sm = DeploymentStateMachine()
            >>> sm.get_valid_next_states('pending')
            ['deployed', 'rejected', 'failed']
            >>> sm.get_valid_next_states('rolled_back')
            []  # Terminal state
        """
        return list(self.VALID_TRANSITIONS.get(current_state, []))

    def describe(self) -> Dict[str, List[str]]:
        """Copy of the transition graph, for status/debug output"""
        return {state: list(targets) for state, targets in self.VALID_TRANSITIONS.items()}
