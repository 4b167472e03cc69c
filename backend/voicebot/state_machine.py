"""
State machine for a single voice connection.
Validates transitions and runs lifecycle hooks.

States: IDLE → SESSION_BOUND → RECORDING → PROCESSING → SESSION_BOUND, CLOSED from anywhere
"""

import logging
from enum import Enum
from typing import Optional, Callable, Awaitable, Dict, Set
import time

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """
    Voice connection states.

    IDLE: Socket accepted, no conversation session bound
    SESSION_BOUND: Session verified, waiting for audio
    RECORDING: Accepting audio chunks
    PROCESSING: Transcription and turn pipeline in flight
    CLOSED: Socket closed or evicted (terminal)
    """
    IDLE = "IDLE"
    SESSION_BOUND = "SESSION_BOUND"
    RECORDING = "RECORDING"
    PROCESSING = "PROCESSING"
    CLOSED = "CLOSED"


class StateMachine:
    """
    Deterministic state machine for one voice connection.

    Invalid transitions are refused (logged, return False), never raised.
    """

    ALLOWED_TRANSITIONS: Dict[ConnectionState, Set[ConnectionState]] = {
        ConnectionState.IDLE: {
            ConnectionState.SESSION_BOUND,
            ConnectionState.CLOSED,
        },
        ConnectionState.SESSION_BOUND: {
            ConnectionState.SESSION_BOUND,  # Re-bind to another session
            ConnectionState.RECORDING,  # First audio chunk
            ConnectionState.CLOSED,
        },
        ConnectionState.RECORDING: {
            ConnectionState.PROCESSING,  # stop_recording
            ConnectionState.SESSION_BOUND,  # Re-bind discards the buffer
            ConnectionState.CLOSED,
        },
        ConnectionState.PROCESSING: {
            ConnectionState.SESSION_BOUND,  # Turn finished (success or error)
            ConnectionState.CLOSED,
        },
        ConnectionState.CLOSED: set(),
    }

    def __init__(self, initial_state: ConnectionState = ConnectionState.IDLE):
        """
        Initialize state machine.

        Args:
            initial_state: Starting state (default: IDLE)
        """
        self._current_state: ConnectionState = initial_state
        self._previous_state: Optional[ConnectionState] = None
        self._state_history: list[dict] = []

        self._on_enter_hooks: Dict[ConnectionState, list[Callable]] = {
            state: [] for state in ConnectionState
        }
        self._on_exit_hooks: Dict[ConnectionState, list[Callable]] = {
            state: [] for state in ConnectionState
        }
        self._on_transition_hooks: list[Callable] = []

        logger.debug(f"State machine initialized in state: {initial_state.value}")
        self._record_state_change(None, initial_state, "initialization")

    @property
    def current_state(self) -> ConnectionState:
        return self._current_state

    @property
    def previous_state(self) -> Optional[ConnectionState]:
        return self._previous_state

    @property
    def state_history(self) -> list[dict]:
        """Get state history for debugging."""
        return self._state_history.copy()

    @property
    def is_closed(self) -> bool:
        return self._current_state == ConnectionState.CLOSED

    def can_transition(self, to_state: ConnectionState) -> bool:
        """
        Check if transition to target state is allowed.

        Args:
            to_state: Target state

        Returns:
            True if transition is allowed, False otherwise
        """
        allowed = to_state in self.ALLOWED_TRANSITIONS.get(self._current_state, set())

        if not allowed:
            logger.warning(
                f"Invalid transition attempted: {self._current_state.value} → {to_state.value}"
            )

        return allowed

    async def transition(self, to_state: ConnectionState, reason: str = "") -> bool:
        """
        Transition to new state with validation and hooks.

        Args:
            to_state: Target state
            reason: Optional reason for transition (for logging)

        Returns:
            True if transition succeeded, False if not allowed
        """
        if not self.can_transition(to_state):
            return False

        from_state = self._current_state

        await self._execute_exit_hooks(from_state)

        self._previous_state = from_state
        self._current_state = to_state
        self._record_state_change(from_state, to_state, reason)

        log_msg = f"State transition: {from_state.value} → {to_state.value}"
        if reason:
            log_msg += f" (reason: {reason})"
        logger.debug(log_msg)

        await self._execute_enter_hooks(to_state)
        await self._execute_transition_hooks(from_state, to_state)

        return True

    def register_on_enter(
        self,
        state: ConnectionState,
        callback: Callable[[], Awaitable[None]]
    ) -> None:
        """Register callback to execute when entering a state."""
        self._on_enter_hooks[state].append(callback)

    def register_on_exit(
        self,
        state: ConnectionState,
        callback: Callable[[], Awaitable[None]]
    ) -> None:
        """Register callback to execute when exiting a state."""
        self._on_exit_hooks[state].append(callback)

    def register_on_transition(
        self,
        callback: Callable[[ConnectionState, ConnectionState], Awaitable[None]]
    ) -> None:
        """Register callback receiving (from_state, to_state) on any transition."""
        self._on_transition_hooks.append(callback)

    def _record_state_change(
        self,
        from_state: Optional[ConnectionState],
        to_state: ConnectionState,
        reason: str
    ) -> None:
        record = {
            "from_state": from_state.value if from_state else None,
            "to_state": to_state.value,
            "reason": reason,
            "timestamp": int(time.time() * 1000),
        }
        self._state_history.append(record)

    async def _execute_enter_hooks(self, state: ConnectionState) -> None:
        for callback in self._on_enter_hooks[state]:
            try:
                await callback()
            except Exception as e:
                logger.error(f"Error in on_enter hook for {state.value}: {e}", exc_info=True)

    async def _execute_exit_hooks(self, state: ConnectionState) -> None:
        for callback in self._on_exit_hooks[state]:
            try:
                await callback()
            except Exception as e:
                logger.error(f"Error in on_exit hook for {state.value}: {e}", exc_info=True)

    async def _execute_transition_hooks(
        self,
        from_state: ConnectionState,
        to_state: ConnectionState
    ) -> None:
        for callback in self._on_transition_hooks:
            try:
                await callback(from_state, to_state)
            except Exception as e:
                logger.error(f"Error in on_transition hook: {e}", exc_info=True)

    def get_allowed_transitions(self) -> Set[ConnectionState]:
        """Get all allowed transitions from current state."""
        return self.ALLOWED_TRANSITIONS.get(self._current_state, set()).copy()

    def __repr__(self) -> str:
        return (
            f"StateMachine(current={self._current_state.value}, "
            f"previous={self._previous_state.value if self._previous_state else None})"
        )
