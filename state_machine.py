"""
STATE MACHINE — Order Block lifecycle
======================================
Two views of the same lifecycle:

- Tagged variants ``Idle | Active | Pending | Open`` carried in SymbolState.
  Only one of them exists per symbol at a time, so an active block, a
  resting limit order and an open position can never coexist.

- Named phases (NONE, ACTIVE, MOVED_AWAY, LIMIT_PENDING, FILLED, ...) tracked
  by PhaseTracker, which validates every reported transition against
  LIFECYCLE_TRANSITIONS and keeps a history for telemetry.
"""

import threading
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Union

from order_block import FailedOBMemory, LimitOrder, OrderBlock
from position_manager import Position

logger = logging.getLogger(__name__)


# ============================================================================
# TAGGED VARIANTS
# ============================================================================

@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Active:
    ob: OrderBlock


@dataclass(frozen=True)
class Pending:
    order: LimitOrder


@dataclass(frozen=True)
class Open:
    position: Position


LifecycleState = Union[Idle, Active, Pending, Open]

NO_EXIT_BAR = -10 ** 9


@dataclass(frozen=True)
class SymbolState:
    """Everything the lifecycle carries between candles for one symbol."""
    lifecycle:     LifecycleState = field(default_factory=Idle)
    failed_obs:    FailedOBMemory = field(default_factory=FailedOBMemory)
    last_exit_bar: int = NO_EXIT_BAR

    @property
    def phase(self) -> str:
        if isinstance(self.lifecycle, Active):
            return PHASE_ACTIVE
        if isinstance(self.lifecycle, Pending):
            return PHASE_LIMIT_PENDING
        if isinstance(self.lifecycle, Open):
            return PHASE_FILLED
        return PHASE_NONE


# ============================================================================
# PHASES
# ============================================================================

PHASE_NONE            = "NONE"
PHASE_ACTIVE          = "ACTIVE"
PHASE_MOVED_AWAY      = "MOVED_AWAY"
PHASE_LIMIT_PENDING   = "LIMIT_PENDING"
PHASE_FILLED          = "FILLED"
PHASE_TIMED_OUT       = "TIMED_OUT"
PHASE_INVALIDATED     = "INVALIDATED"
PHASE_OB_ZONE_EXIT    = "OB_ZONE_EXIT"
PHASE_POSITION_CLOSED = "POSITION_CLOSED"

LIFECYCLE_TRANSITIONS: Dict[str, Set[str]] = {
    PHASE_NONE:            {PHASE_ACTIVE},
    PHASE_ACTIVE:          {PHASE_ACTIVE, PHASE_MOVED_AWAY, PHASE_INVALIDATED},
    PHASE_MOVED_AWAY:      {PHASE_LIMIT_PENDING},
    PHASE_LIMIT_PENDING:   {PHASE_FILLED, PHASE_TIMED_OUT, PHASE_OB_ZONE_EXIT},
    PHASE_FILLED:          {PHASE_POSITION_CLOSED},
    PHASE_TIMED_OUT:       {PHASE_NONE},
    PHASE_INVALIDATED:     {PHASE_NONE},
    PHASE_OB_ZONE_EXIT:    {PHASE_NONE},
    PHASE_POSITION_CLOSED: {PHASE_NONE},
}


class LifecycleTransitionError(ValueError):
    pass


@dataclass(frozen=True)
class StateTransition:
    """Record of a phase transition"""
    from_state: str
    to_state:   str
    bar_index:  int
    timestamp:  float
    reason:     Optional[str] = None


class PhaseTracker:
    """
    Thread-safe phase tracker for one symbol.

    Raises LifecycleTransitionError when the lifecycle reports a transition
    the table does not allow; the lifecycle never does so on valid input.
    """

    def __init__(self, name: str, history_limit: int = 500,
                 valid_transitions: Optional[Dict[str, Set[str]]] = None):
        self.name = name
        self._current_state = PHASE_NONE
        self._valid_transitions = valid_transitions or LIFECYCLE_TRANSITIONS
        self._history_limit = history_limit
        self._lock = threading.RLock()
        self._history: List[StateTransition] = []

    @property
    def current_state(self) -> str:
        with self._lock:
            return self._current_state

    def can_transition_to(self, new_state: str) -> bool:
        with self._lock:
            return new_state in self._valid_transitions.get(self._current_state, set())

    def transition(self, from_state: str, to_state: str, bar_index: int,
                   timestamp: float, reason: Optional[str] = None) -> StateTransition:
        with self._lock:
            if from_state != self._current_state or not self.can_transition_to(to_state):
                raise LifecycleTransitionError(
                    f"Invalid transition in '{self.name}': "
                    f"{from_state} -> {to_state} (current {self._current_state})")

            record = StateTransition(from_state, to_state, bar_index, timestamp, reason)
            self._current_state = to_state
            self._history.append(record)
            if len(self._history) > self._history_limit:
                del self._history[: len(self._history) - self._history_limit]

            logger.debug(
                f"[{self.name}] {from_state} -> {to_state} @bar {bar_index}"
                + (f" ({reason})" if reason else ""))
            return record

    def get_history(self, limit: Optional[int] = None) -> List[StateTransition]:
        with self._lock:
            if limit:
                return self._history[-limit:]
            return list(self._history)

    def reset(self) -> None:
        with self._lock:
            self._current_state = PHASE_NONE
            self._history.clear()
            logger.info(f"[{self.name}] Reset to state: {PHASE_NONE}")
