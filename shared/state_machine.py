from enum import Enum
from typing import Optional, Callable, List, Tuple, Type
from dataclasses import dataclass


class TournamentState(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    FULL = "full"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TransactionState(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    """Payment status mirrored onto a team."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class MatchState(str, Enum):
    SCHEDULED = "scheduled"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TeamSize(str, Enum):
    SOLO = "solo"
    DUO = "duo"
    SQUAD = "squad"
    OTHER = "other"


TEAM_SIZE_PLAYERS = {
    TeamSize.SOLO: 1,
    TeamSize.DUO: 2,
    TeamSize.SQUAD: 4,
}


def required_team_size(team_size, custom_team_size: Optional[int] = None) -> int:
    """Number of players (captain included) a team must field."""
    size = TeamSize(team_size)
    if size == TeamSize.OTHER:
        if not custom_team_size or custom_team_size < 1:
            raise ValueError("custom_team_size is required when team_size is 'other'")
        return int(custom_team_size)
    return TEAM_SIZE_PLAYERS[size]


class TransitionError(Exception):
    def __init__(self, from_state: str, to_state: str, reason: str = None):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason or f"Cannot transition from {from_state} to {to_state}"
        super().__init__(self.reason)


@dataclass
class Transition:
    from_state: Enum
    to_state: Enum
    action: str
    guard: Optional[Callable] = None


class StateMachine:
    """Table driven state machine; subclasses provide STATES and TRANSITIONS."""

    STATES: Type[Enum] = None
    INITIAL = None
    TERMINAL: Tuple = ()
    TRANSITIONS: List[Transition] = []

    def __init__(self, initial_state=None):
        self._state = self.STATES(initial_state) if initial_state is not None else self.INITIAL
        self._history: List[tuple] = []

    @property
    def state(self):
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in self.TERMINAL

    @property
    def allowed_actions(self) -> List[str]:
        return [t.action for t in self.TRANSITIONS if t.from_state == self._state]

    def can_transition(self, action: str) -> bool:
        return self._find(action) is not None

    def can_reach(self, to_state) -> bool:
        to_state = self.STATES(to_state)
        return any(
            t.from_state == self._state and t.to_state == to_state
            for t in self.TRANSITIONS
        )

    def target_of(self, action: str):
        t = self._find(action)
        if t is None:
            raise TransitionError(
                self._state.value,
                "unknown",
                f"No valid transition for action '{action}' from state '{self._state.value}'"
            )
        return t.to_state

    def transition(self, action: str, guard_context: dict = None):
        t = self._find(action)
        if t is None:
            raise TransitionError(
                self._state.value,
                "unknown",
                f"No valid transition for action '{action}' from state '{self._state.value}'"
            )

        if t.guard is not None and not t.guard(guard_context or {}):
            raise TransitionError(
                self._state.value,
                t.to_state.value,
                f"Guard condition failed for action '{action}'"
            )

        old_state = self._state
        self._state = t.to_state
        self._history.append((old_state, action, self._state))
        return self._state

    def get_history(self) -> List[tuple]:
        return self._history.copy()

    def _find(self, action: str) -> Optional[Transition]:
        for t in self.TRANSITIONS:
            if t.from_state == self._state and t.action == action:
                return t
        return None

    @classmethod
    def from_state_string(cls, state_str: str) -> "StateMachine":
        """Build a machine from a stored value; unknown values are rejected."""
        try:
            state = cls.STATES(state_str)
        except ValueError:
            raise TransitionError(
                str(state_str), "unknown", f"Unknown {cls.STATES.__name__} value '{state_str}'"
            )
        return cls(initial_state=state)


def required_fields_guard(context: dict) -> bool:
    """Publish guard: the tournament must carry no validation errors."""
    return not context.get("errors")


class TournamentStateMachine(StateMachine):
    STATES = TournamentState
    INITIAL = TournamentState.DRAFT
    TERMINAL = (TournamentState.COMPLETED, TournamentState.CANCELLED)

    TRANSITIONS = [
        Transition(TournamentState.DRAFT, TournamentState.OPEN, "publish", required_fields_guard),
        Transition(TournamentState.OPEN, TournamentState.FULL, "fill"),
        Transition(TournamentState.OPEN, TournamentState.ONGOING, "start"),
        Transition(TournamentState.FULL, TournamentState.ONGOING, "start"),
        Transition(TournamentState.ONGOING, TournamentState.COMPLETED, "complete"),
        Transition(TournamentState.DRAFT, TournamentState.CANCELLED, "cancel"),
        Transition(TournamentState.OPEN, TournamentState.CANCELLED, "cancel"),
        Transition(TournamentState.FULL, TournamentState.CANCELLED, "cancel"),
        Transition(TournamentState.ONGOING, TournamentState.CANCELLED, "cancel"),
    ]

    @property
    def accepts_registrations(self) -> bool:
        return self._state == TournamentState.OPEN

    @classmethod
    def sources_of(cls, action: str) -> List[TournamentState]:
        """States from which ``action`` may fire; used to build conditional updates."""
        return [t.from_state for t in cls.TRANSITIONS if t.action == action]


class TransactionStateMachine(StateMachine):
    STATES = TransactionState
    INITIAL = TransactionState.PENDING
    TERMINAL = (TransactionState.SUCCESS, TransactionState.FAILED, TransactionState.REFUNDED)

    TRANSITIONS = [
        Transition(TransactionState.PENDING, TransactionState.SUCCESS, "succeed"),
        Transition(TransactionState.PENDING, TransactionState.FAILED, "fail"),
        Transition(TransactionState.SUCCESS, TransactionState.REFUNDED, "refund"),
    ]



class MatchStateMachine(StateMachine):
    STATES = MatchState
    INITIAL = MatchState.SCHEDULED
    TERMINAL = (MatchState.COMPLETED, MatchState.CANCELLED)

    TRANSITIONS = [
        Transition(MatchState.SCHEDULED, MatchState.ONGOING, "start"),
        Transition(MatchState.SCHEDULED, MatchState.COMPLETED, "complete"),
        Transition(MatchState.ONGOING, MatchState.COMPLETED, "complete"),
        Transition(MatchState.SCHEDULED, MatchState.CANCELLED, "cancel"),
        Transition(MatchState.ONGOING, MatchState.CANCELLED, "cancel"),
    ]

    ACTION_FOR_STATE = {
        MatchState.ONGOING: "start",
        MatchState.COMPLETED: "complete",
        MatchState.CANCELLED: "cancel",
    }


TEAM_PAYMENT_FOR_TRANSACTION = {
    TransactionState.PENDING: PaymentStatus.PENDING,
    TransactionState.SUCCESS: PaymentStatus.COMPLETED,
    TransactionState.FAILED: PaymentStatus.FAILED,
    TransactionState.REFUNDED: PaymentStatus.REFUNDED,
}
