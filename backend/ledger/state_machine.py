"""
GENERIC STATE MACHINE UTILITY

A reusable state machine for immutable (frozen) pydantic entities with:
- Transition registration
- Transition validation
- Invalid transition rejection
- Status + history update returned as a new entity copy

Usage:
    payment_machine = StateMachine("transaction", status_field="payment_status")
    payment_machine.register("pending", "paid")
    payment_machine.register("paid", "refunded")

    paid_tx = payment_machine.transition(tx, "paid", actor_ref="emp-7")
"""

from typing import Any, Dict, List, Optional, Set, Tuple
from datetime import datetime
from enum import Enum
import logging

from pydantic import BaseModel

from ledger.errors import LedgerError

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class StateMachineError(LedgerError):
    """Base exception for state machine errors."""

    code = "STATE_MACHINE_ERROR"


class InvalidTransitionError(StateMachineError):
    """Raised when attempting an invalid state transition."""

    code = "INVALID_TRANSITION"

    def __init__(self, entity: str, from_state: str, to_state: str, allowed: List[str] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed or []

        allowed_str = f" Allowed transitions from '{from_state}': {self.allowed}" if self.allowed else \
            f" '{from_state}' is a terminal state."
        message = f"Invalid transition for {entity}: '{from_state}' -> '{to_state}'.{allowed_str}"
        super().__init__(
            message,
            details={"from_state": from_state, "to_state": to_state, "allowed": self.allowed}
        )


def _state_name(state: Any) -> str:
    return state.value if isinstance(state, Enum) else str(state)


# =============================================================================
# TRANSITION DEFINITION
# =============================================================================

class Transition:
    """Definition of a state transition."""

    def __init__(self, from_state: str, to_state: str, description: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        self.description = description

    def __repr__(self):
        return f"Transition({self.from_state} -> {self.to_state})"


# =============================================================================
# STATE MACHINE
# =============================================================================

class StateMachine:
    """
    Generic state machine for managing entity state transitions.

    Example:
        machine = StateMachine("transaction", status_field="payment_status")
        machine.register("pending", "paid")
        machine.register("pending", "failed")

        updated = machine.transition(tx, "paid")
    """

    def __init__(
        self,
        entity_name: str,
        status_field: str = "status",
        history_field: Optional[str] = "status_history"
    ):
        """
        Initialize state machine.

        Args:
            entity_name: Name of the entity (for logging/errors)
            status_field: Field name that holds current state
            history_field: Field name for transition history (None to disable)
        """
        self.entity_name = entity_name
        self.status_field = status_field
        self.history_field = history_field

        # Transitions indexed by (from_state, to_state)
        self._transitions: Dict[Tuple[str, str], Transition] = {}
        self._states: Set[str] = set()

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(self, from_state, to_state, description: str = "") -> "StateMachine":
        """Register a state transition. Returns self for chaining."""
        src, dst = _state_name(from_state), _state_name(to_state)
        key = (src, dst)

        if key in self._transitions:
            logger.warning(
                f"[STATE_MACHINE] Overwriting transition {self.entity_name}: "
                f"'{src}' -> '{dst}'"
            )

        self._transitions[key] = Transition(src, dst, description=description)
        self._states.add(src)
        self._states.add(dst)

        logger.debug(f"[STATE_MACHINE] Registered {self.entity_name}: '{src}' -> '{dst}'")
        return self

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def get_allowed_transitions(self, from_state) -> List[str]:
        """Get list of valid target states from a given state."""
        src = _state_name(from_state)
        return [dst for (s, dst) in self._transitions.keys() if s == src]

    def can_transition(self, from_state, to_state) -> bool:
        return (_state_name(from_state), _state_name(to_state)) in self._transitions

    def is_terminal(self, state) -> bool:
        """A state with no outgoing transitions."""
        return not self.get_allowed_transitions(state)

    def validate_transition(self, from_state, to_state) -> None:
        """
        Validate that a transition is registered.
        Raises InvalidTransitionError if not valid.
        """
        if not self.can_transition(from_state, to_state):
            raise InvalidTransitionError(
                entity=self.entity_name,
                from_state=_state_name(from_state),
                to_state=_state_name(to_state),
                allowed=self.get_allowed_transitions(from_state)
            )

    # =========================================================================
    # TRANSITION EXECUTION
    # =========================================================================

    def transition(self, entity: BaseModel, to_state, actor_ref: Optional[str] = None) -> BaseModel:
        """
        Return a copy of `entity` moved to `to_state`.

        The status field, updated_at and (if enabled) the history list are
        replaced; the input entity is left untouched.

        Raises:
            InvalidTransitionError: If transition not registered
        """
        from_state = getattr(entity, self.status_field, None)
        if from_state is None:
            raise StateMachineError(f"Entity missing status field: {self.status_field}")

        self.validate_transition(from_state, to_state)

        now = datetime.utcnow()
        target_type = type(from_state)
        new_state = target_type(_state_name(to_state)) if isinstance(from_state, Enum) else to_state

        update: Dict[str, Any] = {self.status_field: new_state, "updated_at": now}
        if self.history_field:
            history = list(getattr(entity, self.history_field, None) or [])
            history.append(self.get_history_entry(entity, from_state, new_state, now, actor_ref))
            update[self.history_field] = history

        logger.info(
            f"[STATE_MACHINE] {self.entity_name}: "
            f"'{_state_name(from_state)}' -> '{_state_name(to_state)}'"
        )
        return entity.model_copy(update=update)

    def get_history_entry(self, entity: BaseModel, from_state, to_state, at: datetime, actor_ref: Optional[str]):
        """
        Build one history entry. Uses the item type declared on the entity's
        history field when it is a model, a plain dict otherwise.
        """
        entry = {
            "from_state": from_state,
            "to_state": to_state,
            "transitioned_at": at,
            "transitioned_by": actor_ref
        }
        field = type(entity).model_fields.get(self.history_field)
        item_type = None
        if field is not None and getattr(field.annotation, "__args__", None):
            item_type = field.annotation.__args__[0]
        if isinstance(item_type, type) and issubclass(item_type, BaseModel):
            return item_type(**entry)
        return entry

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def get_states(self) -> List[str]:
        return sorted(self._states)

    def get_graph(self) -> Dict[str, List[str]]:
        """Get state graph as adjacency list."""
        graph = {state: [] for state in self._states}
        for (src, dst) in self._transitions.keys():
            graph[src].append(dst)
        return graph

    def __repr__(self):
        return (
            f"StateMachine({self.entity_name}, "
            f"states={len(self._states)}, "
            f"transitions={len(self._transitions)})"
        )
