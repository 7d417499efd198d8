"""
Order lifecycle state machine.

    new -> preparing -> ready -> delivered
      \\        \\          \\
       +--------+----------+--> canceled

delivered and canceled are terminal.
"""
from typing import Dict, Tuple

NEW = 'new'
PREPARING = 'preparing'
READY = 'ready'
DELIVERED = 'delivered'
CANCELED = 'canceled'

ALL_STATES: Tuple[str, ...] = (NEW, PREPARING, READY, DELIVERED, CANCELED)

# Current state -> states it may move to
VALID_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    NEW: (PREPARING, CANCELED),
    PREPARING: (READY, CANCELED),
    READY: (DELIVERED, CANCELED),
    DELIVERED: (),
    CANCELED: (),
}

# Timestamp column stamped when an order enters the state
TIMESTAMP_FIELDS: Dict[str, str] = {
    PREPARING: 'prep_started_at',
    READY: 'ready_at',
    DELIVERED: 'delivered_at',
    CANCELED: 'canceled_at',
}

# Kitchen display ordering
KITCHEN_STATES: Tuple[str, ...] = (NEW, PREPARING)


def is_valid_transition(current_state: str, target_state: str) -> bool:
    """True if target_state is reachable from current_state in one step."""
    return target_state in VALID_TRANSITIONS.get(current_state, ())


def next_states(current_state: str) -> Tuple[str, ...]:
    return VALID_TRANSITIONS.get(current_state, ())


def is_terminal(state: str) -> bool:
    return state in VALID_TRANSITIONS and not VALID_TRANSITIONS[state]
