from enum import Enum


class Stage(str, Enum):
    INITIAL = "initial"
    AWAITING_BOOKING_DETAILS = "awaiting_booking_details"
    CONFIRMING_BOOKING = "confirming_booking"
    AWAITING_QUOTE_DETAILS = "awaiting_quote_details"
    CONFIRMING_QUOTE = "confirming_quote"
    AWAITING_PRODUCT_QUOTE_DETAILS = "awaiting_product_quote_details"
    CONFIRMING_PRODUCT_QUOTE = "confirming_product_quote"
    AWAITING_DEMO_DETAILS = "awaiting_demo_details"
    CONFIRMING_DEMO = "confirming_demo"
    AWAITING_PAYMENT = "awaiting_payment"
    PAYMENT_COMPLETED = "payment_completed"
    TRANSFERRED = "transferred"
    CLOSED = "closed"


AWAITING_STAGES = {
    Stage.AWAITING_BOOKING_DETAILS,
    Stage.AWAITING_QUOTE_DETAILS,
    Stage.AWAITING_PRODUCT_QUOTE_DETAILS,
    Stage.AWAITING_DEMO_DETAILS,
}

CONFIRMING_STAGES = {
    Stage.CONFIRMING_BOOKING,
    Stage.CONFIRMING_QUOTE,
    Stage.CONFIRMING_PRODUCT_QUOTE,
    Stage.CONFIRMING_DEMO,
}

# Stages that behave like a fresh conversation on the next turn.
RESTING_STAGES = {Stage.INITIAL, Stage.PAYMENT_COMPLETED, Stage.CLOSED}

_FLOW_PAIRS = {
    Stage.AWAITING_BOOKING_DETAILS: Stage.CONFIRMING_BOOKING,
    Stage.AWAITING_QUOTE_DETAILS: Stage.CONFIRMING_QUOTE,
    Stage.AWAITING_PRODUCT_QUOTE_DETAILS: Stage.CONFIRMING_PRODUCT_QUOTE,
    Stage.AWAITING_DEMO_DETAILS: Stage.CONFIRMING_DEMO,
}


def _build_transitions() -> dict[Stage, set[Stage]]:
    # Every stage may reset to initial (staleness, menu) or escalate to a human.
    table: dict[Stage, set[Stage]] = {stage: {Stage.INITIAL, Stage.TRANSFERRED} for stage in Stage}

    table[Stage.INITIAL] |= AWAITING_STAGES | CONFIRMING_STAGES | {Stage.AWAITING_PAYMENT}
    for awaiting, confirming in _FLOW_PAIRS.items():
        table[awaiting] |= {awaiting, confirming}
        table[confirming] |= {confirming, awaiting}
    table[Stage.CONFIRMING_BOOKING].add(Stage.AWAITING_PAYMENT)
    table[Stage.AWAITING_PAYMENT] |= {Stage.AWAITING_PAYMENT, Stage.PAYMENT_COMPLETED}
    table[Stage.TRANSFERRED] |= {Stage.CLOSED}
    table[Stage.CLOSED].discard(Stage.TRANSFERRED)
    table[Stage.CLOSED] |= {Stage.CLOSED}
    table[Stage.PAYMENT_COMPLETED] |= {Stage.PAYMENT_COMPLETED}
    return table


VALID_TRANSITIONS = _build_transitions()


class InvalidTransitionError(Exception):
    def __init__(self, from_stage: Stage, to_stage: Stage):
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__(f"Invalid transition: {from_stage.value} -> {to_stage.value}")


def can_transition(from_stage: Stage, to_stage: Stage) -> bool:
    return to_stage in VALID_TRANSITIONS.get(from_stage, set())


def transition(from_stage: Stage, to_stage: Stage) -> Stage:
    """Perform a stage transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_stage, to_stage):
        raise InvalidTransitionError(from_stage, to_stage)
    return to_stage


def confirming_stage_for(awaiting: Stage) -> Stage:
    return _FLOW_PAIRS[awaiting]


def awaiting_stage_for(confirming: Stage) -> Stage:
    for awaiting, paired in _FLOW_PAIRS.items():
        if paired == confirming:
            return awaiting
    raise KeyError(confirming)


def coerce_stage(value: str | None) -> Stage:
    """Map a persisted stage string to Stage, treating unknown values as initial."""
    try:
        return Stage(value)
    except ValueError:
        return Stage.INITIAL


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.FAILED: {PaymentStatus.COMPLETED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
    PaymentStatus.REFUNDED: set(),
}
