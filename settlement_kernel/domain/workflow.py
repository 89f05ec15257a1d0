"""
Workflow state machines for penalties and withdrawals.

Pure value objects: the services ask ``can_transition`` before changing a
status and raise their own typed error when the answer is no.
"""

from __future__ import annotations

from dataclasses import dataclass

from settlement_kernel.domain.dtos import PenaltyStatus, WithdrawalStatus


@dataclass(frozen=True)
class Transition:
    from_state: str
    to_state: str
    action: str


@dataclass(frozen=True)
class Workflow:
    """A state machine definition; transitions reference only ``states``."""

    name: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.initial_state not in self.states:
            raise ValueError(f"{self.name}: initial state {self.initial_state!r} not in states")
        for t in self.transitions:
            if t.from_state not in self.states or t.to_state not in self.states:
                raise ValueError(f"{self.name}: transition {t.action!r} uses an unknown state")

    def can_transition(self, from_state: str, to_state: str) -> bool:
        return any(
            t.from_state == from_state and t.to_state == to_state for t in self.transitions
        )

    def is_terminal(self, state: str) -> bool:
        return state in self.terminal_states


PENALTY_WORKFLOW = Workflow(
    name="penalty_instance",
    initial_state=PenaltyStatus.PENDING.value,
    states=tuple(s.value for s in PenaltyStatus),
    transitions=(
        Transition("pending", "applied", action="collect"),
        Transition("pending", "disputed", action="dispute"),
        Transition("applied", "disputed", action="dispute"),
        Transition("disputed", "waived", action="waive"),
        Transition("disputed", "reversed", action="reverse"),
    ),
    terminal_states=("waived", "reversed"),
)

WITHDRAWAL_WORKFLOW = Workflow(
    name="withdrawal_request",
    initial_state=WithdrawalStatus.REQUESTED.value,
    states=tuple(s.value for s in WithdrawalStatus),
    transitions=(
        Transition("requested", "reserved", action="reserve"),
        Transition("reserved", "completed", action="complete"),
        Transition("reserved", "rejected", action="reject"),
    ),
    terminal_states=("completed", "rejected"),
)
