"""Disambiguation policy: a pure decision over scored candidates, plus the follow-up selection state machine."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from config import DisambiguationConfig
from errors import ValidationError
from models import EntityCandidate, IntentOrigin, ResolutionState, RiskLevel

REPHRASE_SUGGESTION = "I couldn't find a matching item. Try the exact title, or mention the story or sprint it belongs to."

TERMINAL_STATES = frozenset(
    {ResolutionState.RESOLVED, ResolutionState.NO_MATCH, ResolutionState.USER_SELECTED, ResolutionState.CANCELLED}
)


@dataclass(frozen=True)
class Disambiguation:
    state: ResolutionState
    candidates: List[EntityCandidate] = field(default_factory=list)
    selected: Optional[EntityCandidate] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "state": self.state.value,
            "candidates": [candidate.to_dict() for candidate in self.candidates],
            "selected_id": self.selected.id if self.selected else None,
            "message": self.message,
        }


def decide(
    candidates: Sequence[EntityCandidate],
    risk_level: RiskLevel,
    origin: IntentOrigin,
    config: Optional[DisambiguationConfig] = None,
) -> Disambiguation:
    """
    Evaluate the transition rule once for a request.

    Deterministic: the same candidates, risk level, origin and thresholds
    always yield the same state. Candidates are re-sorted by (score desc, id)
    so input order does not matter.
    """
    config = config or DisambiguationConfig()
    ranked = sorted(candidates, key=lambda c: (-c.final_score, c.id))
    if not ranked:
        return Disambiguation(ResolutionState.NO_MATCH, message=REPHRASE_SUGGESTION)

    top = ranked[0]
    second_score = ranked[1].final_score if len(ranked) > 1 else 0.0
    if (
        top.final_score - second_score >= config.margin_threshold
        and top.final_score >= config.auto_accept_threshold
        and risk_level is RiskLevel.LOW
        and origin is IntentOrigin.LLM
    ):
        return Disambiguation(ResolutionState.RESOLVED, candidates=[top], selected=top)

    viable = [candidate for candidate in ranked if candidate.final_score >= config.min_threshold]
    if len(viable) == 1:
        return Disambiguation(
            ResolutionState.NEEDS_CONFIRMATION,
            candidates=viable,
            selected=viable[0],
            message=f"Did you mean '{viable[0].title}'?",
        )
    if len(viable) >= 2:
        return Disambiguation(
            ResolutionState.AMBIGUOUS,
            candidates=viable[: config.shortlist_size],
            message="Several items match. Pick the one you meant.",
        )
    return Disambiguation(ResolutionState.NO_MATCH, message=REPHRASE_SUGGESTION)


class PendingSelection:
    """Follow-up transitions for a request awaiting the user's choice."""

    def __init__(self, decision: Disambiguation) -> None:
        self.state = decision.state
        self.candidates = list(decision.candidates)
        self.selected: Optional[EntityCandidate] = decision.selected

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def _require_open(self) -> None:
        if self.is_terminal:
            raise ValidationError(f"Selection already finished in state {self.state.value}")

    def select(self, candidate_id: str) -> EntityCandidate:
        self._require_open()
        for candidate in self.candidates:
            if candidate.id == candidate_id:
                self.state = ResolutionState.USER_SELECTED
                self.selected = candidate
                return candidate
        raise ValidationError(f"Candidate {candidate_id} was not offered for this request")

    def cancel(self) -> None:
        self._require_open()
        self.state = ResolutionState.CANCELLED
        self.selected = None
