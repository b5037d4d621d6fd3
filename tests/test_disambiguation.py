"""Tests for disambiguation.py - the decision rule and follow-up selection."""
import random

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from config import DisambiguationConfig
from conftest import make_candidate
from disambiguation import REPHRASE_SUGGESTION, PendingSelection, decide
from errors import ValidationError
from models import EntityType, IntentOrigin, ResolutionState, RiskLevel


@pytest.mark.unit
class TestDecide:
    """Test the transition rule from scored candidates to a resolution state."""

    def test_clear_winner_low_risk_llm_resolves(self):
        """'I finished the login task': 0.93 vs 0.40, low risk."""
        decision = decide([make_candidate("t1", 0.93), make_candidate("t2", 0.40)], RiskLevel.LOW, IntentOrigin.LLM)
        assert decision.state is ResolutionState.RESOLVED
        assert decision.selected.id == "t1"
        assert [c.id for c in decision.candidates] == ["t1"]

    def test_close_scores_are_ambiguous(self):
        """'mark it done': 0.61 vs 0.58."""
        decision = decide([make_candidate("t1", 0.61), make_candidate("t2", 0.58)], RiskLevel.LOW, IntentOrigin.LLM)
        assert decision.state is ResolutionState.AMBIGUOUS
        assert [c.id for c in decision.candidates] == ["t1", "t2"]
        assert decision.selected is None

    def test_heuristic_origin_needs_confirmation(self):
        """A single strong candidate from the fallback parser still needs confirmation."""
        decision = decide([make_candidate("t1", 0.97)], RiskLevel.LOW, IntentOrigin.HEURISTIC)
        assert decision.state is ResolutionState.NEEDS_CONFIRMATION
        assert decision.selected.id == "t1"

    def test_high_risk_never_resolves(self):
        """'close sprint' at 0.95 with no competitor."""
        decision = decide([make_candidate("s1", 0.95, EntityType.SPRINT)], RiskLevel.HIGH, IntentOrigin.LLM)
        assert decision.state is ResolutionState.NEEDS_CONFIRMATION

    def test_medium_risk_never_resolves(self):
        decision = decide([make_candidate("s1", 0.99), make_candidate("s2", 0.1)], RiskLevel.MEDIUM, IntentOrigin.LLM)
        assert decision.state is not ResolutionState.RESOLVED

    def test_single_candidate_counts_second_as_zero(self):
        decision = decide([make_candidate("t1", 0.86)], RiskLevel.LOW, IntentOrigin.LLM)
        assert decision.state is ResolutionState.RESOLVED

    def test_high_top_with_small_margin_is_ambiguous(self):
        decision = decide([make_candidate("t1", 0.95), make_candidate("t2", 0.80)], RiskLevel.LOW, IntentOrigin.LLM)
        assert decision.state is ResolutionState.AMBIGUOUS

    def test_shortlist_capped_at_three(self):
        candidates = [make_candidate(f"t{i}", 0.6 - i * 0.01) for i in range(6)]
        decision = decide(candidates, RiskLevel.LOW, IntentOrigin.LLM)
        assert decision.state is ResolutionState.AMBIGUOUS
        assert len(decision.candidates) == 3

    def test_below_min_threshold_is_no_match(self):
        decision = decide([make_candidate("t1", 0.2), make_candidate("t2", 0.1)], RiskLevel.LOW, IntentOrigin.LLM)
        assert decision.state is ResolutionState.NO_MATCH
        assert decision.message == REPHRASE_SUGGESTION

    def test_no_candidates_is_no_match(self):
        assert decide([], RiskLevel.LOW, IntentOrigin.LLM).state is ResolutionState.NO_MATCH

    def test_only_one_viable_among_many(self):
        decision = decide([make_candidate("t1", 0.5), make_candidate("t2", 0.2)], RiskLevel.LOW, IntentOrigin.LLM)
        assert decision.state is ResolutionState.NEEDS_CONFIRMATION
        assert [c.id for c in decision.candidates] == ["t1"]

    def test_thresholds_from_config(self):
        strict = DisambiguationConfig(auto_accept_threshold=0.99)
        decision = decide([make_candidate("t1", 0.93)], RiskLevel.LOW, IntentOrigin.LLM, strict)
        assert decision.state is ResolutionState.NEEDS_CONFIRMATION

    def test_deterministic_regardless_of_input_order(self):
        candidates = [make_candidate("b", 0.6), make_candidate("a", 0.6), make_candidate("c", 0.55)]
        expected = decide(candidates, RiskLevel.LOW, IntentOrigin.LLM)
        rng = random.Random(7)
        for _ in range(20):
            shuffled = list(candidates)
            rng.shuffle(shuffled)
            decision = decide(shuffled, RiskLevel.LOW, IntentOrigin.LLM)
            assert decision.state is expected.state
            assert [c.id for c in decision.candidates] == ["a", "b", "c"]

    @pytest.mark.parametrize("top", [0.86, 0.9, 0.99, 1.0])
    @pytest.mark.parametrize("risk", list(RiskLevel))
    def test_heuristic_never_resolved(self, top, risk):
        decision = decide([make_candidate("t1", top)], risk, IntentOrigin.HEURISTIC)
        assert decision.state is not ResolutionState.RESOLVED


@pytest.mark.unit
class TestPendingSelection:
    """Test the follow-up transitions."""

    def ambiguous(self):
        return decide([make_candidate("t1", 0.61), make_candidate("t2", 0.58)], RiskLevel.LOW, IntentOrigin.LLM)

    def test_select_offered_candidate(self):
        pending = PendingSelection(self.ambiguous())
        selected = pending.select("t2")
        assert selected.id == "t2"
        assert pending.state is ResolutionState.USER_SELECTED
        assert pending.is_terminal

    def test_select_unknown_candidate(self):
        pending = PendingSelection(self.ambiguous())
        with pytest.raises(ValidationError):
            pending.select("t9")
        assert pending.state is ResolutionState.AMBIGUOUS

    def test_cancel(self):
        pending = PendingSelection(self.ambiguous())
        pending.cancel()
        assert pending.state is ResolutionState.CANCELLED
        with pytest.raises(ValidationError):
            pending.select("t1")

    def test_terminal_state_rejects_transitions(self):
        resolved = decide([make_candidate("t1", 0.93)], RiskLevel.LOW, IntentOrigin.LLM)
        pending = PendingSelection(resolved)
        with pytest.raises(ValidationError):
            pending.select("t1")
        with pytest.raises(ValidationError):
            pending.cancel()
