"""Interpret and act use cases wiring parser, resolver, policy, validator and orchestrator together."""
from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from action_validator import CURRENT_SPRINT_WORDS, ActionValidator
from candidate_resolver import CandidateResolver
from config import AppConfig
from disambiguation import REPHRASE_SUGGESTION, Disambiguation, PendingSelection, decide
from errors import InterpretNotFound, NoMatchFound, TenantIsolationViolation, ValidationError
from history_store import HistoryStore, InMemoryHistoryStore, SqlHistoryStore
from intent_parser import SLOT_NAMES, parse_intent
from logging_utils import log_security_event, logger
from metrics import RequestMetrics
from models import (
    ActionDraft,
    ActionType,
    ActResult,
    AuditEntry,
    EntityCandidate,
    EntityType,
    EntryKind,
    IntentParseFailed,
    IntentType,
    ParsedIntent,
    ResolutionState,
    RiskLevel,
    TenantContext,
    Utterance,
    new_id,
)
from orchestrator import ActionOrchestrator
from policy import ActionPolicy, load_policy
from ports import Ports, create_http_ports
from query_answerer import Answer, QueryAnswerer
from rate_limiter import ACT, INTERPRET, RateLimiter, SqlBucketStore
from retrieval import Embedder, RetrievalClient, create_embedder, match_text
from sqlalchemy.engine import Engine
from storage import create_all_tables, create_db_engine, create_session_factory

PARSE_FAILED_MESSAGE = "I couldn't tell what you want to do. Try something like 'I finished the login task'."
AUTO_EXECUTE_THROTTLED = "Auto-execution is paused because you hit the action rate limit. Confirm to run it."
NO_SPRINT_MESSAGE = "Which sprint? Name it, or set an active sprint for your team first."


@dataclass
class InterpretOutcome:
    interpret_id: str
    correlation_id: str
    state: ResolutionState
    parsed_intent: Optional[ParsedIntent] = None
    candidates: List[EntityCandidate] = field(default_factory=list)
    draft: Optional[ActionDraft] = None
    act_result: Optional[ActResult] = None
    answer: Optional[Answer] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interpret_id": self.interpret_id,
            "correlation_id": self.correlation_id,
            "state": self.state.value,
            "parsed_intent": self.parsed_intent.to_dict() if self.parsed_intent else None,
            "candidates": [candidate.to_dict() for candidate in self.candidates],
            "draft": self.draft.to_dict() if self.draft else None,
            "act_result": self.act_result.to_dict() if self.act_result else None,
            "answer": self.answer.to_dict() if self.answer else None,
            "message": self.message,
        }


@dataclass(frozen=True)
class ActionCommand:
    """The user's confirmation: which candidate, which action, optional slot corrections."""

    interpret_id: str
    selected_candidate_id: str
    action_type: ActionType
    parameters: Dict[str, Any] = field(default_factory=dict)
    confirmed: bool = True


class AssistantService:
    def __init__(
        self,
        config: AppConfig,
        rate_limiter: RateLimiter,
        resolver: CandidateResolver,
        validator: ActionValidator,
        orchestrator: ActionOrchestrator,
        history: HistoryStore,
        policy: Optional[ActionPolicy] = None,
        llm_client: Any = None,
        engine: Optional[Engine] = None,
        answerer: Optional[QueryAnswerer] = None,
    ) -> None:
        self.config = config
        self.rate_limiter = rate_limiter
        self.resolver = resolver
        self.validator = validator
        self.orchestrator = orchestrator
        self.history = history
        self.policy = policy or validator.policy
        self.llm_client = llm_client
        self.engine = engine
        self.answerer = answerer or QueryAnswerer(validator.ports)
        self._pool = ThreadPoolExecutor(max_workers=config.orchestrator.max_workers, thread_name_prefix="interpret")

    @property
    def retrieval(self) -> RetrievalClient:
        return self.resolver.retrieval

    @property
    def ports(self) -> Ports:
        return self.validator.ports

    def interpret(self, utterance: Utterance, tenant_context: TenantContext) -> InterpretOutcome:
        """
        Parse, resolve and decide for one utterance; auto-execute when Resolved.

        The LLM parse and a speculative retrieval over the whole utterance run
        concurrently. The parsed target slot, when present, is resolved again.
        """
        _require_same_tenant(utterance.tenant_id, tenant_context)
        metrics = RequestMetrics("interpret")
        deadline = time.monotonic() + self.config.orchestrator.request_timeout
        self.rate_limiter.check(tenant_context.user_id, INTERPRET)
        interpret_id = new_id()

        parse_future = self._pool.submit(
            parse_intent, utterance, tenant_context, metrics, self.llm_client, self.config.llm, deadline
        )
        speculative_future = self._pool.submit(
            self.resolver.resolve, utterance.text, tenant_context.tenant_id, tenant_context.entity_type_hint
        )
        parsed = parse_future.result()
        try:
            speculative = speculative_future.result(timeout=max(0.0, deadline - time.monotonic()))
        except FutureTimeoutError:
            speculative = []

        if isinstance(parsed, IntentParseFailed):
            outcome = InterpretOutcome(
                interpret_id, metrics.correlation_id, ResolutionState.NO_MATCH, message=PARSE_FAILED_MESSAGE
            )
            self._record_interpret(outcome, utterance, tenant_context, parse_failure=parsed)
            return self._finish(outcome, metrics)

        if self.policy.is_read_only(parsed.type):
            outcome = self._answer(interpret_id, parsed, speculative, tenant_context, metrics)
            self._record_interpret(outcome, utterance, tenant_context)
            return self._finish(outcome, metrics)

        action_type = self.policy.action_for(parsed.type)
        candidates = self._candidates(parsed, speculative, self.policy.target_types(action_type), tenant_context, metrics)

        risk_level = self.policy.risk_for(action_type)
        metrics.risk_level = risk_level.value
        decision = decide(candidates, risk_level, parsed.origin, self.config.disambiguation)
        outcome = InterpretOutcome(
            interpret_id,
            metrics.correlation_id,
            decision.state,
            parsed_intent=parsed,
            candidates=decision.candidates,
            message=decision.message,
        )

        if decision.selected is not None:
            self._draft_and_maybe_execute(outcome, decision, parsed, tenant_context, metrics)

        self._record_interpret(outcome, utterance, tenant_context)
        return self._finish(outcome, metrics)

    def _candidates(
        self,
        parsed: ParsedIntent,
        speculative: List[EntityCandidate],
        allowed: Tuple[EntityType, ...],
        tenant_context: TenantContext,
        metrics: RequestMetrics,
    ) -> List[EntityCandidate]:
        hint = tenant_context.entity_type_hint if tenant_context.entity_type_hint in allowed else None
        if hint is None and len(allowed) == 1:
            hint = allowed[0]

        target = parsed.slots.get("target")
        if target:
            candidates = self.resolver.resolve(target, tenant_context.tenant_id, hint, metrics)
        else:
            candidates = speculative
        return [candidate for candidate in candidates if candidate.entity_type in allowed]

    def _answer(
        self,
        interpret_id: str,
        parsed: ParsedIntent,
        speculative: List[EntityCandidate],
        tenant_context: TenantContext,
        metrics: RequestMetrics,
    ) -> InterpretOutcome:
        """Look up the answer to a question. Nothing is drafted or executed."""
        outcome = InterpretOutcome(interpret_id, metrics.correlation_id, ResolutionState.NO_MATCH, parsed_intent=parsed)
        try:
            if parsed.type is IntentType.GENERATE_REPORT:
                sprint = self._report_sprint(parsed, tenant_context, metrics)
                if sprint is None:
                    outcome.message = NO_SPRINT_MESSAGE
                    return outcome
                sprint_id, outcome.candidates = sprint
                outcome.answer = self.answerer.sprint_report(sprint_id, tenant_context)
            else:
                candidates = self._candidates(
                    parsed, speculative, self.policy.query_types(parsed.type), tenant_context, metrics
                )
                if parsed.type is IntentType.QUERY_STATUS:
                    decision = decide(candidates, RiskLevel.LOW, parsed.origin, self.config.disambiguation)
                    shown, message = decision.candidates, decision.message
                else:
                    min_score = self.config.disambiguation.min_threshold
                    shown, message = [c for c in candidates if c.final_score >= min_score], REPHRASE_SUGGESTION
                if not shown:
                    outcome.message = message
                    return outcome
                outcome.candidates = shown
                if parsed.type is IntentType.QUERY_STATUS:
                    outcome.answer = self.answerer.status(shown, tenant_context)
                else:
                    outcome.answer = self.answerer.search(shown, tenant_context)
        except ValidationError as exc:
            outcome.message = exc.message
            return outcome

        outcome.state = ResolutionState.RESOLVED
        outcome.message = outcome.answer.summary
        return outcome

    def _report_sprint(
        self, parsed: ParsedIntent, tenant_context: TenantContext, metrics: RequestMetrics
    ) -> Optional[Tuple[str, List[EntityCandidate]]]:
        """The sprint a report is about: the active one unless another is named."""
        reference = parsed.slots.get("sprint") or parsed.slots.get("target") or ""
        words = set(match_text(reference).split())
        if not words or words <= set(CURRENT_SPRINT_WORDS):
            if not tenant_context.active_sprint_id:
                return None
            return tenant_context.active_sprint_id, []

        candidates = self.resolver.resolve(reference, tenant_context.tenant_id, EntityType.SPRINT, metrics)
        min_score = self.config.disambiguation.min_threshold
        viable = [c for c in candidates if c.entity_type is EntityType.SPRINT and c.final_score >= min_score]
        if not viable:
            return None
        return viable[0].id, viable[:1]

    def _draft_and_maybe_execute(
        self,
        outcome: InterpretOutcome,
        decision: Disambiguation,
        parsed: ParsedIntent,
        tenant_context: TenantContext,
        metrics: RequestMetrics,
    ) -> None:
        try:
            outcome.draft = self.validator.build_draft(parsed, decision.selected, tenant_context)
        except ValidationError as exc:
            outcome.message = exc.message
            if outcome.state is ResolutionState.RESOLVED:
                outcome.state = ResolutionState.NEEDS_CONFIRMATION
            return

        if outcome.state is not ResolutionState.RESOLVED:
            return
        if not self.rate_limiter.try_consume(tenant_context.user_id, ACT).allowed:
            outcome.state = ResolutionState.NEEDS_CONFIRMATION
            outcome.message = AUTO_EXECUTE_THROTTLED
            return
        outcome.act_result = self.orchestrator.execute(
            outcome.draft,
            f"auto:{outcome.interpret_id}",
            tenant_context,
            interpret_id=outcome.interpret_id,
            state=ResolutionState.RESOLVED,
            metrics=metrics,
        )

    def _record_interpret(
        self,
        outcome: InterpretOutcome,
        utterance: Utterance,
        tenant_context: TenantContext,
        parse_failure: Optional[IntentParseFailed] = None,
    ) -> None:
        if parse_failure is not None:
            parsed_intent = {"failed": parse_failure.reason, "stage": parse_failure.stage}
        else:
            parsed_intent = outcome.parsed_intent.to_dict() if outcome.parsed_intent else None
        selected = outcome.draft.target_entity_id if outcome.draft else None
        self.history.append(
            AuditEntry(
                id=outcome.interpret_id,
                tenant_id=tenant_context.tenant_id,
                user_id=tenant_context.user_id,
                kind=EntryKind.INTERPRET,
                utterance_hash=utterance.content_hash,
                parsed_intent=parsed_intent,
                candidates=[candidate.to_dict() for candidate in outcome.candidates],
                chosen_candidate_id=selected,
                state=outcome.state.value,
                action=outcome.draft.to_dict() if outcome.draft else None,
                action_result=outcome.act_result.to_dict() if outcome.act_result else None,
                note=outcome.answer.summary[:500] if outcome.answer else None,
            )
        )

    @staticmethod
    def _finish(outcome: InterpretOutcome, metrics: RequestMetrics) -> InterpretOutcome:
        metrics.resolution_state = outcome.state.value
        logger.info("Interpret completed", extra={"extra": metrics.finalize()})
        return outcome

    def act(self, command: ActionCommand, idempotency_key: str, tenant_context: TenantContext) -> ActResult:
        """
        Execute a confirmed action for a candidate offered by an earlier interpret call.

        The draft is rebuilt server side from the recorded intent; only the
        selected id, the action type and known slot values come from the client.
        """
        metrics = RequestMetrics("act")
        if not idempotency_key or not idempotency_key.strip():
            raise ValidationError("An idempotency key is required")
        replayed = self.orchestrator.replay(tenant_context.tenant_id, idempotency_key)
        if replayed is not None:
            return replayed

        self.rate_limiter.check(tenant_context.user_id, ACT)
        if not command.confirmed:
            raise ValidationError("The action must be confirmed before it runs")

        entry = self._interpret_entry(command.interpret_id, tenant_context)
        linked = self.history.find_linked(tenant_context.tenant_id, command.interpret_id)
        if any(e.kind is EntryKind.DISMISSAL for e in linked):
            raise ValidationError("This request was dismissed")
        if command.selected_candidate_id not in entry.candidate_ids:
            raise NoMatchFound(f"Item {command.selected_candidate_id} was not offered for this request")

        offered = [EntityCandidate.from_dict(candidate) for candidate in entry.candidates]
        pending = PendingSelection(Disambiguation(ResolutionState(entry.state), candidates=offered))
        selected = pending.select(command.selected_candidate_id)

        recorded = ParsedIntent.from_dict(entry.parsed_intent or {})
        overrides = {key: value for key, value in command.parameters.items() if key in SLOT_NAMES}
        intent = ParsedIntent(
            type=recorded.type,
            slots={**recorded.slots, **overrides},
            source_confidence=recorded.source_confidence,
            origin=recorded.origin,
        )
        draft = self.validator.build_draft(intent, selected, tenant_context)
        if draft.action_type is not command.action_type:
            raise ValidationError(
                f"Confirmed action '{command.action_type.value}' does not match '{draft.action_type.value}'"
            )

        result = self.orchestrator.execute(
            draft,
            idempotency_key,
            tenant_context,
            interpret_id=command.interpret_id,
            state=pending.state,
            metrics=metrics,
        )
        logger.info("Act completed", extra={"extra": metrics.finalize()})
        return result

    def dismiss(self, interpret_id: str, tenant_context: TenantContext, reason: Optional[str] = None) -> AuditEntry:
        """Record that the user cancelled a pending request. No side effects beyond the audit entry."""
        entry = self._interpret_entry(interpret_id, tenant_context)
        linked = self.history.find_linked(tenant_context.tenant_id, interpret_id)
        for existing in linked:
            if existing.kind is EntryKind.DISMISSAL:
                return existing
            if existing.kind is EntryKind.ACT:
                raise ValidationError("This request was already executed")
        if entry.state not in (ResolutionState.NEEDS_CONFIRMATION.value, ResolutionState.AMBIGUOUS.value):
            raise ValidationError(f"A request in state {entry.state} cannot be dismissed")

        dismissal = AuditEntry(
            tenant_id=tenant_context.tenant_id,
            user_id=tenant_context.user_id,
            kind=EntryKind.DISMISSAL,
            utterance_hash=entry.utterance_hash,
            parsed_intent=entry.parsed_intent,
            candidates=entry.candidates,
            state=ResolutionState.CANCELLED.value,
            interpret_id=interpret_id,
            note=(reason or "")[:500] or None,
        )
        self.history.append(dismissal)
        logger.info("Interpret dismissed", extra={"extra": {"tenant_id": tenant_context.tenant_id, "interpret_id": interpret_id}})
        return dismissal

    def history_for(self, tenant_context: TenantContext, limit: int = 50, kind: Optional[EntryKind] = None) -> List[AuditEntry]:
        return self.history.recent(tenant_context.tenant_id, limit=limit, kind=kind)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=True)
        self.orchestrator.shutdown()
        self.retrieval.close()

    def _interpret_entry(self, interpret_id: str, tenant_context: TenantContext) -> AuditEntry:
        entry = self.history.get(tenant_context.tenant_id, interpret_id)
        if entry is None or entry.kind is not EntryKind.INTERPRET:
            raise InterpretNotFound(f"No interpret request {interpret_id}")
        return entry


def _require_same_tenant(tenant_id: str, tenant_context: TenantContext) -> None:
    if not tenant_context.tenant_id or not tenant_context.tenant_id.strip():
        log_security_event("Request without tenant scope", {"user_id": tenant_context.user_id})
        raise TenantIsolationViolation("A tenant id is required")
    if tenant_id != tenant_context.tenant_id:
        log_security_event(
            "Utterance tenant does not match request context",
            {"tenant_id": tenant_context.tenant_id, "user_id": tenant_context.user_id},
        )
        raise TenantIsolationViolation("Utterance and context belong to different tenants")


def build_service(
    config: AppConfig,
    ports: Optional[Ports] = None,
    embedder: Optional[Embedder] = None,
    llm_client: Any = None,
    engine: Optional[Engine] = None,
) -> AssistantService:
    """Assemble the service with SQL-backed history and rate limits."""
    engine = engine or create_db_engine(config.storage)
    create_all_tables(engine)
    session_factory = create_session_factory(engine)
    policy = load_policy(config.policy_path) if config.policy_path else load_policy()
    ports = ports or create_http_ports(config.services, timeout=config.orchestrator.step_timeout)
    history = SqlHistoryStore(session_factory)
    retrieval = RetrievalClient(embedder or create_embedder(config.retrieval, config.llm), config.retrieval)
    return AssistantService(
        config=config,
        rate_limiter=RateLimiter(config.rate_limit, SqlBucketStore(session_factory)),
        resolver=CandidateResolver(retrieval, config.retrieval, max_workers=config.orchestrator.max_workers),
        validator=ActionValidator(ports, policy),
        orchestrator=ActionOrchestrator(ports, history, config.orchestrator),
        history=history,
        policy=policy,
        llm_client=llm_client,
        engine=engine,
    )


def build_in_memory_service(
    config: AppConfig,
    ports: Ports,
    embedder: Optional[Embedder] = None,
    llm_client: Any = None,
) -> AssistantService:
    """Same wiring with in-memory stores; used for local runs and tests."""
    policy = load_policy(config.policy_path) if config.policy_path else ActionPolicy()
    history = InMemoryHistoryStore()
    retrieval = RetrievalClient(embedder or create_embedder(config.retrieval, config.llm), config.retrieval)
    return AssistantService(
        config=config,
        rate_limiter=RateLimiter(config.rate_limit),
        resolver=CandidateResolver(retrieval, config.retrieval, max_workers=config.orchestrator.max_workers),
        validator=ActionValidator(ports, policy),
        orchestrator=ActionOrchestrator(ports, history, config.orchestrator),
        history=history,
        policy=policy,
        llm_client=llm_client,
    )
