"""Execute confirmed drafts against the ports with per-step accounting and compensations."""
from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Dict, List, Optional

from config import OrchestratorConfig
from errors import (
    DownstreamServiceError,
    IdempotencyConflict,
    TenantIsolationViolation,
    TransientDownstreamError,
    ValidationError,
)
from history_store import HistoryStore
from locks import KeyedLock
from logging_utils import log_security_event, logger
from metrics import RequestMetrics
from models import (
    ActionDraft,
    ActionStep,
    ActResult,
    AuditEntry,
    EntryKind,
    ResolutionState,
    StepRef,
    StepResult,
    TenantContext,
    new_id,
)
from ports import Ports

MAX_ATTEMPTS_IDEMPOTENT = 2
SKIPPED_AFTER_FAILURE = "Not run: an earlier step failed"
SKIPPED_DEPENDENCY = "Not run: a step it depends on failed"


def plan_waves(steps: List[ActionStep]) -> List[List[ActionStep]]:
    """
    Group steps into dependency waves, keeping declared order inside each wave.

    Raises:
        ValidationError: On duplicate ids, unknown dependencies or cycles
    """
    ids = [step.id for step in steps]
    if len(ids) != len(set(ids)):
        raise ValidationError("Draft has duplicate step ids")
    known = set(ids)
    for step in steps:
        unknown = set(step.depends_on) - known
        if unknown:
            raise ValidationError(f"Step {step.id} depends on unknown steps: {sorted(unknown)}")

    waves: List[List[ActionStep]] = []
    placed: set[str] = set()
    remaining = list(steps)
    while remaining:
        wave = [step for step in remaining if set(step.depends_on) <= placed]
        if not wave:
            raise ValidationError("Draft steps have a dependency cycle")
        waves.append(wave)
        placed.update(step.id for step in wave)
        remaining = [step for step in remaining if step.id not in placed]
    return waves


def resolve_arguments(arguments: Dict[str, Any], outputs: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    """Replace ``StepRef`` values with the output of an earlier step; other values pass through untouched."""
    resolved: Dict[str, Any] = {}
    for name, value in arguments.items():
        if isinstance(value, StepRef):
            output = outputs.get(value.step_id)
            if output is None or value.field_name not in output:
                raise ValidationError(f"Argument '{name}' references missing output {value.step_id}.{value.field_name}")
            resolved[name] = output[value.field_name]
        else:
            resolved[name] = value
    return resolved


class ActionOrchestrator:
    """
    Runs a draft wave by wave.

    Steps inside a wave run concurrently and are all joined before the next
    wave starts. The first failing non-skippable step stops further waves,
    then compensations of completed steps run in reverse completion order.
    """

    def __init__(
        self,
        ports: Ports,
        history: HistoryStore,
        config: Optional[OrchestratorConfig] = None,
    ) -> None:
        self.ports = ports
        self.history = history
        self.config = config or OrchestratorConfig()
        self._step_pool = ThreadPoolExecutor(max_workers=self.config.max_workers, thread_name_prefix="act-step")
        self._call_pool = ThreadPoolExecutor(max_workers=self.config.max_workers, thread_name_prefix="act-call")
        self._key_locks = KeyedLock()

    def execute(
        self,
        draft: ActionDraft,
        idempotency_key: str,
        tenant_context: TenantContext,
        interpret_id: Optional[str] = None,
        state: ResolutionState = ResolutionState.USER_SELECTED,
        metrics: Optional[RequestMetrics] = None,
    ) -> ActResult:
        if not idempotency_key or not idempotency_key.strip():
            raise ValidationError("An idempotency key is required")
        self._check_tenant(draft, tenant_context)
        tenant_id = tenant_context.tenant_id

        with self._key_locks.acquire((tenant_id, idempotency_key)):
            stored = self.history.find_act_by_idempotency_key(tenant_id, idempotency_key)
            if stored is not None:
                return self._replay(stored, idempotency_key)

            result = self._run(draft, metrics)
            entry = AuditEntry(
                tenant_id=tenant_id,
                user_id=tenant_context.user_id,
                kind=EntryKind.ACT,
                chosen_candidate_id=draft.target_entity_id,
                state=state.value,
                action=draft.to_dict(),
                action_result=result.to_dict(),
                idempotency_key=idempotency_key,
                interpret_id=interpret_id,
            )
            try:
                self.history.append(entry)
            except IdempotencyConflict:
                # Another process recorded this key while we ran; its result wins.
                stored = self.history.find_act_by_idempotency_key(tenant_id, idempotency_key)
                if stored is None:
                    raise
                logger.error(
                    "Concurrent execution for one idempotency key",
                    extra={"extra": {"tenant_id": tenant_id, "idempotency_key": idempotency_key}},
                )
                return self._replay(stored, idempotency_key)

        logger.info(
            "Action executed",
            extra={
                "extra": {
                    "correlation_id": metrics.correlation_id if metrics else None,
                    "tenant_id": tenant_id,
                    "action_type": draft.action_type.value,
                    "success": result.success,
                    "partial_success": result.partial_success,
                }
            },
        )
        return result

    def replay(self, tenant_id: str, idempotency_key: str) -> Optional[ActResult]:
        """Stored result for a key already executed in this tenant, else None."""
        stored = self.history.find_act_by_idempotency_key(tenant_id, idempotency_key)
        return self._replay(stored, idempotency_key) if stored else None

    @staticmethod
    def _replay(stored: AuditEntry, idempotency_key: str) -> ActResult:
        logger.info("Replaying stored act result", extra={"extra": {"idempotency_key": idempotency_key, "entry_id": stored.id}})
        replayed = ActResult.from_dict(stored.action_result or {})
        replayed.replayed = True
        return replayed

    @staticmethod
    def _check_tenant(draft: ActionDraft, tenant_context: TenantContext) -> None:
        for step in draft.steps:
            argument_sets = [step.arguments] + ([step.compensation.arguments] if step.compensation else [])
            for arguments in argument_sets:
                if arguments.get("tenant_id", tenant_context.tenant_id) != tenant_context.tenant_id:
                    log_security_event(
                        "Draft step targets another tenant",
                        {"tenant_id": tenant_context.tenant_id, "step_id": step.id},
                    )
                    raise TenantIsolationViolation(f"Step {step.id} targets another tenant")

    def _run(self, draft: ActionDraft, metrics: Optional[RequestMetrics]) -> ActResult:
        start = time.time()
        waves = plan_waves(draft.steps)
        outputs: Dict[str, Dict[str, Any]] = {}
        results: Dict[str, StepResult] = {}
        completed: List[ActionStep] = []
        halted = False

        for wave in waves:
            if halted:
                for step in wave:
                    results[step.id] = StepResult(step.id, success=False, skipped=True, error=SKIPPED_AFTER_FAILURE)
                continue

            runnable: List[ActionStep] = []
            for step in wave:
                if any(not results[dep].success for dep in step.depends_on):
                    results[step.id] = StepResult(step.id, success=False, skipped=True, error=SKIPPED_DEPENDENCY)
                else:
                    runnable.append(step)

            futures = {step.id: self._step_pool.submit(self._run_step, step, dict(outputs)) for step in runnable}
            for step in runnable:
                result = futures[step.id].result()
                results[step.id] = result
                if result.success:
                    completed.append(step)
                    outputs[step.id] = result.output
                elif not step.can_skip:
                    halted = True

        compensations = self._compensate(completed, outputs) if halted else []

        step_results = [results[step.id] for step in draft.steps]
        failed = [r for r in step_results if not r.success and not r.skipped]
        succeeded = [r for r in step_results if r.success]
        success = not halted
        full_success = success and not failed
        result = ActResult(
            success=success,
            step_results=step_results,
            partial_success=bool(failed) and bool(succeeded),
            rollback_token=None if full_success else new_id(),
            compensations=compensations,
        )

        if metrics:
            metrics.steps_total = len(step_results)
            metrics.steps_failed = len(failed)
            metrics.compensations_attempted = len(compensations)
            metrics.execution_latency_ms = int((time.time() - start) * 1000)
        return result

    def _call(self, operation: str, arguments: Dict[str, Any]) -> Any:
        future = self._call_pool.submit(self.ports.call, operation, arguments)
        try:
            return future.result(timeout=self.config.step_timeout)
        except FutureTimeoutError as exc:
            raise TransientDownstreamError(operation.split(".", 1)[0], f"no response within {self.config.step_timeout}s") from exc

    def _run_step(self, step: ActionStep, outputs: Dict[str, Dict[str, Any]]) -> StepResult:
        if step.operation is None:
            return StepResult(step.id, success=True, attempts=0)

        attempts = 0
        while True:
            attempts += 1
            try:
                arguments = resolve_arguments(step.arguments, outputs)
                value = self._call(step.operation, arguments)
            except TransientDownstreamError as exc:
                if step.idempotent and attempts < MAX_ATTEMPTS_IDEMPOTENT:
                    logger.warning(
                        "Retrying idempotent step",
                        extra={"extra": {"step_id": step.id, "operation": step.operation, "error": exc.message}},
                    )
                    continue
                return self._failed(step, exc.message, attempts)
            except (DownstreamServiceError, ValidationError) as exc:
                return self._failed(step, exc.message, attempts)
            except Exception as exc:
                logger.exception("Unexpected step error", extra={"extra": {"step_id": step.id, "operation": step.operation}})
                return self._failed(step, f"{type(exc).__name__}: {exc}", attempts)

            output = value if isinstance(value, dict) else {"value": value}
            logger.info(
                "Step succeeded",
                extra={"extra": {"step_id": step.id, "operation": step.operation, "attempts": attempts}},
            )
            return StepResult(step.id, success=True, attempts=attempts, output=output)

    @staticmethod
    def _failed(step: ActionStep, error: str, attempts: int) -> StepResult:
        logger.warning(
            "Step failed",
            extra={"extra": {"step_id": step.id, "operation": step.operation, "attempts": attempts, "error": error}},
        )
        return StepResult(step.id, success=False, error=error, attempts=attempts)

    def _compensate(self, completed: List[ActionStep], outputs: Dict[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Best effort: every compensation is attempted once, newest first, and its outcome recorded."""
        records: List[Dict[str, Any]] = []
        for step in reversed(completed):
            compensation = step.compensation
            if compensation is None:
                continue
            record: Dict[str, Any] = {
                "step_id": step.id,
                "operation": compensation.operation,
                "description": compensation.description,
                "success": True,
                "error": None,
            }
            try:
                self._call(compensation.operation, resolve_arguments(compensation.arguments, outputs))
            except (DownstreamServiceError, ValidationError) as exc:
                record.update(success=False, error=exc.message)
            except Exception as exc:
                logger.exception("Unexpected compensation error", extra={"extra": {"step_id": step.id}})
                record.update(success=False, error=f"{type(exc).__name__}: {exc}")
            logger.info("Compensation attempted", extra={"extra": record})
            records.append(record)
        return records

    def shutdown(self) -> None:
        self._step_pool.shutdown(wait=True)
        self._call_pool.shutdown(wait=True)
