"""Runs puzzle generation tasks down a tier chain, ending in a local heuristic."""

from __future__ import annotations

from dataclasses import dataclass
from time import perf_counter
from typing import Any, Callable
import json
import uuid

from .policy import (
    TaskPolicy,
    default_policy_for_task,
    estimate_token_count,
    resolve_fallback_chain,
    trim_context_to_budget,
)
from .providers import (
    ProviderError,
    ProviderExecutionResult,
    ProviderUnavailableError,
    execute_tier_model,
)


PolicyLookup = Callable[[str], TaskPolicy]
LogSink = Callable[[dict[str, Any]], None]
HeuristicFn = Callable[[dict[str, Any]], dict[str, Any]]
ProviderInvoker = Callable[..., ProviderExecutionResult]

HEURISTIC_MODEL_NAME = "heuristic:local"


@dataclass(frozen=True)
class TaskExecutionResult:
    task_name: str
    route: str
    used_tier: str
    output: dict[str, Any]
    prompt_tokens: int
    completion_tokens: int
    latency_ms: int
    context_trimmed: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "task_name": self.task_name,
            "route": self.route,
            "used_tier": self.used_tier,
            "output": self.output,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "latency_ms": self.latency_ms,
            "context_trimmed": self.context_trimmed,
        }


@dataclass
class _Call:
    """Bookkeeping for a single run: scope, task and the bounded prompt."""

    scope_id: str | None
    task_name: str
    policy: TaskPolicy
    context_text: str
    context_trimmed: bool
    prompt_tokens: int


def _output_tokens(output: dict[str, Any]) -> int:
    return estimate_token_count(json.dumps(output, separators=(",", ":")))


def _elapsed_ms(start: float) -> int:
    return int((perf_counter() - start) * 1000)


class PolicyTaskRunner:
    """Tries each provider tier in the policy's chain, then the heuristic.

    A tier raising ``ProviderUnavailableError`` is abandoned at once. Any other
    failure is retried up to ``retry_limit`` more times on the same tier. Every
    attempt, successful or not, is reported to ``log_sink``.
    """

    def __init__(
        self,
        *,
        policy_lookup: PolicyLookup | None = None,
        log_sink: LogSink | None = None,
        provider_invoker: ProviderInvoker | None = None,
    ) -> None:
        self._policy_lookup = policy_lookup or default_policy_for_task
        self._log_sink = log_sink
        self._provider_invoker = provider_invoker or execute_tier_model

    def run(
        self,
        *,
        task_name: str,
        scope_id: str | None,
        context: dict[str, Any],
        heuristic_fn: HeuristicFn,
    ) -> TaskExecutionResult:
        call = self._prepare(task_name=task_name, scope_id=scope_id, context=context)
        attempts = max(1, call.policy.retry_limit + 1)
        for tier in resolve_fallback_chain(call.policy.model_tier):
            if tier == "heuristic":
                break
            for _ in range(attempts):
                outcome = self._attempt_tier(call, tier)
                if isinstance(outcome, TaskExecutionResult):
                    return outcome
                if outcome == "skip_tier":
                    break
        return self._run_heuristic(call, context, heuristic_fn)

    def _prepare(self, *, task_name: str, scope_id: str | None, context: dict[str, Any]) -> _Call:
        policy = self._policy_lookup(task_name)
        if not isinstance(policy, TaskPolicy):
            policy = default_policy_for_task(task_name)
        raw = json.dumps(context, sort_keys=True, separators=(",", ":"))
        bounded, trimmed, prompt_tokens = trim_context_to_budget(raw, policy.max_input_tokens)
        return _Call(
            scope_id=scope_id,
            task_name=task_name,
            policy=policy,
            context_text=bounded,
            context_trimmed=trimmed,
            prompt_tokens=prompt_tokens,
        )

    def _attempt_tier(self, call: _Call, tier: str) -> TaskExecutionResult | str:
        """One provider call. Returns the result, ``"retry"`` or ``"skip_tier"``."""
        policy = call.policy
        start = perf_counter()
        try:
            provider_result = self._provider_invoker(
                tier=tier,
                task_name=call.task_name,
                bounded_context_text=call.context_text,
                temperature=policy.temperature,
                max_output_tokens=policy.max_output_tokens,
                timeout_ms=policy.timeout_ms,
            )
        except ProviderError as exc:
            self._record(
                call,
                model_name=exc.model_name or f"{tier}:provider",
                completion_tokens=0,
                latency_ms=_elapsed_ms(start),
                error_code=exc.error_code,
            )
            return "skip_tier" if isinstance(exc, ProviderUnavailableError) else "retry"
        except Exception as exc:
            self._record(
                call,
                model_name=f"{tier}:provider",
                completion_tokens=0,
                latency_ms=_elapsed_ms(start),
                error_code=f"provider_exception:{exc.__class__.__name__}",
            )
            return "retry"

        output = dict(provider_result.output)
        result = TaskExecutionResult(
            task_name=call.task_name,
            route="provider",
            used_tier=tier,
            output=output,
            prompt_tokens=int(provider_result.prompt_tokens or call.prompt_tokens),
            completion_tokens=int(
                provider_result.completion_tokens
                if provider_result.completion_tokens is not None
                else _output_tokens(output)
            ),
            latency_ms=_elapsed_ms(start),
            context_trimmed=call.context_trimmed,
        )
        self._record(
            call,
            model_name=provider_result.model_name,
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
            latency_ms=result.latency_ms,
        )
        return result

    def _run_heuristic(self, call: _Call, context: dict[str, Any], heuristic_fn: HeuristicFn) -> TaskExecutionResult:
        start = perf_counter()
        output = heuristic_fn(context)
        latency_ms = _elapsed_ms(start)
        completion_tokens = _output_tokens(output)
        self._record(
            call,
            model_name=HEURISTIC_MODEL_NAME,
            completion_tokens=completion_tokens,
            latency_ms=latency_ms,
        )
        return TaskExecutionResult(
            task_name=call.task_name,
            route="heuristic",
            used_tier="heuristic",
            output=output,
            prompt_tokens=call.prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=latency_ms,
            context_trimmed=call.context_trimmed,
        )

    def _record(
        self,
        call: _Call,
        *,
        model_name: str,
        completion_tokens: int,
        latency_ms: int,
        prompt_tokens: int | None = None,
        error_code: str | None = None,
    ) -> None:
        if self._log_sink is None:
            return
        self._log_sink(
            {
                "id": str(uuid.uuid4()),
                "scope_id": call.scope_id,
                "task_name": call.task_name,
                "model_name": model_name,
                "prompt_tokens": int(call.prompt_tokens if prompt_tokens is None else prompt_tokens),
                "completion_tokens": int(completion_tokens),
                "latency_ms": int(latency_ms),
                "success": error_code is None,
                "error_code": error_code,
            }
        )
