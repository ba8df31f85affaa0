"""Tiered LLM access for puzzle generation, with a local heuristic floor."""

from .policy import DEFAULT_TASK_POLICIES, TaskPolicy, default_policy_for_task, resolve_fallback_chain
from .providers import ProviderError, execute_tier_model
from .task_runner import PolicyTaskRunner, TaskExecutionResult

__all__ = [
    "DEFAULT_TASK_POLICIES",
    "PolicyTaskRunner",
    "ProviderError",
    "TaskExecutionResult",
    "TaskPolicy",
    "default_policy_for_task",
    "execute_tier_model",
    "resolve_fallback_chain",
]
