"""Per-task generation policies: which tier to start on and how much to spend."""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any


# Ordered from most to least capable; a tier falls back to everything after it.
ALLOWED_MODEL_TIERS = ("strong", "fast", "cheap", "heuristic")
CHARS_PER_TOKEN = 4
MIN_CONTEXT_CHARS = 32


@dataclass(frozen=True)
class TaskPolicy:
    task_name: str
    model_tier: str
    max_input_tokens: int
    max_output_tokens: int
    temperature: float
    timeout_ms: int
    retry_limit: int

    def as_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["fallback_chain"] = list(resolve_fallback_chain(self.model_tier))
        return out


_GENERIC_POLICY = TaskPolicy(
    task_name="",
    model_tier="cheap",
    max_input_tokens=400,
    max_output_tokens=200,
    temperature=0.3,
    timeout_ms=2000,
    retry_limit=0,
)

DEFAULT_TASK_POLICIES: dict[str, TaskPolicy] = {
    # Quick-fire questions shared by every active fight.
    "fight_puzzle_batch": replace(
        _GENERIC_POLICY,
        task_name="fight_puzzle_batch",
        model_tier="fast",
        max_input_tokens=600,
        max_output_tokens=700,
        temperature=0.7,
        timeout_ms=8000,
        retry_limit=1,
    ),
    # One hard question per fight; the engine gives up on it after a short wait.
    "power_puzzle": replace(
        _GENERIC_POLICY,
        task_name="power_puzzle",
        model_tier="strong",
        max_output_tokens=300,
        temperature=0.8,
        timeout_ms=9000,
    ),
}


def normalize_model_tier(value: str) -> str:
    tier = str(value or "").strip().lower()
    if tier not in ALLOWED_MODEL_TIERS:
        raise ValueError(f"Unsupported model tier: {value}")
    return tier


def resolve_fallback_chain(model_tier: str) -> tuple[str, ...]:
    tier = normalize_model_tier(model_tier)
    return ALLOWED_MODEL_TIERS[ALLOWED_MODEL_TIERS.index(tier) :]


def default_policy_for_task(task_name: str) -> TaskPolicy:
    return DEFAULT_TASK_POLICIES.get(task_name) or replace(_GENERIC_POLICY, task_name=task_name)


def estimate_token_count(text: str) -> int:
    return max(1, len(text) // CHARS_PER_TOKEN)


def trim_context_to_budget(context_text: str, max_input_tokens: int) -> tuple[str, bool, int]:
    """Keep the tail of ``context_text`` that fits the token budget.

    Returns ``(text, was_trimmed, estimated_tokens)``.
    """
    estimated = estimate_token_count(context_text)
    if estimated <= max_input_tokens:
        return context_text, False, estimated
    keep = max(MIN_CONTEXT_CHARS, int(max_input_tokens * CHARS_PER_TOKEN))
    tail = context_text[-keep:]
    return tail, True, estimate_token_count(tail)
