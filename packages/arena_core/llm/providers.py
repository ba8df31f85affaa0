"""Provider adapters for policy-tiered puzzle generation.

Every tier talks to an OpenAI-compatible Chat Completions endpoint. Tier
settings come from ``ARENA_LLM_<TIER>_<KEY>`` with ``ARENA_LLM_<KEY>`` as the
shared fallback, so one vendor can serve all tiers or each tier its own.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator
from urllib import error, request
import json
import os

from .policy import estimate_token_count


DEFAULT_OPENAI_COMPATIBLE_BASE_URL = "https://api.openai.com/v1"
SUPPORTED_PROVIDERS = {"openai_compatible"}
DEFAULT_MODEL_BY_TIER: dict[str, str] = {
    "strong": "gpt-4.1",
    "fast": "gpt-4.1-mini",
    "cheap": "gpt-4.1-nano",
}
PUZZLE_TYPES = {"MATH", "CODE", "LOGIC", "PATTERN", "POWER"}
MAX_ANSWER_WORDS = 3

_SYSTEM_PROMPT = (
    "You are the puzzle master of an arena fighting game. "
    "Generate fair, solvable questions with exact short answers. "
    "Return a strict JSON object only, without markdown or commentary."
)
_TASK_INSTRUCTIONS: dict[str, str] = {
    "fight_puzzle_batch": (
        "Generate quick-fire puzzle questions for an arena fighting game. "
        "Fighters solve puzzles to power up attacks. Mix math, code, logic and pattern questions.\n"
        "- Answers must be a single number or 1-2 words\n"
        "- Each question is solvable in 5-15 seconds by a skilled person\n"
        "- Difficulty is an integer from 1 (easy) to 10 (very hard)\n"
        'Return {"puzzles": [{"question": "...", "answer": "...", "type": "MATH", "difficulty": 2}, ...]}'
    ),
    "power_puzzle": (
        "Generate one extremely difficult but fair logic puzzle that requires multi-step reasoning "
        "and takes an expert at least 30 seconds. The answer must be a single word or number.\n"
        'Return {"question": "...", "answer": "..."}'
    ),
}


def _truthy_env(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _tier_env(env_tier: str, key: str, *extra: str | None) -> str | None:
    """First non-blank of the tier-specific var, the shared var, then ``extra``."""
    for value in (os.environ.get(f"ARENA_LLM_{env_tier}_{key}"), os.environ.get(f"ARENA_LLM_{key}"), *extra):
        if value and value.strip():
            return value.strip()
    return None


def default_model_for_tier(tier: str) -> str | None:
    return DEFAULT_MODEL_BY_TIER.get(str(tier or "").strip().lower())


@dataclass(frozen=True)
class ProviderExecutionResult:
    output: dict[str, Any]
    model_name: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None


class ProviderError(RuntimeError):
    def __init__(self, message: str, *, error_code: str, model_name: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.model_name = model_name


class ProviderUnavailableError(ProviderError):
    """The tier cannot be used at all (configuration); the runner moves to the next tier."""


class ProviderExecutionError(ProviderError):
    """The call was made and failed; the runner may retry the same tier."""


@dataclass(frozen=True)
class TierProviderConfig:
    tier: str
    provider: str
    model: str
    base_url: str
    api_key: str | None

    def model_name(self) -> str:
        return f"{self.provider}:{self.model}"

    def endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"


def _tier_provider_config(tier: str) -> TierProviderConfig:
    tier_name = str(tier or "").strip().lower()
    if not tier_name:
        raise ProviderUnavailableError("Missing tier name", error_code="missing_tier")
    env_tier = tier_name.upper()

    provider = (_tier_env(env_tier, "PROVIDER") or "openai_compatible").lower()
    if provider not in SUPPORTED_PROVIDERS:
        raise ProviderUnavailableError(f"Unsupported provider: {provider}", error_code="unsupported_provider")

    model = _tier_env(env_tier, "MODEL", default_model_for_tier(tier_name))
    if not model:
        raise ProviderUnavailableError(f"No model configured for tier: {tier_name}", error_code="missing_model")

    api_key = _tier_env(env_tier, "API_KEY", os.environ.get("OPENAI_API_KEY"))
    if not api_key and not _truthy_env("ARENA_LLM_ALLOW_EMPTY_API_KEY", False):
        raise ProviderUnavailableError(
            f"No API key configured for tier: {tier_name}",
            error_code="missing_api_key",
        )

    base_url = _tier_env(env_tier, "BASE_URL") or DEFAULT_OPENAI_COMPATIBLE_BASE_URL
    return TierProviderConfig(
        tier=tier_name,
        provider=provider,
        model=model,
        base_url=base_url.rstrip("/"),
        api_key=api_key,
    )


def _build_prompt(*, task_name: str, bounded_context_text: str) -> list[dict[str, str]]:
    instructions = _TASK_INSTRUCTIONS.get(task_name, "Return a JSON object.")
    return [
        {"role": "system", "content": _SYSTEM_PROMPT},
        {
            "role": "user",
            "content": f"Task: {task_name}\n{instructions}\n\nContext JSON:\n{bounded_context_text}",
        },
    ]


def _message_text(content: Any) -> str:
    if isinstance(content, list):
        return "".join(str(part.get("text") or "") for part in content if isinstance(part, dict))
    return content if isinstance(content, str) else str(content or "")


def _strip_code_fences(text: str) -> str:
    cleaned = str(text or "").strip()
    if not cleaned.startswith("```"):
        return cleaned
    _, _, body = cleaned.partition("\n")
    body = body.rstrip()
    if body.endswith("```"):
        body = body[:-3]
    return body.strip()


def _balanced_objects(text: str) -> Iterator[str]:
    """Yield each top-level ``{...}`` span, skipping braces inside JSON strings."""
    depth = 0
    start = -1
    in_string = escaped = False
    for idx, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char == "{":
            if depth == 0:
                start = idx
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield text[start : idx + 1]


def _extract_json_object(text: str) -> dict[str, Any]:
    candidate = _strip_code_fences(text)
    if not candidate:
        raise ProviderExecutionError("Empty model response", error_code="empty_response")

    try:
        parsed = json.loads(candidate)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed
    if isinstance(parsed, list):
        # Batch requests sometimes come back as a bare array.
        return {"puzzles": parsed}

    for blob in _balanced_objects(candidate):
        try:
            parsed = json.loads(blob)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    raise ProviderExecutionError(
        "Response does not contain a valid JSON object",
        error_code="invalid_json_output",
    )


def _schema_error(message: str) -> ProviderExecutionError:
    return ProviderExecutionError(message, error_code="invalid_schema_output")


def _is_short_answer(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    return isinstance(value, str) and bool(value.strip()) and len(value.split()) <= MAX_ANSWER_WORDS


def _validate_puzzle_item(item: Any, *, require_difficulty: bool) -> None:
    if not isinstance(item, dict):
        raise _schema_error("Puzzle entry must be an object")
    question = item.get("question")
    if not isinstance(question, str) or not question.strip():
        raise _schema_error("Puzzle entry missing question")
    if not _is_short_answer(item.get("answer")):
        raise _schema_error("Puzzle answer must be short")
    puzzle_type = item.get("type")
    if puzzle_type is not None and str(puzzle_type).upper() not in PUZZLE_TYPES:
        raise _schema_error(f"Unknown puzzle type: {puzzle_type}")
    difficulty = item.get("difficulty")
    if difficulty is None:
        if require_difficulty:
            raise _schema_error("Puzzle entry missing difficulty")
        return
    if isinstance(difficulty, bool) or not isinstance(difficulty, (int, float)):
        raise _schema_error("Puzzle difficulty must be numeric")


def _validate_output_schema(task_name: str, output: dict[str, Any]) -> None:
    if task_name == "fight_puzzle_batch":
        puzzles = output.get("puzzles")
        if not isinstance(puzzles, list) or not puzzles:
            raise _schema_error("Batch output missing puzzles")
        for item in puzzles:
            _validate_puzzle_item(item, require_difficulty=True)
    elif task_name == "power_puzzle":
        _validate_puzzle_item(output, require_difficulty=False)


def _chat_completion(config: TierProviderConfig, payload: dict[str, Any], timeout_s: float) -> dict[str, Any]:
    req = request.Request(
        config.endpoint(),
        method="POST",
        data=json.dumps(payload, separators=(",", ":")).encode("utf-8"),
        headers={"Content-Type": "application/json"},
    )
    if config.api_key:
        req.add_header("Authorization", f"Bearer {config.api_key}")
    try:
        with request.urlopen(req, timeout=timeout_s) as response:
            raw = response.read().decode("utf-8", errors="replace")
    except error.HTTPError as exc:
        try:
            detail = exc.read().decode("utf-8", errors="replace")
        except Exception:
            detail = ""
        raise ProviderExecutionError(
            f"Provider HTTP error {exc.code}: {detail[:240]}",
            error_code=f"http_{exc.code}",
            model_name=config.model_name(),
        ) from exc
    except Exception as exc:
        raise ProviderExecutionError(
            f"Provider network error: {exc}",
            error_code="network_error",
            model_name=config.model_name(),
        ) from exc
    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        raise ProviderExecutionError(
            "Provider returned non-JSON response",
            error_code="invalid_provider_response",
            model_name=config.model_name(),
        ) from exc
    if not isinstance(parsed, dict):
        raise ProviderExecutionError(
            "Provider response is not an object",
            error_code="invalid_provider_response",
            model_name=config.model_name(),
        )
    return parsed


def _usage_count(usage: dict[str, Any], key: str, fallback_text: str) -> int:
    try:
        return int(usage[key])
    except (KeyError, TypeError, ValueError):
        return estimate_token_count(fallback_text)


def execute_tier_model(
    *,
    tier: str,
    task_name: str,
    bounded_context_text: str,
    temperature: float,
    max_output_tokens: int,
    timeout_ms: int,
) -> ProviderExecutionResult:
    """Run one puzzle task against the provider configured for ``tier``."""
    config = _tier_provider_config(tier)
    payload = {
        "model": config.model,
        "messages": _build_prompt(task_name=task_name, bounded_context_text=bounded_context_text),
        "temperature": float(temperature),
        "max_tokens": int(max_output_tokens),
    }
    parsed = _chat_completion(config, payload, max(0.2, float(timeout_ms) / 1000.0))

    choices = parsed.get("choices") or []
    if not choices:
        raise ProviderExecutionError(
            "Provider response missing choices",
            error_code="missing_choices",
            model_name=config.model_name(),
        )
    content = ((choices[0] or {}).get("message") or {}).get("content")
    output = _extract_json_object(_message_text(content))
    _validate_output_schema(task_name, output)

    usage = parsed.get("usage") or {}
    return ProviderExecutionResult(
        output=output,
        model_name=str(parsed.get("model") or config.model_name()),
        prompt_tokens=_usage_count(usage, "prompt_tokens", bounded_context_text),
        completion_tokens=_usage_count(usage, "completion_tokens", json.dumps(output, separators=(",", ":"))),
    )
