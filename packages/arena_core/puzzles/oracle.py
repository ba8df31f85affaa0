"""Puzzle oracle: the only source of puzzles and answer grading for matches."""

from __future__ import annotations

from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any
import logging
import random
import threading

from packages.arena_core.llm.task_runner import PolicyTaskRunner

from .generators import (
    MAX_DIFFICULTY,
    POWER_TYPE,
    PUZZLE_TYPES,
    Puzzle,
    clamp_difficulty,
    generate_local,
    generate_local_power,
)


logger = logging.getLogger("arena_core.puzzles.oracle")

QUEUE_CAPACITY = 8
REFILL_BELOW = 4
DIFFICULTY_TOLERANCE = 3


class OracleUnavailable(RuntimeError):
    pass


def normalize_answer(value: Any) -> str:
    return " ".join(str(value if value is not None else "").split()).lower()


def verify(puzzle: Puzzle, submitted: Any) -> bool:
    if puzzle is None:
        return False
    expected = normalize_answer(puzzle.answer)
    return bool(expected) and normalize_answer(submitted) == expected


def puzzle_from_payload(payload: Any, *, power: bool = False) -> Puzzle:
    if not isinstance(payload, dict):
        raise OracleUnavailable("Puzzle payload must be an object")
    question = str(payload.get("question") or "").strip()
    answer = str(payload.get("answer") if payload.get("answer") is not None else "").strip()
    if not question or not answer:
        raise OracleUnavailable("Puzzle payload missing question or answer")
    if power:
        return Puzzle(question, answer, POWER_TYPE, MAX_DIFFICULTY)
    puzzle_type = str(payload.get("type") or "MATH").strip().upper()
    if puzzle_type not in PUZZLE_TYPES:
        puzzle_type = "MATH"
    return Puzzle(question, answer.lower(), puzzle_type, clamp_difficulty(payload.get("difficulty", 3)))


class PuzzleOracle(ABC):
    """Supplies puzzles to matches.

    ``generate`` must return immediately; anything slow happens behind
    ``request_power_puzzle``'s future or a background refill.
    """

    @abstractmethod
    def generate(self, difficulty: int) -> Puzzle:
        raise NotImplementedError

    @abstractmethod
    def request_power_puzzle(self, *, scope_id: str | None = None) -> Future:
        raise NotImplementedError

    def fallback_power_puzzle(self) -> Puzzle:
        return generate_local_power()

    def verify(self, puzzle: Puzzle, submitted: Any) -> bool:
        return verify(puzzle, submitted)

    def close(self) -> None:
        return None


class LocalPuzzleOracle(PuzzleOracle):
    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def generate(self, difficulty: int) -> Puzzle:
        return generate_local(difficulty, self._rng)

    def request_power_puzzle(self, *, scope_id: str | None = None) -> Future:
        future: Future = Future()
        future.set_result(generate_local_power(self._rng))
        return future

    def fallback_power_puzzle(self) -> Puzzle:
        return generate_local_power(self._rng)


class LLMPuzzleOracle(PuzzleOracle):
    """Model-backed oracle with a prefetched fight queue and local fallback."""

    def __init__(
        self,
        *,
        runner: PolicyTaskRunner | None = None,
        rng: random.Random | None = None,
        max_workers: int = 2,
        queue_capacity: int = QUEUE_CAPACITY,
        refill_below: int = REFILL_BELOW,
    ) -> None:
        self._runner = runner or PolicyTaskRunner(log_sink=_log_call)
        self._rng = rng or random.Random()
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="arena-oracle")
        self._queue: list[Puzzle] = []
        self._lock = threading.Lock()
        self._refilling = False
        self._queue_capacity = max(1, int(queue_capacity))
        self._refill_below = max(0, int(refill_below))

    def queued_count(self) -> int:
        with self._lock:
            return len(self._queue)

    def generate(self, difficulty: int) -> Puzzle:
        d = clamp_difficulty(difficulty)
        picked: Puzzle | None = None
        with self._lock:
            for idx, candidate in enumerate(self._queue):
                if abs(candidate.difficulty - d) <= DIFFICULTY_TOLERANCE:
                    picked = self._queue.pop(idx)
                    break
            low = len(self._queue) < self._refill_below
        if low:
            self.prefill()
        if picked is not None:
            logger.debug("[ORACLE] Using queued puzzle (d%d): %s", d, picked.question[:40])
            return picked
        return generate_local(d, self._rng)

    def prefill(self) -> bool:
        with self._lock:
            if self._refilling or len(self._queue) >= self._queue_capacity:
                return False
            self._refilling = True
        try:
            self._executor.submit(self._refill)
        except RuntimeError:
            # Executor already shut down.
            with self._lock:
                self._refilling = False
            return False
        return True

    def _refill(self) -> None:
        try:
            result = self._runner.run(
                task_name="fight_puzzle_batch",
                scope_id="fight_queue",
                context={"count": 5, "mix": {"easy": 2, "medium": 2, "hard": 1}},
                heuristic_fn=lambda _: {"puzzles": []},
            )
            if result.route != "provider":
                logger.info("[ORACLE] Fight queue refill skipped: provider unavailable")
                return
            added = 0
            for item in result.output.get("puzzles") or []:
                try:
                    puzzle = puzzle_from_payload(item)
                except OracleUnavailable:
                    continue
                with self._lock:
                    if len(self._queue) >= self._queue_capacity:
                        break
                    self._queue.append(puzzle)
                    added += 1
            logger.info("[ORACLE] Fight queue refilled with %d puzzles", added)
        except Exception as exc:
            logger.warning("[ORACLE] Fight queue refill failed: %s", exc)
        finally:
            with self._lock:
                self._refilling = False

    def request_power_puzzle(self, *, scope_id: str | None = None) -> Future:
        return self._executor.submit(self._power_puzzle, scope_id)

    def _power_puzzle(self, scope_id: str | None) -> Puzzle:
        result = self._runner.run(
            task_name="power_puzzle",
            scope_id=scope_id,
            context={"difficulty": MAX_DIFFICULTY, "answer_style": "single word or number"},
            heuristic_fn=lambda _: {"fallback": True},
        )
        try:
            if result.route != "provider":
                raise OracleUnavailable("No provider tier produced a power puzzle")
            return puzzle_from_payload(result.output, power=True)
        except OracleUnavailable as exc:
            logger.warning("[ORACLE] Power puzzle fallback for %s: %s", scope_id or "-", exc)
            return self.fallback_power_puzzle()

    def fallback_power_puzzle(self) -> Puzzle:
        return generate_local_power(self._rng)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


def _log_call(record: dict[str, Any]) -> None:
    if record.get("success"):
        logger.debug(
            "[ORACLE] %s via %s in %sms",
            record.get("task_name"),
            record.get("model_name"),
            record.get("latency_ms"),
        )
    else:
        logger.info(
            "[ORACLE] %s failed on %s: %s",
            record.get("task_name"),
            record.get("model_name"),
            record.get("error_code"),
        )
