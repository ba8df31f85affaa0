"""Process-wide match engine wiring for the API service."""

from __future__ import annotations

import logging
import os
import threading

from packages.arena_core.match import EngineConfig, MatchEngine, SettlementResult
from packages.arena_core.puzzles.oracle import LLMPuzzleOracle, LocalPuzzleOracle, PuzzleOracle

from ..storage.match_history import record_result as record_match_result
from ..storage.profiles import profile_store


logger = logging.getLogger("arena_api.engine")

_ENGINE: MatchEngine | None = None
_ENGINE_LOCK = threading.Lock()


def _truthy_env(name: str, default: bool = False) -> bool:
    raw = str(os.environ.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _build_oracle() -> PuzzleOracle:
    if _truthy_env("ARENA_LLM_ORACLE", default=False):
        oracle = LLMPuzzleOracle()
        oracle.prefill()
        logger.info("[ENGINE] Using LLM puzzle oracle with local fallback")
        return oracle
    logger.info("[ENGINE] Using local procedural puzzle oracle")
    return LocalPuzzleOracle()


def _persist_result(result: SettlementResult) -> None:
    record_match_result(result.as_dict())


def get_engine() -> MatchEngine:
    global _ENGINE
    with _ENGINE_LOCK:
        if _ENGINE is None:
            engine = MatchEngine(
                profiles=profile_store(),
                oracle=_build_oracle(),
                config=EngineConfig.from_env(),
            )
            engine.add_result_listener(_persist_result)
            _ENGINE = engine
        return _ENGINE


def start_match_scheduler() -> bool:
    return get_engine().start()


def stop_match_scheduler() -> bool:
    with _ENGINE_LOCK:
        engine = _ENGINE
    if engine is None:
        return False
    return engine.stop()


def reset_engine_for_tests() -> None:
    global _ENGINE
    with _ENGINE_LOCK:
        engine, _ENGINE = _ENGINE, None
    if engine is not None:
        engine.close()
