"""Tunable match-engine constants with environment overrides."""

from __future__ import annotations

from dataclasses import dataclass, fields
from decimal import Decimal, InvalidOperation
import os


MATCH_TYPES = ("BEAM_BATTLE",)


def _truthy_env(name: str, default: bool = False) -> bool:
    raw = str(os.environ.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class EngineConfig:
    tick_interval_seconds: float = 0.6
    warmup_seconds: float = 7.0
    open_expiry_seconds: float = 90.0
    finisher_grace_seconds: float = 5.0
    max_ticks: int = 150
    puzzle_threshold: int = 5
    power_request_timeout_seconds: float = 10.0
    log_capacity: int = 100
    anim_capacity: int = 20
    min_stake: Decimal = Decimal("0.0001")
    recent_results_capacity: int = 10
    retain_finished: int = 50

    @classmethod
    def from_env(cls, prefix: str = "ARENA_") -> "EngineConfig":
        overrides: dict[str, object] = {}
        for field_def in fields(cls):
            raw = os.environ.get(f"{prefix}{field_def.name.upper()}")
            if raw is None or not raw.strip():
                continue
            default = field_def.default
            try:
                if isinstance(default, Decimal):
                    value: object = Decimal(raw.strip())
                elif isinstance(default, int):
                    value = int(raw.strip())
                else:
                    value = float(raw.strip())
            except (ValueError, InvalidOperation):
                continue
            overrides[field_def.name] = value
        return cls(**overrides)
