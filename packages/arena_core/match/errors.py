"""Lifecycle errors surfaced to callers of the match engine."""

from __future__ import annotations

from decimal import Decimal

from packages.arena_core.puzzles.oracle import OracleUnavailable


class ArenaError(Exception):
    pass


class InsufficientFunds(ArenaError, RuntimeError):
    def __init__(self, agent_id: str, balance: Decimal, required: Decimal) -> None:
        super().__init__(f"Insufficient coins for {agent_id}: balance {balance}, stake {required}")
        self.agent_id = agent_id
        self.balance = balance
        self.required = required


class MatchNotOpen(ArenaError, RuntimeError):
    pass


class MatchNotActive(ArenaError, RuntimeError):
    pass


class SelfChallenge(ArenaError, ValueError):
    pass


class InvalidMatchType(ArenaError, ValueError):
    pass


class MatchNotFound(ArenaError, LookupError):
    pass


class UnknownAgent(ArenaError, LookupError):
    pass


class NotAParticipant(ArenaError, PermissionError):
    pass


__all__ = [
    "ArenaError",
    "InsufficientFunds",
    "MatchNotOpen",
    "MatchNotActive",
    "SelfChallenge",
    "InvalidMatchType",
    "MatchNotFound",
    "UnknownAgent",
    "NotAParticipant",
    "OracleUnavailable",
]
