"""Puzzle generation and grading for arena matches."""

from .generators import Puzzle, clamp_difficulty, generate_local, generate_local_power
from .oracle import (
    LLMPuzzleOracle,
    LocalPuzzleOracle,
    OracleUnavailable,
    PuzzleOracle,
    normalize_answer,
    verify,
)

__all__ = [
    "Puzzle",
    "clamp_difficulty",
    "generate_local",
    "generate_local_power",
    "LLMPuzzleOracle",
    "LocalPuzzleOracle",
    "OracleUnavailable",
    "PuzzleOracle",
    "normalize_answer",
    "verify",
]
