"""Procedural puzzle generators used as the always-available local source."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
import random


PUZZLE_TYPES = ("MATH", "PATTERN", "LOGIC", "CODE")
POWER_TYPE = "POWER"
MIN_DIFFICULTY = 1
MAX_DIFFICULTY = 10


@dataclass(frozen=True)
class Puzzle:
    question: str
    answer: str
    type: str
    difficulty: int

    def public(self) -> dict[str, Any]:
        return {"question": self.question, "type": self.type, "difficulty": self.difficulty}


def clamp_difficulty(value: Any) -> int:
    try:
        parsed = int(round(float(value)))
    except Exception:
        parsed = 3
    return max(MIN_DIFFICULTY, min(MAX_DIFFICULTY, parsed))


def _math(d: int, rng: random.Random) -> Puzzle:
    if d <= 3:
        a = 2 + rng.randrange(10 * d)
        b = 1 + rng.randrange(10 * d)
        op = rng.choice("+-")
        answer = a + b if op == "+" else a - b
        return Puzzle(f"{a} {op} {b} = ?", str(answer), "MATH", d)
    if d <= 6:
        a = 2 + rng.randrange(15)
        b = 2 + rng.randrange(10)
        c = 1 + rng.randrange(20)
        op1 = rng.choice("+-*")
        op2 = rng.choice("+-")
        v1 = a * b if op1 == "*" else (a + b if op1 == "+" else a - b)
        answer = v1 + c if op2 == "+" else v1 - c
        return Puzzle(f"({a} {op1} {b}) {op2} {c} = ?", str(answer), "MATH", d)
    a = 5 + rng.randrange(20)
    b = 2 + rng.randrange(15)
    c = 3 + rng.randrange(12)
    e = 1 + rng.randrange(10)
    return Puzzle(f"({a} * {b}) - {c} + {e} = ?", str(a * b - c + e), "MATH", d)


def _pattern(d: int, rng: random.Random) -> Puzzle:
    length = 3 + min(d, 5)
    kind = rng.randrange(3)
    if kind == 0:
        start = rng.randrange(10)
        step = 1 + rng.randrange(d + 1)
        seq = [start + step * i for i in range(length)]
        answer = start + step * length
    elif kind == 1:
        start = 1 + rng.randrange(3)
        mul = 2 + rng.randrange(min(d, 3))
        seq = [start]
        for _ in range(1, length):
            seq.append(seq[-1] * mul)
        answer = seq[-1] * mul
    else:
        start = rng.randrange(5)
        a = 1 + rng.randrange(d)
        b = 2 + rng.randrange(d)
        seq = [start]
        for i in range(1, length):
            seq.append(seq[-1] + (a if i % 2 == 1 else b))
        answer = seq[-1] + (a if length % 2 == 1 else b)
    shown = ", ".join(str(v) for v in seq)
    return Puzzle(f"[{shown}, ?] what comes next?", str(answer), "PATTERN", d)


def _logic(d: int, rng: random.Random) -> Puzzle:
    names = ["X", "Y", "Z", "W", "V"]
    count = min(2 + d // 3, 4)
    clues = [f"{names[i]} < {names[i + 1]}" for i in range(count - 1)]
    if d > 5:
        ask, answer = "smallest", names[0]
    else:
        ask, answer = "largest", names[count - 1]
    return Puzzle(f"Given {' and '.join(clues)}. Which is the {ask}?", answer, "LOGIC", d)


def _code(d: int, rng: random.Random) -> Puzzle:
    if d <= 4:
        a = 1 + rng.randrange(10)
        b = 2 + rng.randrange(5)
        op = "+" if rng.random() > 0.5 else "*"
        answer = a + b if op == "+" else a * b
        return Puzzle(f"x = {a}; x = x {op} {b}; What is x?", str(answer), "CODE", d)
    if d <= 7:
        a = 2 + rng.randrange(5)
        b = 1 + rng.randrange(3)
        c = 2 + rng.randrange(4)
        return Puzzle(f"x = {a}; x = x + {b}; x = x * {c}; What is x?", str((a + b) * c), "CODE", d)
    a = 1 + rng.randrange(5)
    n = 3 + rng.randrange(3)
    total = sum(a + i for i in range(n))
    return Puzzle(f"s = 0; for i in range({n}): s += {a} + i. What is s?", str(total), "CODE", d)


_GENERATORS = {"MATH": _math, "PATTERN": _pattern, "LOGIC": _logic, "CODE": _code}


def generate_local(difficulty: Any, rng: random.Random | None = None) -> Puzzle:
    rng = rng or random.Random()
    d = clamp_difficulty(difficulty)
    kind = rng.choice(PUZZLE_TYPES)
    return _GENERATORS[kind](d, rng)


def generate_local_power(rng: random.Random | None = None) -> Puzzle:
    base = generate_local(MAX_DIFFICULTY, rng)
    return Puzzle(base.question, base.answer, POWER_TYPE, MAX_DIFFICULTY)
