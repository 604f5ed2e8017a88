"""
Dice service: evaluate dice notation

Pure computation, no lobby state. The random source is injectable so
tests can seed it.

Grammar:
    [count]d<sides>[kh<N>|kl<N>][+<mod>|-<mod>]
    adv  == 2d20kh1
    dis  == 2d20kl1
"""
from dataclasses import dataclass, field
import random
import re
from typing import List, Optional

from core.exceptions import InvalidExpression

MAX_EXPRESSION_LENGTH = 40
MAX_DICE = 100
MAX_SIDES = 1000

DICE_PATTERN = re.compile(r"^(\d*)d(\d+)(?:k([hl])(\d+))?([+-]\d+)?$")

ALIASES = {
    "adv": "2d20kh1",
    "d20adv": "2d20kh1",
    "dis": "2d20kl1",
    "d20dis": "2d20kl1",
}

_default_rng = random.SystemRandom()


@dataclass
class DiceSpec:
    count: int
    sides: int
    keep_mode: Optional[str] = None
    keep: Optional[int] = None
    modifier: int = 0


@dataclass
class DiceResult:
    expression: str
    rolls: List[int] = field(default_factory=list)
    used: List[int] = field(default_factory=list)
    modifier: int = 0
    total: int = 0


def normalize(expression: Optional[str]) -> str:
    """Strip whitespace, lowercase, resolve aliases; empty means d20"""
    text = (expression or "").strip()[:MAX_EXPRESSION_LENGTH]
    text = re.sub(r"\s+", "", text).lower()
    if not text:
        return "d20"
    return ALIASES.get(text, text)


def parse(expression: Optional[str]) -> DiceSpec:
    """
    Validate notation without rolling anything

    Raises:
        InvalidExpression(reason="syntax"): notation does not parse
        InvalidExpression(reason="bounds"): more than 100 dice, more than
            1000 sides, zero sides, or keep count outside [1, count]
    """
    match = DICE_PATTERN.match(normalize(expression))
    if not match:
        raise InvalidExpression(
            "Invalid dice. Try d20, 3d6+2, 4d6kh3, adv/dis.",
            reason=InvalidExpression.SYNTAX
        )

    count_text, sides_text, keep_mode, keep_text, mod_text = match.groups()
    spec = DiceSpec(
        count=max(1, int(count_text or "1")),
        sides=int(sides_text),
        keep_mode=keep_mode,
        keep=int(keep_text) if keep_text is not None else None,
        modifier=int(mod_text) if mod_text else 0,
    )

    if spec.count > MAX_DICE or spec.sides > MAX_SIDES:
        raise InvalidExpression(
            f"Too big (<={MAX_DICE} dice, <={MAX_SIDES} sides).",
            reason=InvalidExpression.BOUNDS
        )
    if spec.sides < 1:
        raise InvalidExpression("Dice need at least one side.", reason=InvalidExpression.BOUNDS)
    if spec.keep is not None and not 1 <= spec.keep <= spec.count:
        raise InvalidExpression(
            f"Keep out of range (1..{spec.count}).",
            reason=InvalidExpression.BOUNDS
        )
    return spec


def evaluate(expression: Optional[str], rng: Optional[random.Random] = None) -> DiceResult:
    """
    Roll a dice expression

    Args:
        expression: raw notation as typed by the user
        rng: random source, defaults to the system generator

    Returns:
        DiceResult; expression keeps the caller's original text

    Raises:
        InvalidExpression: see parse()

    Example:
        evaluate("4d6kh3")  ->  rolls=[2, 5, 4, 6], used=[6, 5, 4], total=15
    """
    rng = rng or _default_rng
    spec = parse(expression)

    rolls = [rng.randint(1, spec.sides) for _ in range(spec.count)]
    used = list(rolls)
    if spec.keep_mode is not None:
        used.sort(reverse=(spec.keep_mode == "h"))
        used = used[:spec.keep]

    return DiceResult(
        expression=(expression or "").strip()[:MAX_EXPRESSION_LENGTH] or normalize(expression),
        rolls=rolls,
        used=used,
        modifier=spec.modifier,
        total=sum(used) + spec.modifier,
    )
