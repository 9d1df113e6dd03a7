import numbers
from decimal import ROUND_HALF_UP, Decimal


def round_half_up(value, digits: int = 0) -> float:
    quant = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(quant, rounding=ROUND_HALF_UP))


def format_number(n) -> str:
    """Abbreviate large counts: 1_500_000 -> "1.5M", 2_000 -> "2.0K", 0.5 -> "1"."""
    if n >= 1_000_000:
        return f"{round_half_up(n / 1_000_000, 1)}M"
    elif n >= 1_000:
        return f"{round_half_up(n / 1_000, 1)}K"
    elif isinstance(n, numbers.Integral):
        return str(int(n))
    else:
        return str(int(round_half_up(n, 0)))


def percent(numerator, denominator, digits: int) -> float:
    if not denominator:
        return 0.0
    return round_half_up(numerator / denominator * 100, digits)


def strip_concept_suffix(column: str) -> str:
    return str(column).replace("_concept_id", "")
