import re
from functools import lru_cache

_WHITESPACE = re.compile(r"\s+")


def normalize_merchant(value: str | None) -> str:
    if not value:
        return ""
    return _WHITESPACE.sub(" ", value.strip()).casefold()


def wildcard_to_regex(pattern: str) -> str:
    """Translate a ``*``/``?`` wildcard into an anchored regular expression."""
    escaped = re.escape(pattern)
    escaped = escaped.replace(r"\*", ".*").replace(r"\?", ".")
    return f"^{escaped}$"


@lru_cache(maxsize=1024)
def compile_pattern(pattern: str, case_sensitive: bool) -> re.Pattern[str]:
    flags = 0 if case_sensitive else re.IGNORECASE
    return re.compile(pattern, flags)


def parse_amount_range(pattern: str) -> tuple[float | None, float | None]:
    """Parse ``"min,max"``; either side may be empty. Raises ValueError when malformed."""
    parts = pattern.split(",")
    if len(parts) != 2:
        raise ValueError("amount range must look like 'min,max'")
    low_raw, high_raw = (part.strip() for part in parts)
    low = float(low_raw) if low_raw else None
    high = float(high_raw) if high_raw else None
    if low is not None and high is not None and low > high:
        raise ValueError(f"amount range min {low} is greater than max {high}")
    return low, high


def amount_in_range(amount: float, low: float | None, high: float | None) -> bool:
    if low is not None and amount < low:
        return False
    if high is not None and amount > high:
        return False
    return True


def contains_text(haystack: str, needle: str, case_sensitive: bool) -> bool:
    if not case_sensitive:
        return needle.casefold() in haystack.casefold()
    return needle in haystack
