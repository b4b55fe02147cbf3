import re
from dataclasses import dataclass
from datetime import date
from typing import Optional


MONTH_PATTERN = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def parse_month(month: Optional[str]) -> tuple[int, int]:
    if not month:
        raise ValueError("month is required (format: YYYY-MM)")
    match = MONTH_PATTERN.match(month.strip())
    if not match:
        raise ValueError(f"Invalid month '{month}' (format: YYYY-MM)")
    return int(match.group(1)), int(match.group(2))


def month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - date.resolution
    return date(year, month + 1, 1) - date.resolution


def resolve_month(month: Optional[str]) -> Period:
    year, month_num = parse_month(month)
    return Period(
        f"{year:04d}-{month_num:02d}",
        date(year, month_num, 1),
        month_end(year, month_num),
    )
