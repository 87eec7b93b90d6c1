from __future__ import annotations

from pathlib import Path
from typing import Iterable

_SIZE_UNITS = ("B", "KB", "MB", "GB")


class CityListUnavailable(RuntimeError):
    """Raised when the configured city list cannot be read."""


def load_cities(path: str | Path) -> list[str]:
    try:
        content = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise CityListUnavailable(f"Failed to read cities file '{path}': {exc}") from exc
    return [line.strip() for line in content.splitlines() if line.strip()]


def match_city_from_file_name(file_name: str, cities: Iterable[str]) -> str | None:
    """Return the longest known city name contained in ``file_name``.

    Longer names win so a branch such as "北京美兆" is preferred over "北京".
    """
    for city in sorted(cities, key=len, reverse=True):
        if city and city in file_name:
            return city
    return None


def format_file_size(size_bytes: int) -> str:
    if size_bytes <= 0:
        return "0 B"
    exponent = 0
    while size_bytes >= 1024 ** (exponent + 1) and exponent < len(_SIZE_UNITS) - 1:
        exponent += 1
    value = round(size_bytes / (1024**exponent), 2)
    rendered = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{rendered} {_SIZE_UNITS[exponent]}"
