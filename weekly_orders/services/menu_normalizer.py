"""
Menu Normalizer

Maps the day labels of an uploaded menu onto the five canonical weekdays.

    >>> normalize_menu({"LUNES": ["A"], "jueves": []})
    {'Lunes': ['A']}
"""

import logging
import unicodedata
from typing import Any, Iterable, Mapping, Optional

from weekly_orders.core.errors import InvalidMenuError

logger = logging.getLogger(__name__)

# Fixed Monday..Friday order used by every rendered or exported view
CANONICAL_DAYS: tuple[str, ...] = ("Lunes", "Martes", "Miércoles", "Jueves", "Viernes")

# Recognized spellings after upper-casing and accent folding
DAY_ALIASES: dict[str, str] = {
    "LUNES": "Lunes",
    "MARTES": "Martes",
    "MIERCOLES": "Miércoles",
    "JUEVES": "Jueves",
    "VIERNES": "Viernes",
}

DEFAULT_MENU: dict[str, list[str]] = {
    day: ["Opción 1", "Opción 2", "Opción 3"] for day in CANONICAL_DAYS
}

CanonicalMenu = dict[str, list[str]]


def fold_label(label: str) -> str:
    """Upper-case and strip diacritics: ``"miércoles "`` -> ``"MIERCOLES"``."""
    decomposed = unicodedata.normalize("NFKD", str(label).strip())
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return stripped.upper()


def canonical_day(label: str) -> Optional[str]:
    """Return the canonical day for ``label`` or None if unrecognized."""
    return DAY_ALIASES.get(fold_label(label))


def day_index(day: str) -> int:
    """Position of a canonical day; unknown days sort last."""
    try:
        return CANONICAL_DAYS.index(day)
    except ValueError:
        return len(CANONICAL_DAYS)


def _clean_options(options: Any) -> list[str]:
    if options is None or isinstance(options, (str, bytes)):
        options = [options] if options else []
    cleaned = []
    for option in options:
        if option is None:
            continue
        text = str(option).strip()
        if text:
            cleaned.append(text)
    return cleaned


def normalize_menu(raw: Mapping[str, Iterable[Any]]) -> CanonicalMenu:
    """
    Normalize a raw day -> options mapping into the canonical menu.

    Unrecognized day labels are dropped with a warning, as are days whose
    options are empty after trimming. Days are returned in Monday..Friday
    order. When two labels fold to the same day, their options are merged
    in input order.

    Raises:
        InvalidMenuError: when no day keeps at least one option
    """
    if not isinstance(raw, Mapping):
        raise InvalidMenuError("Menu must be a mapping of day to options")

    collected: dict[str, list[str]] = {}
    for label, options in raw.items():
        day = canonical_day(label)
        if day is None:
            logger.warning(f"Dropping unrecognized day label {label!r}")
            continue

        cleaned = _clean_options(options)
        if not cleaned:
            logger.debug(f"Day {day} has no options, skipping")
            continue
        collected.setdefault(day, []).extend(cleaned)

    if not collected:
        raise InvalidMenuError(
            "El menú no contiene opciones válidas",
            detail="At least one weekday with one option is required",
        )

    return {day: collected[day] for day in CANONICAL_DAYS if day in collected}


def menu_options(menu: Mapping[str, Iterable[str]], day: str) -> list[str]:
    """Options offered on ``day`` (empty if the day is absent)."""
    return list(menu.get(day, []))
