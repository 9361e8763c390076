"""
Order Aggregator

Turns the flat list of per-user order rows of one week into the weekly
aggregate: option totals per day plus the attributed comment list.

The aggregate is a pure function of its inputs. Running it twice on the same
snapshot, or on a shuffled copy, yields the same result.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from weekly_orders.core.timeutil import as_utc, parse_timestamp
from weekly_orders.services.menu_normalizer import CANONICAL_DAYS

# "text (author)": anything, one space, a parenthesized name at the very end
ANNOTATED_COMMENT = re.compile(r"^.+\s\([^)]+\)$")
TRAILING_AUTHOR = re.compile(r"\s\([^)]+\)$")


@dataclass(frozen=True)
class OrderRecord:
    """
    One user's counter for one option on one day of one week.

    Attributes:
        week_start: Week key the row belongs to
        day: Canonical day name
        option: Menu option label
        user_name: Author of the row
        count: Number of portions (never negative)
        comments: Comments of the user for that day
        updated_at: Last modification time, used to pick the latest duplicate
    """
    week_start: str
    day: str
    option: str
    user_name: str
    count: int = 0
    comments: tuple[str, ...] = ()
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.week_start, self.day, self.option, self.user_name)

    @classmethod
    def from_row(cls, row: Any) -> "OrderRecord":
        """Build a record from an ORM row or any object with the same attributes."""
        return cls(
            week_start=row.week_start,
            day=row.day,
            option=row.option,
            user_name=row.user_name,
            count=int(row.count or 0),
            comments=tuple(row.comments or ()),
            updated_at=as_utc(row.updated_at),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OrderRecord":
        """Build a record from a change feed payload."""
        return cls(
            week_start=data["week_start"],
            day=data["day"],
            option=data["option"],
            user_name=data["user_name"],
            count=int(data.get("count") or 0),
            comments=tuple(data.get("comments") or ()),
            updated_at=parse_timestamp(data.get("updated_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "week_start": self.week_start,
            "day": self.day,
            "option": self.option,
            "user_name": self.user_name,
            "count": self.count,
            "comments": list(self.comments),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class DaySummary:
    """Totals and comments of one day."""
    day: str
    counts: dict[str, int] = field(default_factory=dict)
    comments: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def nonzero_counts(self) -> dict[str, int]:
        """Counts with zero entries filtered out, for display."""
        return {option: count for option, count in self.counts.items() if count > 0}

    def to_dict(self) -> dict[str, Any]:
        return {"day": self.day, "counts": dict(self.counts), "comments": list(self.comments)}


@dataclass
class AggregateSummary:
    """
    Aggregate of a week across all users.

    ``orders`` always lists the days in Monday..Friday order. ``user`` is
    set only for single-user views ("my orders").
    """
    week_start: str
    orders: list[DaySummary] = field(default_factory=list)
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    user: Optional[str] = None

    @property
    def total(self) -> int:
        return sum(day.total for day in self.orders)

    def day(self, name: str) -> Optional[DaySummary]:
        for day in self.orders:
            if day.day == name:
                return day
        return None

    def counts_by_day(self) -> dict[str, dict[str, int]]:
        return {day.day: dict(day.counts) for day in self.orders}

    def same_content(self, other: "AggregateSummary") -> bool:
        """Compare totals and comments, ignoring authorship and timestamps."""
        return [d.to_dict() for d in self.orders] == [d.to_dict() for d in other.orders]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "week_start": self.week_start,
            "user": self.user,
            "orders": [day.to_dict() for day in self.orders],
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "updated_by": self.updated_by,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AggregateSummary":
        orders = [
            DaySummary(
                day=item["day"],
                counts={str(k): int(v) for k, v in (item.get("counts") or {}).items()},
                comments=list(item.get("comments") or []),
            )
            for item in data.get("orders") or []
        ]
        return cls(
            week_start=data.get("week_start", ""),
            orders=sort_days(orders),
            updated_at=parse_timestamp(data.get("updated_at")),
            updated_by=data.get("updated_by"),
            user=data.get("user"),
        )


def sort_days(days: Iterable[DaySummary]) -> list[DaySummary]:
    """Order day summaries Monday..Friday."""
    order = {name: index for index, name in enumerate(CANONICAL_DAYS)}
    return sorted(days, key=lambda d: order.get(d.day, len(order)))


def is_annotated(comment: str) -> bool:
    """True when the comment already ends with ``" (author)"``."""
    return bool(ANNOTATED_COMMENT.match(comment))


def strip_annotation(comment: str) -> str:
    """Remove a trailing ``" (author)"`` that a user typed by hand."""
    text = comment.strip()
    if is_annotated(text):
        return TRAILING_AUTHOR.sub("", text)
    return text


def latest_records(records: Iterable[OrderRecord]) -> list[OrderRecord]:
    """
    Collapse records sharing a composite key to the most recent one.

    The store enforces one row per key; this guards against snapshots that
    mix an old and a new version of the same row (e.g. a change feed event
    racing a full fetch). Ties on ``updated_at`` keep the higher count so the
    choice does not depend on input order.
    """
    latest: dict[tuple[str, str, str, str], OrderRecord] = {}
    for record in records:
        current = latest.get(record.key)
        if current is None or _version(record) > _version(current):
            latest[record.key] = record
    return list(latest.values())


def _version(record: OrderRecord) -> tuple:
    stamp = record.updated_at.timestamp() if record.updated_at else float("-inf")
    return (stamp, record.count, record.comments)


def empty_summary(week_start: str, menu: Mapping[str, Iterable[str]]) -> AggregateSummary:
    """Zeroed aggregate for every option of the menu."""
    orders = []
    for day in CANONICAL_DAYS:
        counts = {option: 0 for option in menu.get(day, [])}
        orders.append(DaySummary(day=day, counts=counts))
    return AggregateSummary(week_start=week_start, orders=orders)


def aggregate_orders(
    records: Iterable[Any],
    menu: Mapping[str, Iterable[str]],
    week_start: Optional[str] = None,
) -> AggregateSummary:
    """
    Aggregate the order rows of one week.

    Args:
        records: OrderRecord instances or ORM rows of a single week
        menu: Canonical menu; its options start at zero
        week_start: Week key for the result (taken from the records if omitted)

    Returns:
        AggregateSummary with days in Monday..Friday order. Options present
        in the records but absent from the menu (retired mid-week) are
        counted too. Records naming a non-canonical day are ignored.
    """
    normalized = [r if isinstance(r, OrderRecord) else OrderRecord.from_row(r) for r in records]
    rows = latest_records(normalized)
    if week_start is None:
        week_start = rows[0].week_start if rows else ""

    summary = empty_summary(week_start, menu)
    by_day = {day.day: day for day in summary.orders}

    # Deterministic walk: key order, independent of the input order
    rows.sort(key=lambda r: (r.day, r.user_name, r.option))

    comment_keys: dict[str, dict[tuple[str, ...], str]] = {day: {} for day in CANONICAL_DAYS}

    for record in rows:
        day = by_day.get(record.day)
        if day is None:
            continue

        if record.count > 0:
            day.counts[record.option] = day.counts.get(record.option, 0) + record.count

        seen = comment_keys[record.day]
        for comment in record.comments:
            if not comment or not comment.strip():
                continue
            if is_annotated(comment):
                key = ("annotated", comment)
                rendered = comment
            else:
                key = ("raw", comment, record.user_name)
                rendered = f"{comment} ({record.user_name})"
            if key not in seen:
                seen[key] = rendered

    for day in summary.orders:
        day.comments = list(comment_keys[day.day].values())

    return summary


def user_summary(records: Iterable[Any], user_name: str, week_start: str) -> AggregateSummary:
    """
    Per-user view of a week ("my orders").

    Only days where the user has rows are listed; comments are the user's
    own, unannotated.
    """
    normalized = [r if isinstance(r, OrderRecord) else OrderRecord.from_row(r) for r in records]
    rows = [r for r in latest_records(normalized) if r.user_name == user_name]
    rows.sort(key=lambda r: r.option)

    days: dict[str, DaySummary] = {}
    for record in rows:
        day = days.setdefault(record.day, DaySummary(day=record.day))
        day.counts[record.option] = record.count
        for comment in record.comments:
            if comment not in day.comments:
                day.comments.append(comment)

    return AggregateSummary(week_start=week_start, orders=sort_days(days.values()), user=user_name)
