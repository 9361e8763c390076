import random
from datetime import datetime, timedelta, timezone

from weekly_orders.services.aggregator import (
    AggregateSummary,
    OrderRecord,
    aggregate_orders,
    empty_summary,
    latest_records,
    strip_annotation,
    user_summary,
)
from weekly_orders.services.menu_normalizer import CANONICAL_DAYS

WEEK = "2024-03-04"
MENU = {"Lunes": ["Milanesa", "Ensalada"], "Martes": ["Pastas"]}
T0 = datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc)


def record(day, option, user, count, comments=(), minutes=0):
    return OrderRecord(
        week_start=WEEK,
        day=day,
        option=option,
        user_name=user,
        count=count,
        comments=tuple(comments),
        updated_at=T0 + timedelta(minutes=minutes),
    )


def test_three_users_are_summed_per_option():
    rows = [
        record("Lunes", "Milanesa", "user1", 2),
        record("Lunes", "Milanesa", "user2", 1),
        record("Lunes", "Ensalada", "user3", 3),
        record("Martes", "Pastas", "user1", 1),
    ]
    summary = aggregate_orders(rows, MENU, WEEK)

    assert summary.day("Lunes").counts == {"Milanesa": 3, "Ensalada": 3}
    assert summary.day("Martes").counts == {"Pastas": 1}
    assert summary.total == 7


def test_every_canonical_day_is_listed_in_order():
    summary = aggregate_orders([], MENU, WEEK)
    assert [d.day for d in summary.orders] == list(CANONICAL_DAYS)
    assert summary.day("Lunes").counts == {"Milanesa": 0, "Ensalada": 0}
    assert summary.day("Viernes").counts == {}
    assert summary.total == 0


def test_result_does_not_depend_on_row_order():
    rows = [
        record("Lunes", "Milanesa", f"user{i}", i, comments=[f"nota {i}"])
        for i in range(1, 6)
    ]
    expected = aggregate_orders(rows, MENU, WEEK).to_dict()
    for _ in range(5):
        shuffled = rows[:]
        random.shuffle(shuffled)
        assert aggregate_orders(shuffled, MENU, WEEK).to_dict() == expected


def test_duplicate_keys_collapse_to_the_latest_row():
    rows = [
        record("Lunes", "Milanesa", "user1", 5, minutes=0),
        record("Lunes", "Milanesa", "user1", 2, minutes=5),
    ]
    assert len(latest_records(rows)) == 1
    summary = aggregate_orders(rows, MENU, WEEK)
    assert summary.day("Lunes").counts["Milanesa"] == 2


def test_retired_option_is_still_counted():
    rows = [record("Lunes", "Guiso", "user1", 2)]
    summary = aggregate_orders(rows, MENU, WEEK)
    assert summary.day("Lunes").counts == {"Milanesa": 0, "Ensalada": 0, "Guiso": 2}
    assert summary.day("Lunes").nonzero_counts() == {"Guiso": 2}


def test_non_canonical_day_is_ignored():
    rows = [record("Sabado", "Asado", "user1", 2)]
    assert aggregate_orders(rows, MENU, WEEK).total == 0


def test_comments_are_attributed_once_per_author():
    # Both rows of user1 on Monday share the same comment list
    rows = [
        record("Lunes", "Milanesa", "user1", 1, comments=["sin sal"]),
        record("Lunes", "Ensalada", "user1", 1, comments=["sin sal"]),
        record("Lunes", "Milanesa", "user2", 1, comments=["sin sal"]),
    ]
    comments = aggregate_orders(rows, MENU, WEEK).day("Lunes").comments
    assert sorted(comments) == ["sin sal (user1)", "sin sal (user2)"]


def test_already_annotated_comment_is_kept_verbatim():
    rows = [
        record("Lunes", "Milanesa", "user1", 1, comments=["sin sal (user1)", "   "]),
        record("Lunes", "Milanesa", "user2", 1, comments=["sin sal (user1)"]),
    ]
    comments = aggregate_orders(rows, MENU, WEEK).day("Lunes").comments
    assert comments == ["sin sal (user1)"]


def test_strip_annotation():
    assert strip_annotation("sin sal (user1)") == "sin sal"
    assert strip_annotation("  sin sal  ") == "sin sal"
    assert strip_annotation("(user1)") == "(user1)"
    assert strip_annotation("tarta (grande) sin sal") == "tarta (grande) sin sal"


def test_user_summary_lists_only_the_users_days():
    rows = [
        record("Lunes", "Milanesa", "user1", 2, comments=["sin sal"]),
        record("Martes", "Pastas", "user2", 1),
    ]
    summary = user_summary(rows, "user1", WEEK)
    assert summary.user == "user1"
    assert [d.day for d in summary.orders] == ["Lunes"]
    assert summary.day("Lunes").comments == ["sin sal"]


def test_summary_dict_round_trip_keeps_day_order():
    summary = empty_summary(WEEK, MENU)
    summary.updated_at = T0
    data = summary.to_dict()
    data["orders"].reverse()
    restored = AggregateSummary.from_dict(data)
    assert [d.day for d in restored.orders] == list(CANONICAL_DAYS)
    assert restored.updated_at == T0
    assert restored.same_content(summary)
