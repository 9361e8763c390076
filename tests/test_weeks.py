from datetime import datetime

import pytest

from weekly_orders.core.weeks import WeekKeyResolver


def test_calendar_week_anchors_on_monday():
    resolver = WeekKeyResolver()
    # Wednesday 2024-03-06
    assert resolver.resolve(datetime(2024, 3, 6, 12, 0)) == "2024-03-04"
    assert resolver.resolve(datetime(2024, 3, 4, 0, 0)) == "2024-03-04"
    assert resolver.policy == "calendar"


def test_sunday_belongs_to_the_week_that_started_six_days_earlier():
    resolver = WeekKeyResolver()
    assert resolver.resolve(datetime(2024, 3, 10, 23, 59)) == "2024-03-04"


def test_cutover_rolls_to_next_monday():
    resolver = WeekKeyResolver(cutover_weekday=4, cutover_hour=15)
    # Friday before the cutover hour stays on the current week
    assert resolver.resolve(datetime(2024, 3, 8, 14, 59)) == "2024-03-04"
    assert resolver.resolve(datetime(2024, 3, 8, 15, 0)) == "2024-03-11"
    assert resolver.resolve(datetime(2024, 3, 9, 10, 0)) == "2024-03-11"
    assert resolver.resolve(datetime(2024, 3, 11, 8, 0)) == "2024-03-11"
    assert resolver.policy == "cutover:4@15h"


def test_override_snaps_to_its_monday():
    resolver = WeekKeyResolver(override="2024-03-07")
    assert resolver.resolve(datetime(2030, 1, 1)) == "2024-03-04"
    assert resolver.policy == "override:2024-03-04"


@pytest.mark.parametrize("kwargs", [
    {"cutover_weekday": 7},
    {"cutover_hour": 24},
    {"override": "not-a-date"},
])
def test_invalid_configuration_rejected(kwargs):
    with pytest.raises(ValueError):
        WeekKeyResolver(**kwargs)
