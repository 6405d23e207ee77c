"""Tests for board filtering, sorting and column visibility."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from src.dealboard.deals.filters import (
    BoardFilters,
    DateWindow,
    SortOrder,
    filter_deals,
    sort_deals,
    visible_deals,
    visible_stages,
    window_start,
)
from src.dealboard.deals.stages import Stage
from tests.factories import make_deal

NOW = datetime(2024, 5, 20, 9, 0, tzinfo=timezone.utc)


def _board():
    return [
        make_deal("d1", Stage.LEAD, title="Web sitesi", company="Acme", value=500.0,
                  owner_id="u1", owner_name="Ali Veli", created_at=NOW - timedelta(days=2),
                  updated_at=NOW - timedelta(days=1)),
        make_deal("d2", Stage.WON, title="ERP", company="Beta", value=9000.0,
                  created_at=NOW - timedelta(days=40), updated_at=NOW - timedelta(days=3)),
        make_deal("d3", Stage.LOST, title="Mobil", company="Gamma", value=1500.0,
                  owner_id="u2", owner_name="Zeynep Kaya", created_at=NOW - timedelta(days=15),
                  updated_at=NOW - timedelta(hours=2)),
    ]


class TestFilterDeals:
    def test_default_keeps_everything(self):
        assert len(filter_deals(_board(), BoardFilters(), NOW)) == 3

    def test_search_matches_company_and_owner(self):
        assert [d.id for d in filter_deals(_board(), BoardFilters(search="beta"), NOW)] == ["d2"]
        assert [d.id for d in filter_deals(_board(), BoardFilters(search=" zeynep "), NOW)] == ["d3"]

    def test_owner_filters(self):
        assert [d.id for d in filter_deals(_board(), BoardFilters(owner="u1"), NOW)] == ["d1"]
        assert [d.id for d in filter_deals(_board(), BoardFilters(owner="unassigned"), NOW)] == ["d2"]

    def test_date_windows(self):
        last7 = filter_deals(_board(), BoardFilters(date_window=DateWindow.LAST_7), NOW)
        assert [d.id for d in last7] == ["d1"]
        this_month = filter_deals(_board(), BoardFilters(date_window=DateWindow.THIS_MONTH), NOW)
        assert [d.id for d in this_month] == ["d1", "d3"]

    def test_stage_and_value_range(self):
        filters = BoardFilters(stages=[Stage.LEAD, Stage.LOST], min_value=1000)
        assert [d.id for d in filter_deals(_board(), filters, NOW)] == ["d3"]
        assert [d.id for d in filter_deals(_board(), BoardFilters(max_value=500), NOW)] == ["d1"]


class TestSortAndVisibility:
    def test_sort_orders(self):
        deals = _board()
        assert [d.id for d in sort_deals(deals, SortOrder.NEWEST)] == ["d3", "d1", "d2"]
        assert [d.id for d in sort_deals(deals, SortOrder.OLDEST)] == ["d2", "d1", "d3"]
        assert [d.id for d in sort_deals(deals, SortOrder.VALUE_HIGH)] == ["d2", "d3", "d1"]
        assert [d.id for d in sort_deals(deals, SortOrder.VALUE_LOW)] == ["d1", "d3", "d2"]

    def test_visible_deals_filters_then_sorts(self):
        filters = BoardFilters(stages=[Stage.LEAD, Stage.WON], sort=SortOrder.VALUE_HIGH)
        assert [d.id for d in visible_deals(_board(), filters, NOW)] == ["d2", "d1"]

    def test_lost_column_hidden_by_default(self):
        assert Stage.LOST not in visible_stages(BoardFilters())
        assert visible_stages(BoardFilters(show_lost=True))[-1] == Stage.LOST

    def test_window_start(self):
        assert window_start(DateWindow.ALL, NOW) is None
        assert window_start(DateWindow.LAST_30, NOW) == NOW - timedelta(days=30)
        assert window_start(DateWindow.THIS_MONTH, NOW) == datetime(2024, 5, 1, tzinfo=timezone.utc)

    def test_input_not_reordered(self):
        deals = _board()
        sort_deals(deals, SortOrder.VALUE_LOW)
        assert [d.id for d in deals] == ["d1", "d2", "d3"]
