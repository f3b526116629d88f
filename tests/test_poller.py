import dataclasses
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from floorboard.exceptions import ApiResponseError, RequestCancelled  # noqa: E402
from floorboard.poller import (  # noqa: E402
    GRID_VIEW,
    TV_VIEW,
    DashboardFilters,
    MultiSourcePoller,
    PollerRegistry,
)

FILTERS = DashboardFilters('K-2', 'A-2', '2024-05-01')

SEGMENTS = [
    {'line': 'Line-10', 'buyer': 'HM', 'style': 'S2'},
    {'line': 'Line-2', 'buyer': 'HM', 'style': 'S1'},
]


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class StubClient:
    def __init__(self):
        self.segments = list(SEGMENTS)
        self.headers = []
        self.media = []
        self.wip = {}
        self.productions = []
        self.calls = []
        self.fail = {}

    def _record(self, name, **kwargs):
        self.calls.append((name, kwargs))
        error = self.fail.get(name)
        if error is not None:
            raise error

    def count(self, name):
        return sum(1 for call, _ in self.calls if call == name)

    def fetch_dashboard_segments(self, factory, building, date, line=None, token=None):
        self._record('segments', line=line)
        return list(self.segments)

    def fetch_target_headers(self, factory, building, date, line=None, token=None):
        self._record('headers')
        return list(self.headers)

    def fetch_style_media(self, factory, building, date=None, token=None):
        self._record('media')
        return list(self.media)

    def fetch_style_wip(self, factory, building, line, buyer, style, date, token=None):
        self._record('wip', line=line, buyer=buyer, style=style)
        return self.wip.get(line)

    def fetch_hourly_productions(self, token=None, **kwargs):
        self._record('productions', **kwargs)
        return list(self.productions)


def test_incomplete_filters_issue_no_requests():
    client = StubClient()
    poller = MultiSourcePoller(client, DashboardFilters('K-2', '', '2024-05-01'))
    poller.tick()
    assert client.calls == []
    snap = poller.snapshot()
    assert snap.segments == ()
    assert snap.headers == {}


def test_first_tick_loads_every_source_and_sorts_segments():
    client = StubClient()
    client.wip = {'Line-2': {'todayWip': 5}, 'Line-10': {'todayWip': 7}}
    poller = MultiSourcePoller(client, FILTERS, GRID_VIEW)
    poller.tick()
    assert client.count('segments') == 1
    assert client.count('headers') == 1
    assert client.count('media') == 1
    assert client.count('wip') == 2
    snap = poller.snapshot()
    assert [row['line'] for row in snap.segments] == ['Line-2', 'Line-10']
    assert snap.wip['line-2__hm__s1'] == {'todayWip': 5}
    assert snap.tick == 1
    assert snap.loading is False
    assert snap.updated_at is not None


def test_tick_gating_for_grid_view():
    client = StubClient()
    poller = MultiSourcePoller(client, FILTERS, GRID_VIEW)
    for _ in range(13):
        poller.tick()
    assert client.count('segments') == 13
    # headers at ticks 0, 6, 12; media at 0, 12; WIP at 0 and 9 for two rows
    assert client.count('headers') == 3
    assert client.count('media') == 2
    assert client.count('wip') == 4
    assert client.count('productions') == 0


def test_headers_merge_keeps_latest_duplicate():
    client = StubClient()
    client.headers = [
        {'_id': 'old', 'line': 'Line-2', 'buyer': 'HM', 'style': 'S1', 'updatedAt': '2024-05-01T08:00:00Z'},
        {'_id': 'new', 'line': 'line-2 ', 'buyer': 'hm', 'style': 'S1', 'updatedAt': '2024-05-01T09:00:00Z'},
        {'_id': 'stale', 'line': 'Line-2', 'buyer': 'HM', 'style': 'S1', 'createdAt': '2024-04-30T09:00:00Z'},
    ]
    poller = MultiSourcePoller(client, FILTERS)
    poller.fetch_headers()
    assert poller.snapshot().headers['line-2__hm__s1']['_id'] == 'new'


def test_media_first_document_wins():
    client = StubClient()
    client.media = [
        {'factory': 'K-2', 'assigned_building': 'A-2', 'buyer': 'HM', 'style': 'S1', 'color_model': 'Red', 'imageSrc': 'a.png'},
        {'factory': 'K-2', 'assigned_building': 'A-2', 'buyer': 'HM', 'style': 'S1', 'color_model': 'Red', 'imageSrc': 'b.png'},
    ]
    poller = MultiSourcePoller(client, FILTERS)
    poller.fetch_style_media()
    assert poller.snapshot().media['k-2__a-2__hm__s1__red']['imageSrc'] == 'a.png'


def test_segment_failure_clears_rows_and_sets_banner():
    client = StubClient()
    poller = MultiSourcePoller(client, FILTERS)
    poller.tick()
    client.fail['segments'] = ApiResponseError('Upstream down', status=500)
    poller.tick()
    snap = poller.snapshot()
    assert snap.segments == ()
    assert snap.error == 'Upstream down'
    client.fail.pop('segments')
    poller.tick()
    assert poller.snapshot().error == ''


def test_header_failure_clears_map():
    client = StubClient()
    client.headers = [{'_id': 'h1', 'line': 'Line-2', 'buyer': 'HM', 'style': 'S1'}]
    poller = MultiSourcePoller(client, FILTERS)
    poller.fetch_headers()
    client.fail['headers'] = ApiResponseError('nope')
    poller.fetch_headers()
    assert poller.snapshot().headers == {}


def test_cancelled_fetch_is_swallowed_and_leaves_cache():
    client = StubClient()
    poller = MultiSourcePoller(client, FILTERS)
    poller.tick()
    client.fail['segments'] = RequestCancelled()
    poller.fetch_segments()
    snap = poller.snapshot()
    assert len(snap.segments) == 2
    assert snap.error == ''


def test_wip_uses_header_identity_and_skips_incomplete_rows():
    client = StubClient()
    client.segments = [
        {'line': 'Line-1', 'buyer': 'HM', 'style': 'S1'},
        {'line': 'Line-3', 'buyer': '', 'style': 'S9'},
    ]
    client.headers = [{'_id': 'h1', 'line': 'Line-1', 'buyer': 'hm', 'style': 's1'}]
    poller = MultiSourcePoller(client, FILTERS)
    poller.fetch_segments()
    poller.fetch_headers()
    poller.fetch_wip()
    wip_calls = [kwargs for name, kwargs in client.calls if name == 'wip']
    assert wip_calls == [{'line': 'Line-1', 'buyer': 'hm', 'style': 's1'}]


def test_wip_item_error_leaves_entry_stale():
    client = StubClient()
    client.wip = {'Line-2': {'todayWip': 1}, 'Line-10': {'todayWip': 2}}
    poller = MultiSourcePoller(client, FILTERS)
    poller.tick()

    def flaky(factory, building, line, buyer, style, date, token=None):
        if line == 'Line-2':
            raise ApiResponseError('boom')
        return {'todayWip': 99}

    client.fetch_style_wip = flaky
    poller.fetch_wip()
    wip = poller.snapshot().wip
    assert wip['line-2__hm__s1'] == {'todayWip': 1}
    assert wip['line-10__hm__s2'] == {'todayWip': 99}


def test_wip_pool_respects_concurrency_limit():
    client = StubClient()
    client.segments = [{'line': f'Line-{n}', 'buyer': 'HM', 'style': 'S'} for n in range(1, 13)]
    view = dataclasses.replace(GRID_VIEW, wip_concurrency=3)
    poller = MultiSourcePoller(client, FILTERS, view)
    poller.fetch_segments()
    poller.fetch_wip()
    assert client.count('wip') == 12
    assert poller.wip_pool.max_in_flight <= 3


def test_tv_view_fetches_current_wip_and_variance():
    client = StubClient()
    client.headers = [{'_id': 'h2', 'line': 'Line-2', 'buyer': 'HM', 'style': 'S1'}]
    client.productions = [{'hour': 1, 'varianceQty': -3}]
    poller = MultiSourcePoller(client, FILTERS, TV_VIEW)
    poller.tick()
    assert client.count('wip') == 1
    productions = [kwargs for name, kwargs in client.calls if name == 'productions']
    assert productions == [{'header_id': 'h2'}]
    snap = poller.snapshot()
    assert snap.variance_key == 'line-2__hm__s1'
    assert snap.variance == ({'hour': 1, 'varianceQty': -3},)


def test_tv_variance_without_header_queries_by_line():
    client = StubClient()
    poller = MultiSourcePoller(client, FILTERS, TV_VIEW)
    poller.tick()
    productions = [kwargs for name, kwargs in client.calls if name == 'productions']
    assert productions == [
        {'building': 'A-2', 'line': 'Line-2', 'date': '2024-05-01', 'factory': 'K-2'}
    ]


def test_advance_card_wraps_and_refreshes_variance():
    client = StubClient()
    poller = MultiSourcePoller(client, FILTERS, TV_VIEW)
    poller.tick()
    assert poller.snapshot().current_segment['line'] == 'Line-2'
    poller.advance_card()
    snap = poller.snapshot()
    assert snap.current_segment['line'] == 'Line-10'
    assert snap.variance_key == 'line-10__hm__s2'
    poller.advance_card()
    assert poller.snapshot().current_segment['line'] == 'Line-2'


def test_single_card_does_not_slide_or_refetch():
    client = StubClient()
    client.segments = [SEGMENTS[1]]
    poller = MultiSourcePoller(client, FILTERS, TV_VIEW)
    poller.tick()
    before = (client.count('productions'), client.count('wip'))
    for _ in range(6):
        poller.advance_card()
    assert (client.count('productions'), client.count('wip')) == before
    assert poller.snapshot().current_index == 0


def test_touch_after_idle_requests_tick():
    clock = FakeClock()
    poller = MultiSourcePoller(StubClient(), FILTERS, idle_seconds=60, clock=clock)
    assert not poller.paused
    clock.now += 61
    assert poller.paused
    poller.touch()
    assert not poller.paused
    assert poller._immediate is True


def test_registry_shares_and_reaps_pollers():
    clock = FakeClock()
    registry = PollerRegistry(StubClient(), reap_seconds=300, autostart=False, clock=clock)
    first = registry.get(FILTERS, GRID_VIEW)
    assert registry.get(FILTERS, GRID_VIEW) is first
    assert registry.get(FILTERS, TV_VIEW) is not first
    assert len(registry) == 2
    clock.now += 301
    assert registry.reap() == 2
    assert len(registry) == 0


def test_registry_applies_wip_concurrency():
    registry = PollerRegistry(StubClient(), wip_concurrency=2, autostart=False)
    poller = registry.get(FILTERS, GRID_VIEW)
    assert poller.view.wip_concurrency == 2
    assert poller.wip_pool.limit == 2


def test_stop_cancels_in_flight_work():
    client = StubClient()
    poller = MultiSourcePoller(client, FILTERS)
    poller.start()
    assert poller.running
    poller.stop()
    assert not poller.running
    before = poller.snapshot().segments
    client.segments = [{'line': 'Line-9', 'buyer': 'X', 'style': 'Y'}]
    # The stopped scope cancels every later fetch before it is applied.
    poller.fetch_segments()
    assert poller.snapshot().segments == before


def test_registry_rejects_malformed_dates():
    registry = PollerRegistry(StubClient(), autostart=False)
    with pytest.raises(ValueError):
        registry.get(DashboardFilters('K-2', 'A-2', 'not-a-date'), GRID_VIEW)
    with pytest.raises(ValueError):
        registry.get(DashboardFilters('K-2', 'A-2', '2024-13-40'), GRID_VIEW)
    assert len(registry) == 0


def test_registry_caps_live_pollers():
    clock = FakeClock()
    registry = PollerRegistry(StubClient(), autostart=False, clock=clock, max_pollers=2)
    oldest = registry.get(DashboardFilters('K-2', 'A-2', '2024-05-01'), GRID_VIEW)
    clock.now += 1
    kept = registry.get(DashboardFilters('K-2', 'A-2', '2024-05-02'), GRID_VIEW)
    clock.now += 1
    registry.get(DashboardFilters('K-2', 'A-2', '2024-05-03'), GRID_VIEW)
    assert len(registry) == 2
    assert oldest._stop.is_set()
    assert not kept._stop.is_set()
