import io
import os
import sys
from pathlib import Path

import pytest
from openpyxl import load_workbook

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import floorboard  # noqa: E402
from floorboard import create_app  # noqa: E402
from floorboard.exceptions import ApiResponseError  # noqa: E402
from floorboard.poller import GRID_VIEW, TV_VIEW, DashboardFilters, PollerRegistry  # noqa: E402

DATE = '2024-05-01'


class StubApi:
    """Stands in for ``FloorApiClient`` in both the pollers and the routes."""

    def __init__(self):
        self.segments = [
            {'line': 'Line-2', 'buyer': 'HM', 'style': 'S1',
             'production': {'targetQty': 100, 'achievedQty': 95, 'varianceQty': -5},
             'quality': {'totalInspected': 50, 'totalPassed': 45}},
            {'line': 'Line-1', 'buyer': 'ZARA', 'style': 'Z9',
             'production': {'targetQty': 100, 'achievedQty': 60, 'varianceQty': -40}},
        ]
        self.headers = [
            {'_id': 'h1', 'line': 'Line-1', 'date': DATE, 'buyer': 'ZARA', 'style': 'Z9',
             'manpower_present': 10, 'smv': 10, 'plan_efficiency_percent': 100, 'working_hour': 8},
        ]
        self.productions = [{'_id': 'p1', 'hour': 1, 'achievedQty': 50}]
        self.inspections = [
            {'_id': 'i1', 'hourLabel': '1st Hour', 'line': 'Line-1', 'building': 'A-2',
             'inspectedQty': 100, 'passedQty': 90, 'defectivePcs': 5,
             'selectedDefects': [{'name': '301 - OPEN SEAM', 'quantity': 6}]},
        ]
        self.media = []
        self.media_link = None
        self.summary = {
            'success': True,
            'summary': {'production': {'totalTargetQty': 400, 'totalAchievedQty': 300}},
            'buildings': [
                {'building': 'B-2', 'production': {'targetQty': 200, 'achievedQty': 100}},
                {'building': 'A-2', 'production': {'targetQty': 200, 'achievedQty': 200}},
            ],
            'lines': [],
            'bestBuildingSelection': {'building': 'A-2'},
        }
        self.compare = {
            'success': True,
            'summary': {'targetQty': 10},
            'rows': [
                {'building': 'A-2', 'line': 'Line-1', 'buyer': 'ZARA', 'style': 'Z9'},
                {'building': 'A-2', 'line': 'Line-1', 'buyer': 'HM', 'style': 'S1'},
            ],
        }
        self.errors = {}
        self.calls = []
        self.requests = []
        self.response = {'success': True}

    def _record(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        if name in self.errors:
            raise self.errors[name]

    # poller reads
    def fetch_dashboard_segments(self, factory, building, date, line=None, token=None):
        self._record('segments', factory, building, date, line=line)
        return list(self.segments)

    def fetch_style_wip(self, *args, token=None):
        self._record('wip', *args)
        return {'todayWip': 3, 'totalWip': 30}

    # shared reads
    def fetch_target_headers(self, factory, building, date, line=None, token=None):
        self._record('headers', factory, building, date, line=line)
        return [h for h in self.headers if not line or line == 'ALL' or h['line'] == line]

    def fetch_style_media(self, factory, building, date=None, token=None):
        self._record('media', factory, building)
        return list(self.media)

    def fetch_hourly_productions(self, token=None, **kwargs):
        self._record('productions', **kwargs)
        return list(self.productions)

    def fetch_hourly_inspections(self, date, user_id=None, building=None, factory=None, limit=500):
        self._record('inspections', date, user_id=user_id, building=building, factory=factory, limit=limit)
        return list(self.inspections)

    def fetch_floor_summary(self, factory, date, building=None):
        self._record('summary', factory, date, building=building)
        return self.summary

    def fetch_floor_compare(self, factory, date_from, date_to, group_by='segment', line='ALL', building=None):
        self._record('compare', factory, date_from, date_to, group_by=group_by, line=line)
        return self.compare

    def fetch_style_capacity(self, building, line, buyer, style):
        self._record('capacity', building, line, buyer, style)
        return {'capacity': 1200}

    def save_style_capacity(self, payload):
        self._record('save_capacity', payload)
        return dict(payload)

    def fetch_media_link(self, user_id):
        self._record('media_link', user_id)
        return self.media_link

    # writes
    def request(self, method, identifier, *segments, **kwargs):
        self.requests.append({'method': method, 'identifier': identifier, 'segments': segments, **kwargs})
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


@pytest.fixture
def floor_app(monkeypatch):
    api = StubApi()
    monkeypatch.setattr(floorboard, 'FloorApiClient', lambda *a, **k: api)
    os.environ.setdefault('SECRET_KEY', 'test')
    app = create_app()
    app.testing = True
    app.config['POLLERS'] = PollerRegistry(api, autostart=False)
    return app, api


def _login(client, **overrides):
    with client.session_transaction() as session:
        session['user_id'] = 'u1'
        session['user_name'] = 'Rahim'
        session['factory'] = 'K-2'
        session['assigned_building'] = 'A-2'
        session['role'] = 'supervisor'
        session.update(overrides)


def test_root_redirects_to_full_dashboard(floor_app):
    app, _ = floor_app
    response = app.test_client().get('/')
    assert response.status_code == 302
    assert response.headers['Location'].endswith('/floor-dashboard/full')


def test_dashboard_pages_render(floor_app):
    app, _ = floor_app
    client = app.test_client()
    _login(client)
    full = client.get('/floor-dashboard/full')
    assert full.status_code == 200
    assert b'dashboard-grid' in full.data
    tv = client.get('/floor-dashboard/tv')
    assert b'variance-chart' in tv.data


def test_dashboard_data_grid(floor_app):
    app, api = floor_app
    client = app.test_client()
    _login(client)
    poller = app.config['POLLERS'].get(DashboardFilters('K-2', 'A-2', DATE), GRID_VIEW)
    poller.tick()

    response = client.get(f'/floor-dashboard/data?view=grid&date={DATE}')
    assert response.status_code == 200
    assert response.headers['Cache-Control'] == 'no-store'
    data = response.get_json()
    assert [card['line'] for card in data['cards']] == ['Line-1', 'Line-2']
    assert data['cards'][0]['headerId'] == 'h1'
    assert data['cards'][0]['wipToday'] == 3
    assert data['totals']['targetQty'] == 200
    assert data['filters'] == {'factory': 'K-2', 'building': 'A-2', 'date': DATE, 'line': 'ALL'}


def test_dashboard_data_tv_and_chart(floor_app):
    app, api = floor_app
    client = app.test_client()
    _login(client)
    api.productions = [{'hour': 1, 'varianceQty': -4}, {'hour': 2, 'varianceQty': 6}]
    poller = app.config['POLLERS'].get(DashboardFilters('K-2', 'A-2', DATE), TV_VIEW)
    poller.tick()

    data = client.get(f'/floor-dashboard/data?view=tv&date={DATE}').get_json()
    assert data['card']['line'] == 'Line-1'
    assert [p['variance'] for p in data['variance']] == [-4, 6]

    chart = client.get(f'/floor-dashboard/variance.png?date={DATE}')
    assert chart.status_code == 200
    assert chart.mimetype == 'image/png'
    assert chart.data.startswith(b'\x89PNG')


def test_dashboard_data_rejects_unknown_view(floor_app):
    app, _ = floor_app
    client = app.test_client()
    _login(client)
    assert client.get(f'/floor-dashboard/data?view=wall&date={DATE}').status_code == 400


def test_dashboard_script_skips_hidden_tabs_and_polls_on_focus(floor_app):
    app, _ = floor_app
    response = app.test_client().get('/static/js/floorboard.js')
    script = response.get_data(as_text=True)
    response.close()
    assert response.status_code == 200
    assert 'if (document.hidden) return;' in script
    assert "window.addEventListener('focus', run);" in script
    assert "document.addEventListener('visibilitychange', run);" in script


def test_dashboard_data_rejects_malformed_date_without_starting_poller(floor_app):
    app, _ = floor_app
    client = app.test_client()
    _login(client)
    assert client.get('/floor-dashboard/data?view=grid&date=yesterday').status_code == 400
    assert len(app.config['POLLERS']) == 0


def test_floor_summary_data(floor_app):
    app, api = floor_app
    client = app.test_client()
    _login(client)
    data = client.get(f'/floor-summary/data?date={DATE}').get_json()
    assert [point['label'] for point in data['series']] == ['A-2', 'B-2']
    assert data['planPercent'] == 75.0
    assert data['bestBuildingSelection'] == {'building': 'A-2'}
    assert data['chart'].startswith('data:image/png;base64,')
    assert api.calls[-1] == ('summary', ('K-2', DATE), {'building': None})


def test_floor_summary_upstream_error(floor_app):
    app, api = floor_app
    client = app.test_client()
    _login(client)
    api.errors['summary'] = ApiResponseError('Summary unavailable', status=500)
    assert client.get(f'/floor-summary/data?date={DATE}').status_code == 502


def test_floor_compare_data(floor_app):
    app, _ = floor_app
    client = app.test_client()
    _login(client)
    data = client.get(f'/floor-compare/data?from={DATE}&to={DATE}&groupBy=line').get_json()
    assert [row['buyer'] for row in data['grouped']['A-2']['Line-1']] == ['HM', 'ZARA']
    assert client.get('/floor-compare/data?groupBy=style').status_code == 400
    assert client.get('/floor-compare').status_code == 200


def test_quality_table_data_and_export(floor_app):
    app, api = floor_app
    client = app.test_client()
    _login(client)
    data = client.get(f'/quality-table/data?date={DATE}').get_json()
    assert data['defectRows'][0]['name'] == '301 - OPEN SEAM'
    assert data['totalRates']['rft'] == '90.00'
    assert data['building'] == 'A-2'
    assert api.calls[-1][2]['limit'] == 1000

    export = client.get(f'/quality-table/export.xlsx?date={DATE}')
    assert export.status_code == 200
    assert 'quality-A-2-2024-05-01.xlsx' in export.headers['Content-Disposition']
    ws = load_workbook(io.BytesIO(export.data)).active
    assert ws['A2'].value == '301 - OPEN SEAM'


def test_target_setter_lists_headers(floor_app):
    app, _ = floor_app
    client = app.test_client()
    _login(client)
    response = client.get(f'/production-target-setter?line=Line-1&date={DATE}&edit=h1')
    assert response.status_code == 200
    assert b'Edit target header' in response.data
    assert b'ZARA' in response.data


def test_target_setter_create_redirects_with_toast(floor_app):
    app, api = floor_app
    client = app.test_client()
    _login(client)
    api.response = {'success': True, 'data': {'_id': 'h2'}}
    form = {
        'line': 'Line-2', 'date': DATE, 'buyer': 'HM', 'style': 'S1',
        'total_manpower': '30', 'manpower_present': '28', 'working_hour': '8',
        'smv': '10', 'plan_efficiency_percent': '70',
    }
    response = client.post('/production-target-setter', data=form, follow_redirects=True)
    assert response.status_code == 200
    assert b'Target header created successfully.' in response.data
    sent = api.requests[0]
    assert sent['method'] == 'POST'
    assert sent['json']['manpower_absent'] == 2


def test_target_setter_validation_rerenders(floor_app):
    app, api = floor_app
    client = app.test_client()
    _login(client)
    response = client.post('/production-target-setter', data={'line': 'Line-2', 'date': DATE, 'buyer': 'HM'})
    assert response.status_code == 200
    assert b'Buyer and style are required.' in response.data
    assert api.requests == []


def test_target_setter_update_from_editing_id(floor_app):
    app, api = floor_app
    client = app.test_client()
    _login(client)
    form = {'editing_id': 'h1', 'line': 'Line-1', 'date': DATE, 'buyer': 'ZARA', 'style': 'Z10'}
    client.post('/production-target-setter', data=form)
    assert api.requests[0]['method'] == 'PATCH'
    assert api.requests[0]['segments'] == ('h1',)


def test_delete_requires_confirmation(floor_app):
    app, api = floor_app
    client = app.test_client()
    _login(client)
    response = client.post(
        '/production-target-setter/h1/delete', data={'line': 'Line-1', 'date': DATE}, follow_redirects=True
    )
    assert b'Confirm to continue.' in response.data
    assert api.requests == []

    api.response = ApiResponseError('gone', status=404)
    response = client.post(
        '/production-target-setter/h1/delete',
        data={'line': 'Line-1', 'date': DATE, 'confirm': 'yes'},
        follow_redirects=True,
    )
    assert b'Header was already deleted (404). Syncing list.' in response.data
    assert api.requests[0]['method'] == 'DELETE'


def test_hourly_production_board(floor_app):
    app, _ = floor_app
    client = app.test_client()
    _login(client)
    response = client.get(f'/hourly-production?line=Line-1&date={DATE}&hour=2&achieved=70')
    assert response.status_code == 200
    assert b'Hourly board' in response.data
    assert b'116.67%' in response.data


def test_hourly_production_duplicate_hour(floor_app):
    app, api = floor_app
    client = app.test_client()
    _login(client)
    response = client.post(
        '/hourly-production/record',
        data={'line': 'Line-1', 'date': DATE, 'headerId': 'h1', 'hour': '1', 'achievedQty': '40'},
        follow_redirects=True,
    )
    assert b'You already saved data for hour 1.' in response.data
    assert api.requests == []


def test_hourly_production_record_saved(floor_app):
    app, api = floor_app
    client = app.test_client()
    _login(client)
    client.post(
        '/hourly-production/record',
        data={'line': 'Line-1', 'date': DATE, 'headerId': 'h1', 'hour': '2', 'achievedQty': '40'},
    )
    assert api.requests[0]['json']['productionUser']['id'] == 'u1'


def test_hourly_production_shows_saved_capacity(floor_app):
    app, api = floor_app
    client = app.test_client()
    _login(client)
    response = client.get(f'/hourly-production?line=Line-1&date={DATE}')
    assert b'value="1200"' in response.data
    assert ('capacity', ('A-2', 'Line-1', 'ZARA', 'Z9'), {}) in api.calls


def test_hourly_production_capacity_saved(floor_app):
    app, api = floor_app
    client = app.test_client()
    _login(client)
    response = client.post(
        '/hourly-production/capacity',
        data={'line': 'Line-1', 'date': DATE, 'headerId': 'h1', 'capacity': '1500'},
        follow_redirects=True,
    )
    assert b'Capacity saved/updated successfully.' in response.data
    payload = [args[0] for name, args, _ in api.calls if name == 'save_capacity'][0]
    assert payload['capacity'] == 1500
    assert payload['style'] == 'Z9'
    assert payload['user'] == {'id': 'u1', 'user_name': 'Rahim', 'role': 'supervisor'}


def test_hourly_production_capacity_rejects_negative(floor_app):
    app, api = floor_app
    client = app.test_client()
    _login(client)
    response = client.post(
        '/hourly-production/capacity',
        data={'line': 'Line-1', 'date': DATE, 'headerId': 'h1', 'capacity': '-4'},
        follow_redirects=True,
    )
    assert b'Capacity must be a non-negative number.' in response.data
    assert not [call for call in api.calls if call[0] == 'save_capacity']


def test_defect_entry_posts_selected_defects(floor_app):
    app, api = floor_app
    client = app.test_client()
    _login(client)
    data = {
        'hour': '2nd Hour', 'line': 'Line-1', 'inspectedQty': '80', 'passedQty': '75',
        'defect_name': ['301 - OPEN SEAM', '', '301 - OPEN SEAM'],
        'defect_qty': ['4', '1', '9'],
    }
    response = client.post('/defect-entry', data=data)
    assert response.status_code == 302
    entry = api.requests[0]['json']['entries'][0]
    assert entry['selectedDefects'] == [{'name': '301 - OPEN SEAM', 'quantity': 4}]


def test_defect_entry_duplicate_is_rejected(floor_app):
    app, api = floor_app
    client = app.test_client()
    _login(client)
    response = client.post('/defect-entry', data={'hour': '1st Hour', 'line': 'Line-1'})
    assert response.status_code == 200
    assert b'already exists' in response.data
    assert api.requests == []


def test_style_media_upload(floor_app):
    app, api = floor_app
    client = app.test_client()
    _login(client)
    api.response = {'success': True, 'message': 'Style media saved'}
    data = {
        'factory': 'K-2', 'assigned_building': 'A-2', 'buyer': 'HM', 'style': 'S1',
        'color_model': 'Red', 'effectiveFrom': DATE,
        'imageFile': (io.BytesIO(b'png-bytes'), 'style.png'),
    }
    response = client.post(
        '/style-media-register', data=data, content_type='multipart/form-data', follow_redirects=True
    )
    assert b'Style media saved' in response.data
    files = api.requests[0]['files']
    assert files['imageFile'][0] == 'style.png'


def test_media_links_requires_login(floor_app):
    app, api = floor_app
    client = app.test_client()
    response = client.get('/media-links')
    assert b'Please log in to manage media links.' in response.data
    assert api.calls == []


def test_media_links_update_existing(floor_app):
    app, api = floor_app
    client = app.test_client()
    _login(client)
    api.media_link = {'userId': 'u1', 'imageSrc': 'https://cdn/a.png', 'videoSrc': ''}
    response = client.post(
        '/media-links', data={'imageSrc': 'https://cdn/b.png', 'videoSrc': ''}, follow_redirects=True
    )
    assert b'Media updated successfully.' in response.data
    assert api.requests[0]['method'] == 'PATCH'
