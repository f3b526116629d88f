from flask import (
    Blueprint,
    abort,
    current_app,
    jsonify,
    make_response,
    redirect,
    render_template,
    request,
    send_file,
    url_for,
)
import io

from floorboard import current_supervisor, get_pollers, get_reference, local_today
from floorboard.charts import render_target_chart, render_variance_chart
from floorboard.dashboard import (
    build_dashboard_view,
    group_compare_rows,
    summary_series,
)
from floorboard.floor_api import (
    fetch_floor_compare,
    fetch_floor_summary,
    fetch_hourly_inspections,
)
from floorboard.metrics import plan_percent
from floorboard.poller import VIEWS, DashboardFilters, PollerSnapshot
from floorboard.quality import build_quality_table, export_quality_workbook, line_options

main_bp = Blueprint('main', __name__)

COMPARE_GROUPS = ('line', 'building', 'segment')


def _dashboard_filters() -> DashboardFilters:
    supervisor = current_supervisor()
    return DashboardFilters.from_mapping(
        request.args,
        {
            'factory': supervisor.factory,
            'building': supervisor.building,
            'date': local_today(),
        },
    )


def _dashboard_snapshot(filters: DashboardFilters, view_name: str) -> PollerSnapshot:
    """Snapshot of the shared poller for ``filters``; empty when incomplete."""

    view = VIEWS.get(view_name)
    if view is None:
        abort(400, description=f"Unknown dashboard view '{view_name}'.")
    if not filters.complete:
        return PollerSnapshot()
    if not filters.valid_date:
        abort(400, description=f"Invalid date '{filters.date}'.")
    return get_pollers().get(filters, view).snapshot()


def _no_store(response):
    response.headers['Cache-Control'] = 'no-store'
    return response


@main_bp.route('/')
def index():
    return redirect(url_for('main.floor_dashboard_full'))


@main_bp.route('/floor-dashboard')
def floor_dashboard():
    return redirect(url_for('main.floor_dashboard_full', **request.args.to_dict()))


def _render_dashboard(view_name: str):
    filters = _dashboard_filters()
    view = VIEWS[view_name]
    return render_template(
        'floor_dashboard.html',
        view=view,
        filters=filters,
        refresh_ms=int(view.refresh_seconds * 1000),
    )


@main_bp.route('/floor-dashboard/full')
def floor_dashboard_full():
    return _render_dashboard('grid')


@main_bp.route('/floor-dashboard/tv')
def floor_dashboard_tv():
    return _render_dashboard('tv')


@main_bp.route('/floor-dashboard/data')
def floor_dashboard_data():
    filters = _dashboard_filters()
    view_name = request.args.get('view') or 'grid'
    snapshot = _dashboard_snapshot(filters, view_name)
    return _no_store(jsonify(build_dashboard_view(snapshot, filters, view_name)))


@main_bp.route('/floor-dashboard/variance.png')
def floor_dashboard_variance_chart():
    filters = _dashboard_filters()
    snapshot = _dashboard_snapshot(filters, 'tv')
    points = build_dashboard_view(snapshot, filters, 'tv')['variance']
    response = make_response(render_variance_chart(points))
    response.mimetype = 'image/png'
    return _no_store(response)


@main_bp.route('/floor-summary')
def floor_summary():
    supervisor = current_supervisor()
    return render_template(
        'floor_summary.html',
        factory=request.args.get('factory') or supervisor.factory,
        building=request.args.get('building', supervisor.building),
        date=request.args.get('date') or local_today(),
    )


@main_bp.route('/floor-summary/data')
def floor_summary_data():
    supervisor = current_supervisor()
    reference = get_reference()
    factory = request.args.get('factory') or supervisor.factory
    date = request.args.get('date') or local_today()
    building = (request.args.get('building') or '').strip()

    data, error = fetch_floor_summary(factory, date, building=building or None)
    if error:
        abort(502, description=error)

    all_buildings = not building
    items = data.get('buildings') if all_buildings else data.get('lines')
    series = summary_series(
        items or [],
        all_buildings,
        line_order=reference.lines,
        building_order=reference.buildings,
    )
    production = (data.get('summary') or {}).get('production') or {}
    payload = {
        'summary': data.get('summary'),
        'lines': data.get('lines') or [],
        'buildings': data.get('buildings') or [],
        'bestLineSelection': data.get('bestLineSelection'),
        'bestBuildingSelection': data.get('bestBuildingSelection'),
        'series': series,
        'planPercent': plan_percent(
            production.get('totalAchievedQty'), production.get('totalTargetQty')
        ),
        'chart': render_target_chart(
            series, 'label', reference.buildings if all_buildings else reference.lines
        ),
    }
    return _no_store(jsonify(payload))


@main_bp.route('/floor-compare')
def floor_compare():
    supervisor = current_supervisor()
    today = local_today()
    return render_template(
        'floor_compare.html',
        factory=request.args.get('factory') or supervisor.factory,
        building=request.args.get('building', ''),
        date_from=request.args.get('from') or today,
        date_to=request.args.get('to') or today,
        group_by=request.args.get('groupBy') or 'segment',
        line=request.args.get('line') or 'ALL',
        groups=COMPARE_GROUPS,
    )


@main_bp.route('/floor-compare/data')
def floor_compare_data():
    supervisor = current_supervisor()
    today = local_today()
    group_by = request.args.get('groupBy') or 'segment'
    if group_by not in COMPARE_GROUPS:
        abort(400, description=f"Unsupported grouping '{group_by}'.")

    data, error = fetch_floor_compare(
        request.args.get('factory') or supervisor.factory,
        request.args.get('from') or today,
        request.args.get('to') or today,
        group_by=group_by,
        line=request.args.get('line') or 'ALL',
        building=request.args.get('building') or None,
    )
    if error:
        abort(502, description=error)

    rows = data.get('rows') or []
    payload = {
        'summary': data.get('summary'),
        'series': data.get('series') or [],
        'rows': rows,
        'meta': data.get('meta') or {},
        'grouped': group_compare_rows(rows),
    }
    return _no_store(jsonify(payload))


def _quality_table():
    supervisor = current_supervisor()
    date = request.args.get('date') or local_today()
    line = request.args.get('line') or None
    rows, error = fetch_hourly_inspections(
        date, building=supervisor.building, factory=supervisor.factory, limit=1000
    )
    if error:
        abort(502, description=error)
    table = build_quality_table(rows, line=line, hours=get_reference().hours)
    table['lineOptions'] = line_options(rows, get_reference().lines)
    table['date'] = date
    table['line'] = line or ''
    table['building'] = supervisor.building
    return table


@main_bp.route('/quality-table')
def quality_table():
    return render_template(
        'quality_table.html',
        date=request.args.get('date') or local_today(),
        line=request.args.get('line') or '',
    )


@main_bp.route('/quality-table/data')
def quality_table_data():
    return _no_store(jsonify(_quality_table()))


@main_bp.route('/quality-table/export.xlsx')
def quality_table_export():
    table = _quality_table()
    content = export_quality_workbook(table, title=f"Quality {table['date']}")
    current_app.logger.info(
        "Exported quality table for %s on %s", table['building'], table['date']
    )
    filename = f"quality-{table['building'] or 'all'}-{table['date']}.xlsx"
    return send_file(
        io.BytesIO(content),
        mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
        as_attachment=True,
        download_name=filename,
    )
