from flask import (
    Blueprint,
    current_app,
    flash,
    redirect,
    render_template,
    request,
    url_for,
)

from floorboard import current_supervisor, get_api_client, get_reference, local_today
from floorboard.floor_api import (
    fetch_hourly_inspections,
    fetch_hourly_productions,
    fetch_media_link,
    fetch_style_capacity,
    fetch_style_media,
    fetch_style_wip,
    fetch_target_headers,
    save_style_capacity,
)
from floorboard.forms import (
    EntryForm,
    FormMode,
    HourlyInspectionResource,
    HourlyProductionResource,
    MediaLinkResource,
    StyleMediaResource,
    TargetHeaderResource,
)
from floorboard.keys import header_id
from floorboard.metrics import compute_target_preview, to_number
from hourly_targets import board_rows, hour_preview, base_target_per_hour

entry_bp = Blueprint('entry', __name__)


def _flash_notice(notice) -> None:
    if notice is not None:
        flash(notice.message, notice.kind)


def _flash_error(error) -> None:
    if error:
        flash(error, 'error')


def _confirmed() -> bool:
    return (request.form.get('confirm') or '').lower() == 'yes'


def _uploaded_files(*names: str) -> dict:
    """Uploaded files in the shape ``requests`` expects for multipart bodies."""

    files = {}
    for name in names:
        storage = request.files.get(name)
        if storage and storage.filename:
            files[name] = (storage.filename, storage.stream, storage.mimetype)
    return files


def _open_form(resource, rows, editing_id=None) -> EntryForm:
    form = EntryForm(resource, get_api_client(), current_supervisor(), rows or [])
    if editing_id:
        record = form.find(editing_id)
        if record is None:
            flash('That record is no longer available.', 'warning')
        else:
            form.begin_edit(record)
    return form


def _resume_edit(form: EntryForm) -> None:
    """Restore edit mode from a posted ``editing_id``."""

    editing_id = request.form.get('editing_id')
    if editing_id:
        form.begin_edit(form.find(editing_id) or {'_id': editing_id})


# -- target setter ---------------------------------------------------------


def _header_rows(line: str, date: str) -> list:
    if not line or not date:
        return []
    supervisor = current_supervisor()
    rows, error = fetch_target_headers(supervisor.factory, supervisor.building, date, line=line)
    _flash_error(error)
    return rows or []


def _target_preview(values) -> int | None:
    return compute_target_preview(
        values.get('manpower_present'),
        values.get('working_hour'),
        values.get('smv'),
        values.get('plan_efficiency_percent'),
    )


@entry_bp.route('/production-target-setter', methods=['GET', 'POST'])
def target_setter():
    line = request.values.get('line') or ''
    date = request.values.get('date') or local_today()
    rows = _header_rows(line, date)

    if request.method == 'POST':
        form = _open_form(TargetHeaderResource(), rows)
        _resume_edit(form)
        notice = form.save(request.form.to_dict())
        _flash_notice(notice)
        if not notice.is_error:
            return redirect(url_for('entry.target_setter', line=line, date=date))
    else:
        form = _open_form(TargetHeaderResource(), rows, request.args.get('edit'))
        if form.mode is FormMode.CREATE:
            form.values.update({'line': line, 'date': date})

    return render_template(
        'target_setter.html',
        form=form,
        line=line,
        date=date,
        preview=_target_preview(form.values),
    )


@entry_bp.route('/production-target-setter/<header>/delete', methods=['POST'])
def target_setter_delete(header):
    line = request.form.get('line') or ''
    date = request.form.get('date') or local_today()
    if not _confirmed():
        flash('Delete this target header? Confirm to continue.', 'warning')
        return redirect(url_for('entry.target_setter', line=line, date=date))
    form = _open_form(TargetHeaderResource(), _header_rows(line, date))
    _flash_notice(form.delete(header, confirmed=True))
    return redirect(url_for('entry.target_setter', line=line, date=date))


# -- hourly production -----------------------------------------------------


def _selected_header(headers: list, requested: str | None):
    if requested:
        for header in headers:
            if header_id(header) == requested:
                return header
    return headers[0] if headers else None


def _style_panel(header) -> dict:
    """Saved capacity and WIP for the header's style."""

    supervisor = current_supervisor()
    building = header.get('assigned_building') or supervisor.building
    capacity, error = fetch_style_capacity(
        building, header.get('line'), header.get('buyer'), header.get('style')
    )
    _flash_error(error)
    wip, error = fetch_style_wip(
        supervisor.factory,
        building,
        header.get('line'),
        header.get('buyer'),
        header.get('style'),
        header.get('date'),
    )
    _flash_error(error)
    return {
        'capacity': (capacity or {}).get('capacity'),
        'produced': (wip or {}).get('totalAchieved'),
        'wip': (wip or {}).get('wip'),
    }


@entry_bp.route('/hourly-production')
def hourly_production():
    supervisor = current_supervisor()
    line = request.args.get('line') or ''
    date = request.args.get('date') or local_today()
    headers = _header_rows(line, date)
    header = _selected_header(headers, request.args.get('header'))

    records = []
    if header is not None:
        records, error = fetch_hourly_productions(
            header_id=header_id(header), production_user_id=supervisor.user_id
        )
        _flash_error(error)
        records = records or []

    header_form = _open_form(
        TargetHeaderResource(production_fields=True), headers, request.args.get('edit')
    )
    if header_form.mode is FormMode.CREATE:
        header_form.values.update({'line': line, 'date': date})

    board = None
    if header is not None:
        selected_hour = request.args.get('hour') or 1
        board = {
            'rows': board_rows(records, base_target_per_hour(header)),
            'preview': hour_preview(header, records, selected_hour, request.args.get('achieved')),
            'hours': range(1, max(int(to_number(header.get('working_hour'), 1.0)), 1) + 1),
            'style': _style_panel(header),
        }

    return render_template(
        'hourly_production.html',
        line=line,
        date=date,
        headers=headers,
        header=header,
        header_form=header_form,
        preview=_target_preview(header_form.values),
        board=board,
    )


@entry_bp.route('/hourly-production/header', methods=['POST'])
def hourly_production_header():
    line = request.form.get('line') or ''
    date = request.form.get('date') or local_today()
    form = _open_form(TargetHeaderResource(production_fields=True), _header_rows(line, date))
    _resume_edit(form)
    _flash_notice(form.save(request.form.to_dict()))
    return redirect(url_for('entry.hourly_production', line=line, date=date))


@entry_bp.route('/hourly-production/header/<header>/delete', methods=['POST'])
def hourly_production_header_delete(header):
    line = request.form.get('line') or ''
    date = request.form.get('date') or local_today()
    if _confirmed():
        form = _open_form(TargetHeaderResource(production_fields=True), _header_rows(line, date))
        _flash_notice(form.delete(header, confirmed=True))
    else:
        flash('Delete this target header? Confirm to continue.', 'warning')
    return redirect(url_for('entry.hourly_production', line=line, date=date))


@entry_bp.route('/hourly-production/capacity', methods=['POST'])
def hourly_production_capacity():
    supervisor = current_supervisor()
    line = request.form.get('line') or ''
    date = request.form.get('date') or local_today()
    selected = request.form.get('headerId') or ''
    back = redirect(url_for('entry.hourly_production', line=line, date=date, header=selected))

    header = _selected_header(_header_rows(line, date), selected)
    if header is None or header_id(header) != selected:
        flash('Select a header first.', 'error')
        return back

    capacity = to_number(request.form.get('capacity'), None)
    if capacity is None or capacity < 0:
        flash('Capacity must be a non-negative number.', 'error')
        return back
    if not supervisor.user_id:
        flash('Missing user id for capacity user.', 'error')
        return back

    _, error = save_style_capacity(
        {
            'assigned_building': header.get('assigned_building') or supervisor.building,
            'line': header.get('line'),
            'buyer': header.get('buyer'),
            'style': header.get('style'),
            'date': header.get('date') or date,
            'capacity': int(capacity) if capacity.is_integer() else capacity,
            'user': {
                'id': supervisor.user_id,
                'user_name': supervisor.user_name or 'Unknown',
                'role': supervisor.role,
            },
        }
    )
    if error:
        flash(error, 'error')
    else:
        flash('Capacity saved/updated successfully.', 'success')
    return back


@entry_bp.route('/hourly-production/record', methods=['POST'])
def hourly_production_record():
    supervisor = current_supervisor()
    line = request.form.get('line') or ''
    date = request.form.get('date') or local_today()
    selected = request.form.get('headerId') or ''
    records, error = fetch_hourly_productions(
        header_id=selected, production_user_id=supervisor.user_id
    )
    _flash_error(error)
    form = _open_form(HourlyProductionResource(), records or [])
    notice = form.save(request.form.to_dict())
    _flash_notice(notice)
    return redirect(
        url_for('entry.hourly_production', line=line, date=date, header=selected)
    )


@entry_bp.route('/hourly-production/record/<record>/delete', methods=['POST'])
def hourly_production_record_delete(record):
    line = request.form.get('line') or ''
    date = request.form.get('date') or local_today()
    selected = request.form.get('headerId') or ''
    if _confirmed():
        form = _open_form(HourlyProductionResource(), [])
        _flash_notice(form.delete(record, confirmed=True))
    else:
        flash('Delete this hourly record? Confirm to continue.', 'warning')
    return redirect(
        url_for('entry.hourly_production', line=line, date=date, header=selected)
    )


# -- defect entry ----------------------------------------------------------


def _inspection_rows() -> list:
    supervisor = current_supervisor()
    rows, error = fetch_hourly_inspections(
        local_today(),
        user_id=supervisor.user_id or None,
        building=supervisor.building,
        factory=supervisor.factory,
        limit=500,
    )
    _flash_error(error)
    return rows or []


def _posted_defects() -> list:
    names = request.form.getlist('defect_name')
    quantities = request.form.getlist('defect_qty')
    defects = []
    seen = set()
    for index, name in enumerate(names):
        name = (name or '').strip()
        if not name or name in seen:
            continue
        seen.add(name)
        quantity = quantities[index] if index < len(quantities) else ''
        defects.append({'name': name, 'quantity': quantity})
    return defects


def _group_by_line(rows: list) -> dict:
    grouped: dict = {}
    for row in rows:
        grouped.setdefault(row.get('line') or '-', []).append(row)
    return grouped


@entry_bp.route('/defect-entry', methods=['GET', 'POST'])
def defect_entry():
    rows = _inspection_rows()
    if request.method == 'POST':
        form = _open_form(HourlyInspectionResource(), rows)
        _resume_edit(form)
        values = request.form.to_dict()
        values['selectedDefects'] = _posted_defects()
        notice = form.save(values)
        _flash_notice(notice)
        if not notice.is_error:
            return redirect(url_for('entry.defect_entry'))
    else:
        form = _open_form(HourlyInspectionResource(), rows, request.args.get('edit'))

    return render_template(
        'defect_entry.html',
        form=form,
        grouped=_group_by_line(form.rows),
        today=local_today(),
        defect_options=get_reference().defects,
    )


@entry_bp.route('/defect-entry/<entry>/delete', methods=['POST'])
def defect_entry_delete(entry):
    if not _confirmed():
        flash('Are you sure you want to delete this entry? Confirm to continue.', 'warning')
        return redirect(url_for('entry.defect_entry'))
    form = _open_form(HourlyInspectionResource(), [])
    _flash_notice(form.delete(entry, confirmed=True))
    return redirect(url_for('entry.defect_entry'))


# -- style media -----------------------------------------------------------


def _style_media_rows() -> list:
    supervisor = current_supervisor()
    rows, error = fetch_style_media(supervisor.factory, supervisor.building)
    _flash_error(error)
    return rows or []


@entry_bp.route('/style-media-register', methods=['GET', 'POST'])
def style_media_register():
    rows = _style_media_rows()
    if request.method == 'POST':
        form = _open_form(StyleMediaResource(), rows)
        _resume_edit(form)
        notice = form.save(
            request.form.to_dict(), files=_uploaded_files('imageFile', 'videoFile')
        )
        _flash_notice(notice)
        if not notice.is_error:
            return redirect(url_for('entry.style_media_register'))
    else:
        form = _open_form(StyleMediaResource(), rows, request.args.get('edit'))
        if form.mode is FormMode.CREATE:
            form.values['effectiveFrom'] = local_today()

    return render_template('style_media.html', form=form)


@entry_bp.route('/style-media-register/<media>/delete', methods=['POST'])
def style_media_delete(media):
    if not _confirmed():
        flash('Delete this style media? Confirm to continue.', 'warning')
        return redirect(url_for('entry.style_media_register', edit=media))
    form = _open_form(StyleMediaResource(), [])
    _flash_notice(form.delete(media, confirmed=True))
    return redirect(url_for('entry.style_media_register'))


# -- media links -----------------------------------------------------------


@entry_bp.route('/media-links', methods=['GET', 'POST'])
def media_links():
    supervisor = current_supervisor()
    record = None
    if supervisor.user_id:
        record, error = fetch_media_link(supervisor.user_id)
        _flash_error(error)
    else:
        flash('Please log in to manage media links.', 'warning')

    form = _open_form(MediaLinkResource(), [record] if record else [])
    if record:
        form.begin_edit(record)

    if request.method == 'POST':
        notice = form.save(
            request.form.to_dict(), files=_uploaded_files('imageFile', 'videoFile')
        )
        _flash_notice(notice)
        if not notice.is_error:
            current_app.logger.info("Media links updated for user %s", supervisor.user_id)
            return redirect(url_for('entry.media_links'))

    return render_template('media_links.html', form=form, record=record)
