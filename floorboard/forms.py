"""Create/edit/delete flow shared by the data-entry screens.

Each screen pairs an :class:`EntryForm` with a resource describing the
upstream endpoint: how to validate input, shape payloads, spot duplicates
and which HTTP verbs to use.  The form itself only tracks the
``create``/``editing`` mode, the loaded rows and the busy flags, and turns
every outcome into a :class:`Notice` for the page toast.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping
from urllib.parse import urlparse

from hourly_targets import ensure_hour_unsaved

from .exceptions import ApiResponseError, FloorApiError, FormValidationError, RequestCancelled
from .keys import header_id
from .metrics import manpower_absent, to_number

logger = logging.getLogger(__name__)


class FormMode(enum.Enum):
    CREATE = "create"
    EDITING = "editing"


@dataclass(frozen=True)
class Notice:
    message: str
    kind: str = "info"

    @property
    def is_error(self) -> bool:
        return self.kind == "error"


@dataclass(frozen=True)
class Supervisor:
    """Identity of the signed-in supervisor as stored in the session."""

    user_id: str = ""
    user_name: str = ""
    factory: str = ""
    building: str = ""
    role: str = ""
    phone: str = ""


def _text(values: Mapping[str, Any], name: str) -> str:
    value = values.get(name)
    return "" if value is None else str(value).strip()


def _number(value: Any) -> int | float:
    """Form text as a number the way ``Number("")`` reads it (blank is 0)."""

    number = to_number(value, 0.0)
    return int(number) if float(number).is_integer() else number


def _string_or_blank(value: Any) -> str:
    return "" if value is None else str(value)


class Resource:
    """Base description of one upstream collection."""

    label = "record"
    endpoint = ""
    missing_is_deleted = False
    supports_delete = True

    create_success = "Saved."
    update_success = "Updated."
    delete_success = "Deleted."
    already_deleted = "Record was already deleted."
    save_fallback = "Save failed"
    delete_fallback = "Delete failed"

    fields: tuple = ()

    def record_id(self, record: Mapping[str, Any] | None) -> str:
        return header_id(record)

    def to_values(self, record: Mapping[str, Any]) -> dict:
        return {name: _string_or_blank(record.get(name)) for name in self.fields}

    def empty_values(self, supervisor: Supervisor) -> dict:
        return {name: "" for name in self.fields}

    def validate(self, values: Mapping[str, Any], supervisor: Supervisor, files=None) -> None:
        """Raise :class:`FormValidationError` for incomplete input."""

    def duplicate_message(self, values, rows, supervisor: Supervisor, editing_id) -> str | None:
        return None

    def check_identity(self, supervisor: Supervisor) -> None:
        """Raise :class:`FormValidationError` when the session lacks identity."""

    def success_message(self, action: str, body: Mapping[str, Any]) -> str:
        return {
            "create": self.create_success,
            "update": self.update_success,
            "delete": self.delete_success,
        }[action]

    def create(self, client, values, supervisor: Supervisor, files=None) -> dict:
        raise NotImplementedError

    def update(self, client, record_id, values, supervisor: Supervisor, files=None) -> dict:
        raise NotImplementedError

    def delete(self, client, record_id, supervisor: Supervisor) -> dict:
        raise NotImplementedError


class TargetHeaderResource(Resource):
    """Target setter headers for one line and date.

    With ``production_fields`` set (the production input screen) the run day
    and colour/model become mandatory as well.
    """

    label = "target header"
    endpoint = "target_headers"
    missing_is_deleted = True
    create_success = "Target header created successfully."
    update_success = "Target header updated successfully."
    delete_success = "Target header deleted."
    already_deleted = "Header was already deleted (404). Syncing list."
    save_fallback = "Failed to save target setter header."
    delete_fallback = "Failed to delete header."

    fields = (
        "buyer",
        "style",
        "total_manpower",
        "manpower_present",
        "manpower_absent",
        "working_hour",
        "plan_quantity",
        "plan_efficiency_percent",
        "smv",
        "capacity",
        "run_day",
        "color_model",
    )
    _numeric = (
        "total_manpower",
        "manpower_present",
        "working_hour",
        "plan_quantity",
        "plan_efficiency_percent",
        "smv",
        "capacity",
    )

    def __init__(self, production_fields: bool = False) -> None:
        self.production_fields = production_fields

    def to_values(self, record):
        values = super().to_values(record)
        values["line"] = _string_or_blank(record.get("line"))
        values["date"] = _string_or_blank(record.get("date"))
        return values

    def validate(self, values, supervisor, files=None):
        if not supervisor.building:
            raise FormValidationError("Supervisor not authenticated or no assigned building.")
        if not _text(values, "line"):
            raise FormValidationError("Please select a line first.")
        if not _text(values, "date"):
            raise FormValidationError("Please select a date.")
        if self.production_fields:
            required = ("buyer", "style", "run_day", "color_model")
            if not all(_text(values, name) for name in required):
                raise FormValidationError("Buyer, Style, Run day and Color/Model are required.")
        elif not (_text(values, "buyer") and _text(values, "style")):
            raise FormValidationError("Buyer and style are required.")

    def payload(self, values, supervisor) -> dict:
        body = {
            "date": _text(values, "date"),
            "assigned_building": supervisor.building,
            "line": _text(values, "line"),
            "buyer": _text(values, "buyer"),
            "style": _text(values, "style"),
        }
        if supervisor.factory:
            body["factory"] = supervisor.factory
        for name in self._numeric:
            body[name] = _number(values.get(name))
        absent = _text(values, "manpower_absent")
        if absent:
            body["manpower_absent"] = _number(absent)
        else:
            computed = manpower_absent(values.get("total_manpower"), values.get("manpower_present"))
            if computed is not None:
                body["manpower_absent"] = computed
        if self.production_fields or _text(values, "run_day"):
            body["run_day"] = _number(values.get("run_day"))
        if self.production_fields or _text(values, "color_model"):
            body["color_model"] = _text(values, "color_model")
        return body

    def create(self, client, values, supervisor, files=None):
        return client.request(
            "POST",
            self.endpoint,
            json=self.payload(values, supervisor),
            fallback=self.save_fallback,
        )

    def update(self, client, record_id, values, supervisor, files=None):
        return client.request(
            "PATCH",
            self.endpoint,
            record_id,
            json=self.payload(values, supervisor),
            fallback=self.save_fallback,
        )

    def delete(self, client, record_id, supervisor):
        return client.request(
            "DELETE", self.endpoint, record_id, fallback=self.delete_fallback
        )


class HourlyProductionResource(Resource):
    """Achieved quantity per hour against one target header."""

    label = "hourly record"
    endpoint = "hourly_productions"
    create_success = "Hourly record saved successfully."
    update_success = "Hourly record updated successfully."
    delete_success = "Hourly record deleted."
    save_fallback = "Failed to save hourly production record"
    delete_fallback = "Failed to delete hourly record"
    fields = ("headerId", "hour", "achievedQty")

    def validate(self, values, supervisor, files=None):
        if not _text(values, "headerId"):
            raise FormValidationError("Missing headerId")
        achieved = to_number(_text(values, "achievedQty") or None, None)
        if achieved is None or achieved < 0:
            raise FormValidationError("Please enter a valid achieved qty for this hour.")

    def duplicate_message(self, values, rows, supervisor, editing_id):
        if editing_id:
            return None
        try:
            ensure_hour_unsaved(rows, values.get("hour"))
        except FormValidationError as exc:
            return str(exc)
        return None

    def check_identity(self, supervisor):
        if not supervisor.user_id:
            raise FormValidationError("Missing user id for productionUser.")

    def create(self, client, values, supervisor, files=None):
        payload = {
            "headerId": _text(values, "headerId"),
            "hour": _number(values.get("hour")),
            "achievedQty": round(to_number(values.get("achievedQty"), 0.0)),
            "productionUser": {
                "id": supervisor.user_id,
                "Production_user_name": supervisor.user_name or "Unknown",
                "phone": supervisor.phone,
                "bio": supervisor.role,
            },
        }
        return client.request(
            "POST", self.endpoint, json=payload, fallback=self.save_fallback
        )

    def update(self, client, record_id, values, supervisor, files=None):
        return client.request(
            "PATCH",
            self.endpoint,
            record_id,
            json={"achievedQty": round(to_number(values.get("achievedQty"), 0.0))},
            fallback=self.save_fallback,
        )

    def delete(self, client, record_id, supervisor):
        return client.request(
            "DELETE", self.endpoint, record_id, fallback=self.delete_fallback
        )


class HourlyInspectionResource(Resource):
    """Hourly end-of-line quality inspections."""

    label = "inspection"
    endpoint = "hourly_inspections"
    create_success = "Entry created successfully!"
    update_success = "Entry updated successfully!"
    delete_success = "Entry deleted successfully!"
    save_fallback = "Failed to save (Status: {status})"
    delete_fallback = "Failed to delete"
    fields = ("hour", "line", "inspectedQty", "passedQty", "defectivePcs", "afterRepair")

    def to_values(self, record):
        values = {
            "hour": _string_or_blank(record.get("hourLabel")),
            "line": _string_or_blank(record.get("line")),
        }
        for name in self.fields[2:]:
            values[name] = str(record.get(name) or "")
        values["selectedDefects"] = [
            {"name": d.get("name") or "", "quantity": str(d.get("quantity") or "")}
            for d in record.get("selectedDefects") or []
            if isinstance(d, Mapping)
        ]
        return values

    def empty_values(self, supervisor):
        values = super().empty_values(supervisor)
        values["selectedDefects"] = []
        return values

    def validate(self, values, supervisor, files=None):
        if not _text(values, "hour"):
            raise FormValidationError("Please select Working Hour.")
        if not _text(values, "line"):
            raise FormValidationError("Please select Line.")

    def duplicate_message(self, values, rows, supervisor, editing_id):
        hour = _text(values, "hour")
        line = _text(values, "line")
        for row in rows:
            if (
                row.get("hourLabel") == hour
                and row.get("line") == line
                and row.get("building") == supervisor.building
                and (editing_id is None or self.record_id(row) != editing_id)
            ):
                # Updates of an existing entry are never blocked.
                if editing_id:
                    return None
                return (
                    f"An entry for {hour} - {line} already exists. "
                    "Please edit the existing entry instead of creating a new one."
                )
        return None

    def check_identity(self, supervisor):
        if not supervisor.user_id:
            raise FormValidationError("Missing user identity (auth).")
        if not supervisor.building:
            raise FormValidationError("Building information is missing. Please login again.")
        if not supervisor.factory:
            raise FormValidationError("Factory information is missing. Please login again.")

    def payload(self, values, supervisor) -> dict:
        defects = []
        for defect in values.get("selectedDefects") or []:
            name = (defect.get("name") or "").strip()
            if name:
                defects.append({"name": name, "quantity": _number(defect.get("quantity"))})
        return {
            "hour": _text(values, "hour"),
            "line": _text(values, "line"),
            "building": supervisor.building,
            "factory": supervisor.factory,
            "inspectedQty": _number(values.get("inspectedQty")),
            "passedQty": _number(values.get("passedQty")),
            "defectivePcs": _number(values.get("defectivePcs")),
            "afterRepair": _number(values.get("afterRepair")),
            "selectedDefects": defects,
        }

    def create(self, client, values, supervisor, files=None):
        body = {
            "userId": supervisor.user_id,
            "userName": supervisor.user_name or "User",
            "building": supervisor.building,
            "factory": supervisor.factory,
            "entries": [self.payload(values, supervisor)],
            "reportDate": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }
        return client.request(
            "POST",
            self.endpoint,
            json=body,
            strict_json=True,
            fallback=self.save_fallback,
        )

    def update(self, client, record_id, values, supervisor, files=None):
        return client.request(
            "PATCH",
            self.endpoint,
            params={"id": record_id, "factory": supervisor.factory},
            json=self.payload(values, supervisor),
            fallback="Failed to update",
        )

    def delete(self, client, record_id, supervisor):
        return client.request(
            "DELETE",
            self.endpoint,
            params={"id": record_id, "factory": supervisor.factory},
            fallback=self.delete_fallback,
        )


class StyleMediaResource(Resource):
    """Image and video attached to a buyer/style/colour for a building."""

    label = "style media"
    endpoint = "style_media"
    create_success = "Saved!"
    update_success = "Saved!"
    delete_success = "Deleted"
    save_fallback = "Save failed."
    delete_fallback = "Delete failed."
    fields = (
        "factory",
        "assigned_building",
        "buyer",
        "style",
        "color_model",
        "effectiveFrom",
        "imageSrc",
        "videoSrc",
    )
    _required = ("factory", "assigned_building", "buyer", "style", "color_model", "effectiveFrom")

    def empty_values(self, supervisor):
        values = super().empty_values(supervisor)
        values["factory"] = supervisor.factory
        values["assigned_building"] = supervisor.building
        return values

    def validate(self, values, supervisor, files=None):
        if not all(_text(values, name) for name in self._required):
            raise FormValidationError("Please fill required fields.")

    def success_message(self, action, body):
        return (body or {}).get("message") or super().success_message(action, body)

    def form_data(self, values, supervisor, record_id=None) -> dict:
        data = {
            "factory": supervisor.factory or _text(values, "factory"),
            "assigned_building": supervisor.building or _text(values, "assigned_building"),
            "buyer": _text(values, "buyer"),
            "style": _text(values, "style"),
            "color_model": _text(values, "color_model"),
            "effectiveFrom": _text(values, "effectiveFrom"),
            "imageSrc": _text(values, "imageSrc"),
            "videoSrc": _text(values, "videoSrc"),
            "userId": supervisor.user_id,
            "userName": supervisor.user_name,
        }
        if record_id:
            data["id"] = record_id
        return data

    def create(self, client, values, supervisor, files=None):
        return client.request(
            "POST",
            self.endpoint,
            data=self.form_data(values, supervisor),
            files=files or None,
            fallback=self.save_fallback,
        )

    def update(self, client, record_id, values, supervisor, files=None):
        return client.request(
            "PUT",
            self.endpoint,
            data=self.form_data(values, supervisor, record_id),
            files=files or None,
            fallback=self.save_fallback,
        )

    def delete(self, client, record_id, supervisor):
        return client.request(
            "DELETE",
            self.endpoint,
            params={"id": record_id},
            fallback=self.delete_fallback,
        )


def is_web_url(value: str) -> bool:
    """True for blank input or an absolute http(s) URL."""

    if not value:
        return True
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class MediaLinkResource(Resource):
    """The supervisor's personal image/video links; one record per user."""

    label = "media links"
    endpoint = "media_links"
    supports_delete = False
    create_success = "Media updated successfully."
    update_success = "Media updated successfully."
    save_fallback = "Save failed"
    fields = ("imageSrc", "videoSrc")

    def record_id(self, record):
        # Saved links are addressed by their owner, not by a document id.
        return header_id(record) or str((record or {}).get("userId") or "")

    def validate(self, values, supervisor, files=None):
        files = files or {}
        image_ok = "imageFile" in files or is_web_url(_text(values, "imageSrc"))
        video_ok = "videoFile" in files or is_web_url(_text(values, "videoSrc"))
        if not (image_ok and video_ok):
            raise FormValidationError("Please enter valid URLs or upload files.")

    def check_identity(self, supervisor):
        if not (supervisor.user_id and supervisor.user_name):
            raise FormValidationError("Missing user information.")

    def form_data(self, values, supervisor, files=None) -> dict:
        files = files or {}
        data = {"userId": supervisor.user_id, "userName": supervisor.user_name}
        if "imageFile" not in files:
            data["imageSrc"] = _text(values, "imageSrc")
        if "videoFile" not in files:
            data["videoSrc"] = _text(values, "videoSrc")
        return data

    def _send(self, client, method, values, supervisor, files):
        return client.request(
            method,
            self.endpoint,
            data=self.form_data(values, supervisor, files),
            files=files or None,
            fallback=self.save_fallback,
        )

    def create(self, client, values, supervisor, files=None):
        return self._send(client, "POST", values, supervisor, files)

    def update(self, client, record_id, values, supervisor, files=None):
        return self._send(client, "PATCH", values, supervisor, files)


class EntryForm:
    """One data-entry screen's create/edit/delete state."""

    def __init__(
        self,
        resource: Resource,
        client,
        supervisor: Supervisor,
        rows: Iterable[Mapping[str, Any]] = (),
    ) -> None:
        self.resource = resource
        self.client = client
        self.supervisor = supervisor
        self.rows = [row for row in rows if isinstance(row, Mapping)]
        self.mode = FormMode.CREATE
        self.editing_id: str | None = None
        self.values = resource.empty_values(supervisor)
        self.saving = False
        self.deleting_id: str | None = None
        self.notice: Notice | None = None

    def _notify(self, message: str, kind: str) -> Notice:
        self.notice = Notice(message, kind)
        return self.notice

    def find(self, record_id: str) -> Mapping[str, Any] | None:
        for row in self.rows:
            if self.resource.record_id(row) == record_id:
                return row
        return None

    def begin_edit(self, record: Mapping[str, Any]) -> None:
        self.notice = None
        self.editing_id = self.resource.record_id(record) or None
        self.values = self.resource.to_values(record)
        self.mode = FormMode.EDITING if self.editing_id else FormMode.CREATE

    def cancel(self) -> None:
        self.mode = FormMode.CREATE
        self.editing_id = None
        self.values = self.resource.empty_values(self.supervisor)

    def save(self, values: Mapping[str, Any] | None = None, files=None) -> Notice:
        """Create or update depending on the current mode."""

        values = dict(self.values if values is None else values)
        self.values = values
        self.notice = None
        try:
            self.resource.validate(values, self.supervisor, files)
            duplicate = self.resource.duplicate_message(
                values, self.rows, self.supervisor, self.editing_id
            )
            if duplicate:
                raise FormValidationError(duplicate)
            self.resource.check_identity(self.supervisor)
        except FormValidationError as exc:
            return self._notify(str(exc), "error")

        editing = self.mode is FormMode.EDITING and self.editing_id
        self.saving = True
        try:
            if editing:
                body = self.resource.update(
                    self.client, self.editing_id, values, self.supervisor, files=files
                )
                action = "update"
            else:
                body = self.resource.create(self.client, values, self.supervisor, files=files)
                action = "create"
        except RequestCancelled:
            raise
        except FloorApiError as exc:
            logger.warning("Saving %s failed: %s", self.resource.label, exc)
            return self._notify(str(exc) or self.resource.save_fallback, "error")
        finally:
            self.saving = False

        self._apply_saved(body, action)
        message = self.resource.success_message(action, body)
        self.cancel()
        return self._notify(message, "success")

    def _apply_saved(self, body: Mapping[str, Any], action: str) -> None:
        record = (body or {}).get("data")
        if not isinstance(record, Mapping):
            return
        record_id = self.resource.record_id(record)
        if action == "update":
            record_id = record_id or self.editing_id
            self.rows = [
                record if self.resource.record_id(row) == record_id else row
                for row in self.rows
            ]
        else:
            self.rows.append(record)

    def delete(self, record_id: str, confirmed: bool) -> Notice | None:
        """Delete ``record_id`` once the user has confirmed.

        Returns ``None`` when nothing was attempted.
        """

        if not confirmed or not record_id:
            return None
        if not self.resource.supports_delete:
            return self._notify(f"Deleting {self.resource.label} is not supported.", "error")

        self.notice = None
        self.deleting_id = record_id
        try:
            body = self.resource.delete(self.client, record_id, self.supervisor)
            message = self.resource.success_message("delete", body)
        except ApiResponseError as exc:
            if not (exc.status == 404 and self.resource.missing_is_deleted):
                logger.warning("Deleting %s %s failed: %s", self.resource.label, record_id, exc)
                return self._notify(str(exc) or self.resource.delete_fallback, "error")
            message = self.resource.already_deleted
        except RequestCancelled:
            raise
        except FloorApiError as exc:
            logger.warning("Deleting %s %s failed: %s", self.resource.label, record_id, exc)
            return self._notify(str(exc) or self.resource.delete_fallback, "error")
        finally:
            self.deleting_id = None

        self.rows = [row for row in self.rows if self.resource.record_id(row) != record_id]
        if self.editing_id == record_id:
            self.cancel()
        return self._notify(message, "success")
