# app/routes/session.py
from __future__ import annotations

import logging
from datetime import datetime

from flask import Blueprint, current_app, request, jsonify, send_file

from services.config_service import ConfigManager
from services.excel import OpenPyXLFileHandler
from services.exceptions import (
    InvalidStateError,
    NotFoundError,
    StorageError,
    TransferError,
    UploadValidationError,
    ValidationError,
)
from services.selections import parse_selection
from services.upload import upload_demand, upload_dataset

logger = logging.getLogger(__name__)

session_bp = Blueprint("session", __name__, url_prefix="/api/session")

STATUS_CODES = {
    ValidationError: 400,
    NotFoundError: 404,
    InvalidStateError: 409,
    StorageError: 503,
}


def _service():
    return current_app.extensions["transfer_service"]


def _payload():
    """The JSON body when it is an object, else an empty dict."""
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _user():
    """Acting user from the JSON body, a form field or the X-User-Name header."""
    return (
        _payload().get("user")
        or request.form.get("user")
        or request.headers.get("X-User-Name")
        or request.args.get("user")
    )


def _flag(value, default=None):
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")


@session_bp.errorhandler(TransferError)
def handle_transfer_error(exc: TransferError):
    status = STATUS_CODES.get(type(exc), 500)
    if status >= 500:
        logger.error(f"{exc.operation or 'operation'} failed for DFU {exc.dfu_code}: {exc.message}")
    return jsonify(exc.to_dict()), status


@session_bp.errorhandler(UploadValidationError)
def handle_upload_error(exc: UploadValidationError):
    return jsonify({"success": False, "error": exc.message, "dfuCode": None, "operation": "upload"}), 400


@session_bp.route("/join", methods=["POST"])
def join():
    return jsonify(_service().join(_user()))


@session_bp.route("/data", methods=["GET"])
def data():
    """
    Current aggregates.

    Query args: plant, line, search, all (show single-variant DFUs too).
    """
    show_all = _flag(request.args.get("all"))
    return jsonify(_service().overview(
        plant=request.args.get("plant"),
        line=request.args.get("line"),
        search=request.args.get("search"),
        multi_variant_only=None if show_all is None else not show_all,
    ))


@session_bp.route("/upload", methods=["POST"])
def upload():
    cfg = ConfigManager()
    result = upload_demand(
        _service(),
        request.files.get("file"),
        user=_user(),
        upload_folder=current_app.config.get("upload_folder"),
        sheet_preference=cfg.get("demand", "sheet_preference"),
        required_columns=cfg.get("demand", "required_columns"),
    )
    return jsonify(result.to_dict())


@session_bp.route("/upload/<dataset>", methods=["POST"])
def upload_supplementary(dataset):
    result = upload_dataset(
        _service(),
        dataset,
        request.files.get("file"),
        user=_user(),
        upload_folder=current_app.config.get("upload_folder"),
        column_config=ConfigManager().get("supplementary", dataset),
    )
    return jsonify(result.to_dict())


@session_bp.route("/dfu/<dfu_code>/selection", methods=["PUT"])
def set_selection(dfu_code):
    selection = parse_selection(_payload().get("selection"), dfu_code)
    return jsonify(_service().set_selection(dfu_code, selection, _user()).to_dict())


@session_bp.route("/dfu/<dfu_code>/selection", methods=["PATCH"])
def update_selection(dfu_code):
    return jsonify(_service().update_selection(dfu_code, _payload(), _user()).to_dict())


@session_bp.route("/dfu/<dfu_code>/selection", methods=["DELETE"])
def cancel_selection(dfu_code):
    return jsonify(_service().cancel_selection(dfu_code, _user()).to_dict())


@session_bp.route("/dfu/<dfu_code>/transfer", methods=["POST"])
def transfer(dfu_code):
    """Execute the selection in the body, or the DFU's pending selection when none is given."""
    raw = _payload().get("selection")
    selection = parse_selection(raw, dfu_code) if raw is not None else None
    return jsonify(_service().apply_transfer(dfu_code, selection, _user()).to_dict())


@session_bp.route("/dfu/<dfu_code>/undo", methods=["POST"])
def undo(dfu_code):
    return jsonify(_service().undo_transfer(dfu_code, _user()).to_dict())


@session_bp.route("/dfu/<dfu_code>/variants", methods=["POST"])
def add_variant(dfu_code):
    return jsonify(_service().add_variant(dfu_code, _payload().get("variant"), _user()).to_dict())


@session_bp.route("/events", methods=["GET"])
def events():
    """Notifications newer than ``since``, for polling clients."""
    try:
        since = int(request.args.get("since", 0))
    except ValueError:
        return jsonify({"success": False, "error": "since must be a number"}), 400
    notifications = _service().events_since(since)
    return jsonify({
        "success": True,
        "events": [n.to_dict() for n in notifications],
        "lastEventId": notifications[-1].id if notifications else since,
    })


@session_bp.route("/export", methods=["GET"])
def export():
    records = _service().records_for_export()
    if not records:
        return jsonify({"success": False, "error": "No data to export", "dfuCode": None, "operation": "export"}), 409

    cfg = ConfigManager()
    sheet_name = cfg.get("export", "sheet_name", default="Updated Demand")
    handler = OpenPyXLFileHandler.from_records(records, sheet_name=sheet_name)
    prefix = cfg.get("export", "filename_prefix", default="Updated_Demand")
    filename = f"{prefix}_{datetime.now().strftime('%Y-%m-%d')}.xlsx"
    return send_file(
        handler.save_to_bytes(),
        as_attachment=True,
        download_name=filename,
        mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    )


@session_bp.route("/end", methods=["POST"])
def end():
    return jsonify(_service().end_session(_user()).to_dict())
