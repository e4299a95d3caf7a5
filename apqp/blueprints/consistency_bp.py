"""
Consistency check blueprint.

Endpoints:
    POST /api/v1/consistency/check        {pfmea_id | control_plan_id, save_results}
    GET  /api/v1/consistency/runs         ?pfmea_id=
    GET  /api/v1/consistency/runs/<id>    — stored run with its issues
"""

import logging

from flask import Blueprint, jsonify, request

from apqp.services.consistency_service import (
    check_consistency,
    get_report_run,
    list_report_runs,
    resolve_pfmea_id,
)
from apqp.utils.errors import register_error_handlers
from apqp.utils.helpers import json_body

logger = logging.getLogger(__name__)

consistency_bp = Blueprint("consistency", __name__, url_prefix="/api/v1/consistency")
register_error_handlers(consistency_bp)


@consistency_bp.route("/check", methods=["POST"])
def check():
    data = json_body()
    pfmea_id = resolve_pfmea_id(data.get("pfmea_id"), data.get("control_plan_id"))
    result = check_consistency(pfmea_id, persist=bool(data.get("save_results")))
    return jsonify({"success": True, **result}), 200


@consistency_bp.route("/runs", methods=["GET"])
def runs():
    limit = request.args.get("limit", 20, type=int)
    items = list_report_runs(request.args.get("pfmea_id"), limit=max(1, min(limit, 100)))
    return jsonify({"items": items, "total": len(items)}), 200


@consistency_bp.route("/runs/<run_id>", methods=["GET"])
def run_detail(run_id):
    return jsonify(get_report_run(run_id)), 200
