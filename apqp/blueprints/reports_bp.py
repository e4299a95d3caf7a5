"""
Audit reports blueprint.

Endpoints:
    POST /api/v1/reports/audit             {pfmea_id | control_plan_id, include_traceability_examples}
    POST /api/v1/reports/iatf-map          {pfmea_id?, control_plan_id?, update_clause_status}
    GET  /api/v1/reports/iatf-map/clauses  stored clause assessments
"""

from flask import Blueprint, jsonify

from apqp.services.audit_reports import generate_audit_report, generate_iatf_map, list_iatf_clauses
from apqp.utils.errors import register_error_handlers
from apqp.utils.helpers import json_body

reports_bp = Blueprint("reports", __name__, url_prefix="/api/v1/reports")
register_error_handlers(reports_bp)


@reports_bp.route("/audit", methods=["POST"])
def audit_report():
    data = json_body()
    result = generate_audit_report(
        data.get("pfmea_id"),
        data.get("control_plan_id"),
        include_examples=data.get("include_traceability_examples", True) is not False,
    )
    return jsonify({"success": True, **result}), 201


@reports_bp.route("/iatf-map", methods=["POST"])
def iatf_map():
    data = json_body()
    result = generate_iatf_map(
        data.get("pfmea_id"),
        data.get("control_plan_id"),
        update_clause_status=bool(data.get("update_clause_status")),
    )
    return jsonify({"success": True, **result}), 201


@reports_bp.route("/iatf-map/clauses", methods=["GET"])
def iatf_clauses():
    items = list_iatf_clauses()
    return jsonify({"items": items, "total": len(items)}), 200
