"""
Document read blueprint.

Endpoints:
    GET /api/v1/documents/products/<product_id>/pfmea          — draft, else latest
    GET /api/v1/documents/pfmeas/<pfmea_id>
    GET /api/v1/documents/pfmeas/<pfmea_id>/control-plan
    GET /api/v1/documents/control-plans/<cp_id>
    GET /api/v1/documents/control-plans/<cp_id>/work-instruction
    GET /api/v1/documents/control-plans/<cp_id>/inspection-plan
    GET /api/v1/documents/work-instructions/<wi_id>
    GET /api/v1/documents/inspection-plans/<ip_id>
"""

from flask import Blueprint, jsonify

from apqp.models.control_plan import ControlPlan
from apqp.models.inspection import InspectionPlan
from apqp.models.pfmea import Pfmea
from apqp.models.product import Product
from apqp.models.work_instruction import WorkInstruction
from apqp.services.generation_common import latest_header
from apqp.utils.errors import E, api_error, register_error_handlers
from apqp.utils.helpers import get_or_404

documents_bp = Blueprint("documents", __name__, url_prefix="/api/v1/documents")
register_error_handlers(documents_bp)


def _latest_or_404(model, label, **upstream):
    header = latest_header(model, **upstream)
    if header is None:
        return None, api_error(E.NOT_FOUND, f"{label} not found")
    return header, None


# ── PFMEA ────────────────────────────────────────────────────────────────────

@documents_bp.route("/products/<product_id>/pfmea", methods=["GET"])
def product_pfmea(product_id):
    _, err = get_or_404(Product, product_id)
    if err:
        return err
    pfmea, err = _latest_or_404(Pfmea, "PFMEA", product_id=product_id)
    if err:
        return err
    return jsonify(pfmea.to_dict(include_lines=True)), 200


@documents_bp.route("/pfmeas/<pfmea_id>", methods=["GET"])
def get_pfmea(pfmea_id):
    pfmea, err = get_or_404(Pfmea, pfmea_id, "PFMEA")
    if err:
        return err
    return jsonify(pfmea.to_dict(include_lines=True)), 200


# ── Control Plan ─────────────────────────────────────────────────────────────

@documents_bp.route("/pfmeas/<pfmea_id>/control-plan", methods=["GET"])
def pfmea_control_plan(pfmea_id):
    _, err = get_or_404(Pfmea, pfmea_id, "PFMEA")
    if err:
        return err
    cp, err = _latest_or_404(ControlPlan, "Control Plan", pfmea_id=pfmea_id)
    if err:
        return err
    return jsonify(cp.to_dict(include_items=True)), 200


@documents_bp.route("/control-plans/<cp_id>", methods=["GET"])
def get_control_plan(cp_id):
    cp, err = get_or_404(ControlPlan, cp_id, "Control Plan")
    if err:
        return err
    return jsonify(cp.to_dict(include_items=True)), 200


# ── Work Instruction / Inspection Plan ───────────────────────────────────────

@documents_bp.route("/control-plans/<cp_id>/work-instruction", methods=["GET"])
def control_plan_work_instruction(cp_id):
    _, err = get_or_404(ControlPlan, cp_id, "Control Plan")
    if err:
        return err
    wi, err = _latest_or_404(WorkInstruction, "Work Instruction", control_plan_id=cp_id)
    if err:
        return err
    return jsonify(wi.to_dict(include_steps=True)), 200


@documents_bp.route("/control-plans/<cp_id>/inspection-plan", methods=["GET"])
def control_plan_inspection_plan(cp_id):
    _, err = get_or_404(ControlPlan, cp_id, "Control Plan")
    if err:
        return err
    ip, err = _latest_or_404(InspectionPlan, "Inspection Plan", control_plan_id=cp_id)
    if err:
        return err
    return jsonify(ip.to_dict(include_items=True)), 200


@documents_bp.route("/work-instructions/<wi_id>", methods=["GET"])
def get_work_instruction(wi_id):
    wi, err = get_or_404(WorkInstruction, wi_id, "Work Instruction")
    if err:
        return err
    return jsonify(wi.to_dict(include_steps=True)), 200


@documents_bp.route("/inspection-plans/<ip_id>", methods=["GET"])
def get_inspection_plan(ip_id):
    ip, err = get_or_404(InspectionPlan, ip_id, "Inspection Plan")
    if err:
        return err
    return jsonify(ip.to_dict(include_items=True)), 200
