"""
Document generation blueprint.

Endpoints:
    POST /api/v1/generate/pfmea             {product_id}
    POST /api/v1/generate/control-plan      {pfmea_id}
    POST /api/v1/generate/work-instruction  {control_plan_id}
    POST /api/v1/generate/inspection-plan   {control_plan_id}

A new document answers 201; an existing draft answers 200 with
``status: "existing"``.  Service layer owns all business logic and commits.
"""

import logging

from flask import Blueprint, jsonify

from apqp.services.control_plan_generation import generate_control_plan
from apqp.services.generation_common import STATUS_GENERATED
from apqp.services.inspection_generation import generate_inspection_plan
from apqp.services.pfmea_generation import generate_pfmea
from apqp.services.work_instruction_generation import generate_work_instruction
from apqp.utils.errors import register_error_handlers
from apqp.utils.helpers import json_body

logger = logging.getLogger(__name__)

generation_bp = Blueprint("generation", __name__, url_prefix="/api/v1/generate")
register_error_handlers(generation_bp)


def _respond(result):
    status = 201 if result.status == STATUS_GENERATED else 200
    return jsonify(result.to_dict()), status


@generation_bp.route("/pfmea", methods=["POST"])
def pfmea():
    return _respond(generate_pfmea(json_body().get("product_id")))


@generation_bp.route("/control-plan", methods=["POST"])
def control_plan():
    return _respond(generate_control_plan(json_body().get("pfmea_id")))


@generation_bp.route("/work-instruction", methods=["POST"])
def work_instruction():
    return _respond(generate_work_instruction(json_body().get("control_plan_id")))


@generation_bp.route("/inspection-plan", methods=["POST"])
def inspection_plan():
    return _respond(generate_inspection_plan(json_body().get("control_plan_id")))
