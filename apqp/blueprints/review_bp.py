"""
PFMEA review blueprint.

Endpoints:
    POST /api/v1/review/pfmea  {pfmea_id}
"""

from flask import Blueprint, jsonify

from apqp.services.pfmea_review import review_pfmea
from apqp.utils.errors import register_error_handlers
from apqp.utils.helpers import json_body

review_bp = Blueprint("review", __name__, url_prefix="/api/v1/review")
register_error_handlers(review_bp)


@review_bp.route("/pfmea", methods=["POST"])
def pfmea():
    data = json_body()
    return jsonify({"success": True, **review_pfmea(data.get("pfmea_id"))}), 200
