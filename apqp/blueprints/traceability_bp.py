"""
Traceability blueprint.

Endpoints:
    POST /api/v1/traceability/repair                 {product_id}
    GET  /api/v1/traceability/products/<product_id>  — read-only chain view
"""

import logging

from flask import Blueprint, jsonify

from apqp.services.generation_common import require_id
from apqp.services.traceability_repair import get_traceability_chain, repair_traceability
from apqp.utils.errors import register_error_handlers
from apqp.utils.helpers import json_body

logger = logging.getLogger(__name__)

traceability_bp = Blueprint("traceability", __name__, url_prefix="/api/v1/traceability")
register_error_handlers(traceability_bp)

# Failed-stage exception → HTTP status for a partial repair
_FAILURE_STATUS = {
    "ValidationError": 400,
    "NotFoundError": 404,
    "UpstreamEmptyError": 404,
    "PersistenceError": 500,
}


@traceability_bp.route("/repair", methods=["POST"])
def repair():
    """Run every missing generation stage for a product.

    A stage failure answers with the partial ``steps`` completed so far.
    """
    data = json_body()
    product_id = require_id(data.get("product_id"), "product_id")

    result = repair_traceability(product_id)
    if result["success"]:
        return jsonify(result), 200
    status = _FAILURE_STATUS.get(result.pop("error_type", ""), 500)
    return jsonify(result), status


@traceability_bp.route("/products/<product_id>", methods=["GET"])
def chain(product_id):
    return jsonify(get_traceability_chain(product_id)), 200
