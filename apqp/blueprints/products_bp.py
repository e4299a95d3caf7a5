"""
Product master data blueprint.

Endpoints:
    GET  /api/v1/products
    POST /api/v1/products                                 {code, name, customer?}
    GET  /api/v1/products/<product_id>                    — with processes + characteristics
    POST /api/v1/products/<product_id>/processes          {code, name, sequence_no?}
    POST /api/v1/products/<product_id>/characteristics    {name, category, lsl?, usl?, ...}
"""

import logging

from flask import Blueprint, jsonify

from apqp.models import db
from apqp.models.product import (
    CHARACTERISTIC_CATEGORIES,
    CHARACTERISTIC_TYPES,
    Characteristic,
    Process,
    Product,
)
from apqp.utils.errors import E, api_error, register_error_handlers
from apqp.utils.helpers import db_commit_or_error, get_or_404, json_body, parse_float

logger = logging.getLogger(__name__)

products_bp = Blueprint("products", __name__, url_prefix="/api/v1/products")
register_error_handlers(products_bp)


def _required(data: dict, *fields):
    missing = [f for f in fields if not str(data.get(f) or "").strip()]
    if missing:
        return api_error(
            E.VALIDATION_REQUIRED,
            f"{', '.join(missing)} required",
            details={"details": {f: "required" for f in missing}},
        )
    return None


# ── Products ─────────────────────────────────────────────────────────────────

@products_bp.route("", methods=["GET"])
def list_products():
    products = Product.query.order_by(Product.code).all()
    return jsonify({"items": [p.to_dict() for p in products], "total": len(products)}), 200


@products_bp.route("", methods=["POST"])
def create_product():
    data = json_body()
    err = _required(data, "code", "name")
    if err:
        return err

    product = Product(
        code=data["code"].strip(),
        name=data["name"].strip(),
        customer=data.get("customer"),
    )
    db.session.add(product)
    err = db_commit_or_error()
    if err:
        return err
    logger.info("Product %s created (%s)", product.code, product.id)
    return jsonify(product.to_dict()), 201


@products_bp.route("/<product_id>", methods=["GET"])
def get_product(product_id):
    product, err = get_or_404(Product, product_id)
    if err:
        return err
    data = product.to_dict()
    data["processes"] = [p.to_dict() for p in product.processes]
    data["characteristics"] = [
        c.to_dict()
        for c in product.characteristics.order_by(Characteristic.created_at, Characteristic.id)
    ]
    return jsonify(data), 200


# ── Processes & Characteristics ──────────────────────────────────────────────

@products_bp.route("/<product_id>/processes", methods=["POST"])
def create_process(product_id):
    product, err = get_or_404(Product, product_id)
    if err:
        return err
    data = json_body()
    err = _required(data, "code", "name")
    if err:
        return err

    process = Process(
        product_id=product.id,
        code=data["code"].strip(),
        name=data["name"].strip(),
        sequence_no=int(data.get("sequence_no") or 0),
    )
    db.session.add(process)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(process.to_dict()), 201


@products_bp.route("/<product_id>/characteristics", methods=["POST"])
def create_characteristic(product_id):
    product, err = get_or_404(Product, product_id)
    if err:
        return err
    data = json_body()
    err = _required(data, "name")
    if err:
        return err

    category = data.get("category") or "minor"
    char_type = data.get("type") or "product"
    if category not in CHARACTERISTIC_CATEGORIES:
        return api_error(E.VALIDATION_INVALID, f"category must be one of {sorted(CHARACTERISTIC_CATEGORIES)}")
    if char_type not in CHARACTERISTIC_TYPES:
        return api_error(E.VALIDATION_INVALID, f"type must be one of {sorted(CHARACTERISTIC_TYPES)}")
    try:
        lsl = parse_float(data.get("lsl"))
        usl = parse_float(data.get("usl"))
    except (TypeError, ValueError):
        return api_error(E.VALIDATION_INVALID, "lsl and usl must be numbers")
    if lsl is not None and usl is not None and lsl > usl:
        return api_error(E.VALIDATION_INVALID, "lsl must not exceed usl")

    process_id = data.get("process_id")
    if process_id:
        process = db.session.get(Process, process_id)
        if process is None or process.product_id != product.id:
            return api_error(E.NOT_FOUND, "Process not found")

    char = Characteristic(
        product_id=product.id,
        process_id=process_id or None,
        name=data["name"].strip(),
        type=char_type,
        category=category,
        specification=data.get("specification"),
        lsl=lsl,
        usl=usl,
        unit=data.get("unit"),
        measurement_method=data.get("measurement_method"),
    )
    db.session.add(char)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(char.to_dict()), 201
