"""
PFMEA generation — Product characteristics → PFMEA lines.

Root stage of the document chain.  One line per characteristic of the
product, in characteristic order; every line carries ``characteristic_id``.
Ratings returned by the model are clamped to 1-10 and RPN / action priority
are always recomputed locally.

Usage:
    from apqp.services.pfmea_generation import generate_pfmea
    result = generate_pfmea(product_id)
"""

import logging

from apqp.ai.gateway import get_gateway
from apqp.ai.prompt_registry import get_prompt_registry
from apqp.core.exceptions import NotFoundError, UpstreamEmptyError
from apqp.models import db
from apqp.models.pfmea import Pfmea, PfmeaLine
from apqp.models.product import Characteristic, Product
from apqp.services import fallback_content as fc
from apqp.services.generation_common import (
    PlannedItem,
    StageResult,
    StageSpec,
    find_existing,
    persist_document,
    require_id,
    resolve_contents,
    text,
    unique_in_order,
)

logger = logging.getLogger(__name__)

STAGE = StageSpec(
    name="pfmea",
    label="PFMEA",
    header_model=Pfmea,
    child_model=PfmeaLine,
    upstream_column="product_id",
    child_fk="pfmea_id",
    link_column="characteristic_id",
    number_column="step_no",
    upstream_key="product_id",
    id_key="pfmea_id",
    count_key="lines_count",
    linked_key="linked_characteristic_ids",
)

REQUIRED_KEYS = (
    "potential_failure_mode", "potential_effect", "severity",
    "potential_cause", "occurrence", "detection",
)


def load_product_characteristics(product: Product) -> list[dict]:
    """Characteristics as dicts with the owning process name resolved."""
    rows = (
        Characteristic.query.filter_by(product_id=product.id)
        .order_by(Characteristic.created_at, Characteristic.id)
        .all()
    )
    default_process = f"{product.name} process"
    result = []
    for char in rows:
        data = char.to_dict()
        data["process_name"] = char.process.name if char.process else default_process
        result.append(data)
    return result


def header_process_name(product: Product, characteristics: list[dict]) -> str:
    names = unique_in_order(c["process_name"] for c in characteristics)
    return names[0] if len(names) == 1 else f"{product.name} process"


def plan_lines(product: Product, characteristics: list[dict], registry) -> list[PlannedItem]:
    planned = []
    for char in characteristics:
        messages = registry.render(
            "pfmea_line",
            product_name=product.name,
            process_name=char["process_name"],
            characteristic_name=char.get("name"),
            characteristic_type=char.get("type"),
            category=char.get("category"),
            specification=fc.spec_text(char),
            measurement_method=char.get("measurement_method"),
        )
        planned.append(PlannedItem(
            number=len(planned) + 1,
            link_id=char["id"],
            source=char,
            characteristic=char,
            messages=messages,
            required_keys=REQUIRED_KEYS,
            fallback=fc.pfmea_line_content(char, char["process_name"]),
            purpose="pfmea.line",
        ))
    return planned


def generate_pfmea(product_id, *, gateway=None) -> StageResult:
    """
    Generate the draft PFMEA for a product (idempotent).

    Raises:
        ValidationError: product_id missing.
        NotFoundError: product does not exist.
        UpstreamEmptyError: product has no characteristics.
        PersistenceError: line batch insert failed (header removed).
    """
    product_id = require_id(product_id, "product_id")
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product", product_id)

    existing = find_existing(STAGE, product_id)
    if existing is not None:
        return existing

    characteristics = load_product_characteristics(product)
    planned = plan_lines(product, characteristics, get_prompt_registry())
    if not planned:
        raise UpstreamEmptyError("Product", product_id, reason="no characteristics")

    contents = resolve_contents(planned, gateway or get_gateway())

    header = Pfmea(
        product_id=product_id,
        process_name=header_process_name(product, characteristics),
        doc_number=f"PFMEA-{product.code}",
    )

    def build_rows(header_id):
        rows = []
        for item, content in zip(planned, contents):
            line = PfmeaLine(
                pfmea_id=header_id,
                step_no=item.number,
                process_step=item.source["process_name"],
                characteristic_id=item.link_id,
                potential_failure_mode=text(content.get("potential_failure_mode")),
                potential_effect=text(content.get("potential_effect")),
                potential_cause=text(content.get("potential_cause")),
                severity=content.get("severity"),
                occurrence=content.get("occurrence"),
                detection=content.get("detection"),
                current_control_prevention=text(content.get("current_control_prevention")) or None,
                current_control_detection=text(content.get("current_control_detection")) or None,
                recommended_action=text(content.get("recommended_action")) or None,
            )
            line.recalculate()
            rows.append(line)
        return rows

    return persist_document(STAGE, header, build_rows)
