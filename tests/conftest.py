"""
Shared pytest fixtures for the APQP Document Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - product / characteristic factories and a seeded PFMEA
    - FakeProvider: scripted LLM provider for gateway injection
"""

import json
import threading
from types import SimpleNamespace

import pytest

from apqp import create_app
from apqp.ai.gateway import LLMGateway, LLMProvider
from apqp.models import db as _db
from apqp.models.pfmea import Pfmea, PfmeaLine
from apqp.models.product import Characteristic, Process, Product


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── LLM doubles ──────────────────────────────────────────────────────────


class FakeProvider(LLMProvider):
    """Provider double.

    ``responses`` is either a callable ``(messages) -> str | dict`` or a list
    consumed in order (the last entry repeats).  A dict is JSON-encoded; an
    Exception instance is raised.
    """

    def __init__(self, responses):
        super().__init__(api_key="test-key")
        self._responses = responses
        self._lock = threading.Lock()
        self.calls = []

    def chat(self, messages, model, **kwargs):
        with self._lock:
            self.calls.append(messages)
            if callable(self._responses):
                response = self._responses(messages)
            else:
                index = min(len(self.calls) - 1, len(self._responses) - 1)
                response = self._responses[index]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, dict):
            response = json.dumps(response)
        return {"content": response, "prompt_tokens": 0, "completion_tokens": 0, "model": model}


def _make_gateway(responses, **config):
    """LLMGateway wired to a FakeProvider; returns (gateway, provider)."""
    provider = FakeProvider(responses)
    cfg = {"LLM_RETRY_BACKOFF_SECONDS": 0, "LLM_PROVIDER": "openai", **config}
    return LLMGateway(cfg, providers={"openai": provider}), provider


# ── Seed helpers ─────────────────────────────────────────────────────────


def _make_product(code="P-100", name="Drive Shaft", **kw):
    product = Product(code=code, name=name, **kw)
    _db.session.add(product)
    _db.session.commit()
    return product


def _make_process(product, code="OP10", name="Turning", sequence_no=10):
    process = Process(product_id=product.id, code=code, name=name, sequence_no=sequence_no)
    _db.session.add(process)
    _db.session.commit()
    return process


def _make_characteristic(product, name="Outer diameter", category="major", **kw):
    char = Characteristic(product_id=product.id, name=name, category=category, **kw)
    _db.session.add(char)
    _db.session.commit()
    return char


def _make_pfmea(product, lines):
    """Create a draft PFMEA; ``lines`` are PfmeaLine kwargs (S/O/D recalculated)."""
    pfmea = Pfmea(product_id=product.id, process_name="Turning", doc_number=f"PFMEA-{product.code}")
    _db.session.add(pfmea)
    _db.session.flush()
    for index, kw in enumerate(lines, start=1):
        data = {
            "step_no": index,
            "process_step": "Turning",
            "potential_failure_mode": "Out of tolerance",
            "potential_effect": "Assembly failure",
            "potential_cause": "Tool wear",
            "severity": 5,
            "occurrence": 4,
            "detection": 4,
            **kw,
        }
        line = PfmeaLine(pfmea_id=pfmea.id, **data)
        line.recalculate()
        _db.session.add(line)
    _db.session.commit()
    return pfmea


@pytest.fixture()
def product():
    return _make_product()


@pytest.fixture()
def major_char(product):
    """Major characteristic with both limits (2mm ~ 4mm)."""
    return _make_characteristic(
        product, name="Flange thickness", category="major",
        lsl=2.0, usl=4.0, unit="mm", measurement_method="Micrometer",
    )


@pytest.fixture()
def critical_char(product):
    return _make_characteristic(
        product, name="Bore diameter", category="critical",
        specification="Ø10 ±0.5", lsl=9.5, usl=10.5, unit="mm",
        measurement_method="Bore gauge",
    )


@pytest.fixture()
def scenario_pfmea(product, major_char):
    """One line S8/O6/D7 (RPN 336, AP H) linked to the major characteristic."""
    return _make_pfmea(product, [{
        "characteristic_id": major_char.id,
        "severity": 8, "occurrence": 6, "detection": 7,
    }])


@pytest.fixture()
def seed():
    """Seed factories: seed.product(), seed.process(), seed.characteristic(), seed.pfmea()."""
    return SimpleNamespace(
        product=_make_product,
        process=_make_process,
        characteristic=_make_characteristic,
        pfmea=_make_pfmea,
    )


@pytest.fixture()
def gateway_factory():
    """``gateway_factory(responses, **config)`` → (LLMGateway, FakeProvider)."""
    return _make_gateway
