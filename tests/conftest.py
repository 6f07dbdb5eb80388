"""
conftest.py - shared fixtures for the labengine test suite.

All tests are pure unit tests over in-memory records; the only files touched
are temporary workbooks and template JSON under pytest's ``tmp_path``.
"""
import logging

import pytest

from labengine.services.recalc import add_row, create_test_record, on_field_edit
from labengine.services.schema import (
    ComplianceRule,
    Condition,
    DerivedFieldDefinition,
    FieldDefinition,
    SummaryField,
    TestTypeSchema,
)
from labengine.services.templates import SchemaRegistry


@pytest.fixture(autouse=True)
def _restore_labengine_logger():
    """The CLI reconfigures the ``labengine`` logger; undo that between tests."""
    logger = logging.getLogger("labengine")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    logger.handlers = handlers
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture
def registry():
    """Built-in test types only; no template directory."""
    return SchemaRegistry()


@pytest.fixture(scope="session")
def deviation_schema():
    """
    One numeric row field ``x`` with a cross-row derived field:
      deviation = x - AVERAGE(x)
    Summary of ``x`` needs two valid rows; rules band the mean at 4.0.
    """
    return TestTypeSchema(
        "deviation_check",
        row_fields=[FieldDefinition("x", "X"), FieldDefinition("tag", "Tag", kind="text")],
        derived=[
            DerivedFieldDefinition("double_x", "x * 2"),
            DerivedFieldDefinition("deviation", "x - AVERAGE(x)"),
        ],
        summary=[SummaryField("x", "x", min_valid=2)],
        rules=[
            ComplianceRule("high", "Mean above 4", [Condition("x_mean", ">", 4.0)]),
            ComplianceRule("low", "Mean at or below 4", [Condition("x_mean", "<=", 4.0)]),
        ],
        min_rows=1,
        max_rows=5,
    )


def fill(record, rows, header=None):
    """Apply header values then one dict of raw values per row, adding rows as needed."""
    for key, value in (header or {}).items():
        record = on_field_edit(record, None, key, value)
    for n, values in enumerate(rows):
        if n >= len(record.rows):
            record = add_row(record)
        for key, value in values.items():
            record = on_field_edit(record, record.rows[n].id, key, value)
    return record


# Proctor points lying on dry = 1.80 - 0.01 * (mc - 13)^2, wet = dry * (1 + mc/100)
PROCTOR_POINTS = [
    {"moisture_content": 10, "wet_density": 1.881},
    {"moisture_content": 12, "wet_density": 2.0048},
    {"moisture_content": 14, "wet_density": 2.0406},
    {"moisture_content": 16, "wet_density": 1.9836},
]


@pytest.fixture
def proctor_record(registry):
    return fill(create_test_record("proctor", registry), PROCTOR_POINTS)
