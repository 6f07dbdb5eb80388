"""Stored report shape for finalized records.

``to_report_json`` emits the same keys the report layer keeps for a test
report: the template definition (``fields``, ``calculations``, ``charts``),
the entered data (``data_json``) and the computed ``summary_json``.
"""
import logging

import marshmallow
from marshmallow import EXCLUDE, Schema, fields, validate

from labengine.services.errors import SchemaError
from labengine.services.records import (
    SOURCE_AUTO,
    SOURCE_MANUAL,
    FinalizedTestRecord,
    OptimumPoint,
    SampleRow,
    SummaryResult,
    TestRecord,
    frozen_map,
)

logger = logging.getLogger(__name__)


class StoredFieldSchema(Schema):
    type = fields.Str(required=True)
    label = fields.Str()
    unit = fields.Str()
    required = fields.Bool()
    options = fields.List(fields.Str())
    scope = fields.Str(validate=validate.OneOf(["row", "header"]))


class RowSchema(Schema):
    id = fields.Str(required=True)
    values = fields.Dict(keys=fields.Str(), values=fields.Raw(allow_none=True), load_default=dict)
    derived = fields.Dict(keys=fields.Str(), values=fields.Float(), load_default=dict)
    errors = fields.Dict(keys=fields.Str(), values=fields.Str(), load_default=dict)


class DataSchema(Schema):
    header = fields.Dict(keys=fields.Str(), values=fields.Raw(allow_none=True), load_default=dict)
    rows = fields.List(fields.Nested(RowSchema), required=True)
    constants = fields.Dict(keys=fields.Str(), values=fields.Float(), load_default=dict)


class OptimumSchema(Schema):
    x = fields.Float(required=True)
    y = fields.Float(required=True)
    source = fields.Str(load_default=SOURCE_AUTO, validate=validate.OneOf([SOURCE_AUTO, SOURCE_MANUAL]))
    method = fields.Str(load_default="")


class SummaryJsonSchema(Schema):
    calculated_results = fields.Dict(keys=fields.Str(), values=fields.Float(), load_default=dict)
    compliance_status = fields.Str(required=True)
    label = fields.Str(load_default="")
    aggregates = fields.Dict(keys=fields.Str(), values=fields.Float(), load_default=dict)
    optimum = fields.Nested(OptimumSchema, allow_none=True, load_default=None)
    curve_states = fields.Dict(keys=fields.Str(), values=fields.Str(), load_default=dict)
    warnings = fields.List(fields.Str(), load_default=list)


class ReportSchema(Schema):
    """Marshmallow schema for a stored test report"""

    test_type = fields.Str(required=True)
    name = fields.Str(load_default="")
    template_version = fields.Int(load_default=1)
    revision = fields.Int(load_default=1, validate=validate.Range(min=1))
    finalized_at = fields.Str(required=True)
    fields_ = fields.Dict(data_key="fields", keys=fields.Str(), values=fields.Nested(StoredFieldSchema))
    calculations = fields.Dict(keys=fields.Str(), values=fields.Str())
    charts = fields.Dict(keys=fields.Str(), values=fields.Dict())
    data_json = fields.Nested(DataSchema, required=True)
    summary_json = fields.Nested(SummaryJsonSchema, required=True)

    class Meta:
        unknown = EXCLUDE


report_schema = ReportSchema()


def to_report_json(finalized):
    if not finalized.finalized:
        raise SchemaError("Only finalized records are stored as reports")
    record = finalized.record
    schema = record.schema
    summary = record.summary
    payload = {
        "test_type": schema.test_type,
        "name": schema.name,
        "template_version": schema.version,
        "revision": record.revision,
        "finalized_at": finalized.finalized_at,
        "fields_": _stored_fields(schema),
        "calculations": {d.key: d.formula.source for d in schema.derived},
        "charts": {k: dict(v) for k, v in schema.charts.items()},
        "data_json": {
            "header": dict(record.header),
            "rows": [
                {"id": r.id, "values": dict(r.values), "derived": dict(r.derived), "errors": dict(r.errors)}
                for r in record.rows
            ],
            "constants": dict(record.constants),
        },
        "summary_json": {
            "calculated_results": dict(summary.metrics),
            "compliance_status": summary.status,
            "label": summary.label,
            "aggregates": dict(summary.aggregates),
            "optimum": summary.optimum.as_dict() if summary.optimum else None,
            "curve_states": dict(summary.curve_states),
            "warnings": list(summary.warnings),
        },
    }
    return report_schema.dump(payload)


def from_report_json(data, registry=None):
    """Rebuild the FinalizedTestRecord stored in ``data``."""
    try:
        report = report_schema.load(data)
    except marshmallow.ValidationError as err:
        raise SchemaError(f"Invalid report: {err.messages}") from err

    if registry is None:
        from labengine.services.templates import default_registry

        registry = default_registry()
    schema = registry.get(report["test_type"])
    if schema.version != report["template_version"]:
        logger.warning(
            "Report was stored against %s v%d; loading with v%d",
            schema.test_type,
            report["template_version"],
            schema.version,
            extra={"test_type": schema.test_type},
        )

    data_json = report["data_json"]
    rows = tuple(
        SampleRow(
            id=r["id"],
            values=frozen_map(r["values"]),
            derived=frozen_map(r["derived"]),
            errors=frozen_map(r["errors"]),
        )
        for r in data_json["rows"]
    )
    stored = report["summary_json"]
    optimum = OptimumPoint(**stored["optimum"]) if stored["optimum"] else None
    summary = SummaryResult(
        aggregates=frozen_map(stored["aggregates"]),
        status=stored["compliance_status"],
        label=stored["label"],
        optimum=optimum,
        metrics=frozen_map(stored["calculated_results"]),
        curve_states=frozen_map(stored["curve_states"]),
        warnings=tuple(stored["warnings"]),
    )
    record = TestRecord(
        schema=schema,
        header=frozen_map(data_json["header"]),
        rows=rows,
        summary=summary,
        constants=frozen_map(data_json["constants"]),
        manual_optimum=optimum if optimum is not None and optimum.source == SOURCE_MANUAL else None,
        revision=report["revision"],
        next_row_seq=_next_row_seq(rows),
    )
    return FinalizedTestRecord(record=record, finalized_at=report["finalized_at"])


def _stored_fields(schema):
    out = {}
    for scope, group in (("header", schema.header_fields), ("row", schema.row_fields)):
        for f in group:
            out[f.key] = {
                "type": f.kind,
                "label": f.label,
                "unit": f.unit,
                "required": f.required,
                "options": list(f.options),
                "scope": scope,
            }
    return out


def _next_row_seq(rows):
    seq = 0
    for r in rows:
        if r.id.startswith("r") and r.id[1:].isdigit():
            seq = max(seq, int(r.id[1:]))
    return max(seq, len(rows)) + 1
