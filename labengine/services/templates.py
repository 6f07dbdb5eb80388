"""Template JSON -> TestTypeSchema.

Templates use the stored report-template shape: a ``fields`` map, a
``calculations`` map of formula strings, a ``charts`` map, plus optional
``summary``, ``curves``, ``selections``, ``kpis``, ``rules`` and ``constants``
sections.
"""
import copy
import json
import logging
from pathlib import Path

import marshmallow
from marshmallow import EXCLUDE, Schema, fields, validate

from labengine.services.errors import Malformed, SchemaError
from labengine.services.schema import (
    CURVE_FLOW,
    CURVE_OPTIMUM,
    CONDITION_OPS,
    FIELD_KINDS,
    KIND_NUMERIC,
    OPTIMUM_MAX,
    OPTIMUM_QUADRATIC,
    ComplianceRule,
    Condition,
    ConstantDefinition,
    CurveDefinition,
    DerivedFieldDefinition,
    FieldDefinition,
    KpiDefinition,
    SelectionDefinition,
    SummaryField,
    TestTypeSchema,
)
from labengine.services.worksheet_specs import WORKSHEET_SPECS

logger = logging.getLogger(__name__)

STATUS_DRAFT = "draft"
STATUS_PUBLISHED = "published"

# template editors call numeric inputs "number"
_KIND_ALIASES = {"number": KIND_NUMERIC}


class FieldSchema(Schema):
    type = fields.Str(load_default=KIND_NUMERIC, validate=validate.OneOf(FIELD_KINDS + tuple(_KIND_ALIASES)))
    label = fields.Str(load_default="")
    unit = fields.Str(load_default="")
    required = fields.Bool(load_default=False)
    options = fields.List(fields.Str(), load_default=list)
    min = fields.Float(allow_none=True, load_default=None)
    max = fields.Float(allow_none=True, load_default=None)
    default = fields.Raw(allow_none=True, load_default=None)
    scope = fields.Str(load_default="row", validate=validate.OneOf(["row", "header"]))

    class Meta:
        unknown = EXCLUDE


class CalculationSchema(Schema):
    formula = fields.Str(required=True, validate=validate.Length(min=1))
    unit = fields.Str(load_default="")
    precision = fields.Int(load_default=3, validate=validate.Range(min=0, max=10))
    label = fields.Str(load_default="")
    depends_on = fields.List(fields.Str(), allow_none=True, load_default=None)


class KpiSchema(Schema):
    formula = fields.Str(required=True, validate=validate.Length(min=1))
    unit = fields.Str(load_default="")
    precision = fields.Int(load_default=3, validate=validate.Range(min=0, max=10))
    label = fields.Str(load_default="")


class ChartSchema(Schema):
    type = fields.Str(load_default="line")
    title = fields.Str(load_default="")
    x_axis = fields.Str(allow_none=True, load_default=None)
    y_axis = fields.Str(allow_none=True, load_default=None)

    class Meta:
        unknown = EXCLUDE


class WhereSchema(Schema):
    field = fields.Str(required=True)
    equals = fields.Str(required=True)


class SummarySchema(Schema):
    key = fields.Str(required=True)
    source = fields.Str(required=True)
    min_valid = fields.Int(load_default=1, validate=validate.Range(min=1))
    where = fields.Nested(WhereSchema, allow_none=True, load_default=None)
    precision = fields.Int(allow_none=True, load_default=None)
    label = fields.Str(load_default="")


class CurveSchema(Schema):
    key = fields.Str(required=True)
    x = fields.Str(required=True)
    y = fields.Str(required=True)
    kind = fields.Str(load_default=CURVE_OPTIMUM, validate=validate.OneOf([CURVE_OPTIMUM, CURVE_FLOW]))
    method = fields.Str(load_default=OPTIMUM_MAX, validate=validate.OneOf([OPTIMUM_MAX, OPTIMUM_QUADRATIC]))
    reference = fields.Float(load_default=25.0)
    min_points = fields.Int(load_default=2, validate=validate.Range(min=1))
    where = fields.Nested(WhereSchema, allow_none=True, load_default=None)
    x_name = fields.Str(allow_none=True, load_default=None)
    y_name = fields.Str(allow_none=True, load_default=None)
    precision = fields.Int(load_default=3)
    title = fields.Str(load_default="")


class SelectionSchema(Schema):
    key = fields.Str(required=True)
    score = fields.Str(required=True)
    fields_ = fields.List(fields.Str(), data_key="fields", required=True, validate=validate.Length(min=1))
    prefix = fields.Str(load_default="")
    title = fields.Str(load_default="")


class ConditionSchema(Schema):
    metric = fields.Str(required=True)
    op = fields.Str(required=True, validate=validate.OneOf(CONDITION_OPS))
    value = fields.Float(required=True)
    value2 = fields.Float(allow_none=True, load_default=None)


class RuleSchema(Schema):
    status = fields.Str(required=True, validate=validate.Length(min=1))
    label = fields.Str(load_default="")
    conditions = fields.List(fields.Nested(ConditionSchema), load_default=list)
    min_passed = fields.Int(allow_none=True, load_default=None, validate=validate.Range(min=1))


class ConstantSchema(Schema):
    value = fields.Float(required=True)
    unit = fields.Str(load_default="")
    label = fields.Str(load_default="")
    calibrate = fields.Bool(load_default=False)


class TemplateSchema(Schema):
    """Marshmallow schema for test templates"""

    name = fields.Str(required=True, validate=validate.Length(min=1, max=255))
    test_type = fields.Str(required=True, validate=validate.Regexp(r"^[a-z][a-z0-9_]*$"))
    description = fields.Str(load_default="")
    standard = fields.Str(load_default="")
    version = fields.Int(load_default=1, validate=validate.Range(min=1))
    status = fields.Str(load_default=STATUS_DRAFT, validate=validate.OneOf([STATUS_DRAFT, STATUS_PUBLISHED]))
    row_label = fields.Str(load_default="Sample")
    min_rows = fields.Int(load_default=1, validate=validate.Range(min=1))
    max_rows = fields.Int(load_default=50, validate=validate.Range(min=1))
    fields_ = fields.Dict(
        data_key="fields", keys=fields.Str(), values=fields.Nested(FieldSchema), required=True
    )
    calculations = fields.Dict(keys=fields.Str(), values=fields.Raw(), load_default=dict)
    charts = fields.Dict(keys=fields.Str(), values=fields.Nested(ChartSchema), load_default=dict)
    summary = fields.List(fields.Nested(SummarySchema), load_default=list)
    curves = fields.List(fields.Nested(CurveSchema), load_default=list)
    selections = fields.List(fields.Nested(SelectionSchema), load_default=list)
    kpis = fields.Dict(keys=fields.Str(), values=fields.Raw(), load_default=dict)
    rules = fields.List(fields.Nested(RuleSchema), load_default=list)
    constants = fields.Dict(keys=fields.Str(), values=fields.Nested(ConstantSchema), load_default=dict)

    class Meta:
        unknown = EXCLUDE


template_schema = TemplateSchema()
_calculation_schema = CalculationSchema()
_kpi_schema = KpiSchema()


def load_template(data):
    """Validate raw template data. Raises SchemaError with marshmallow's messages."""
    try:
        return template_schema.load(data)
    except marshmallow.ValidationError as err:
        raise SchemaError(f"Invalid template: {err.messages}") from err


def build_schema_from_template(data):
    t = load_template(data)
    try:
        schema = _build(t)
    except Malformed as err:
        raise SchemaError(f"{t['test_type']}: invalid formula ({err})") from err
    logger.debug("Built %s v%d from template (%s)", schema.test_type, schema.version, schema.status)
    return schema


def _build(t):
    header, rows = [], []
    for key, f in t["fields_"].items():
        kind = _KIND_ALIASES.get(f["type"], f["type"])
        definition = FieldDefinition(
            key,
            label=f["label"],
            kind=kind,
            unit=f["unit"],
            required=f["required"],
            options=f["options"],
            min=f["min"],
            max=f["max"],
            default=f["default"],
        )
        (header if f["scope"] == "header" else rows).append(definition)

    derived = []
    for key, spec in t["calculations"].items():
        c = _load_formula_spec(_calculation_schema, key, spec)
        deps = c["depends_on"]
        derived.append(
            DerivedFieldDefinition(
                key,
                c["formula"],
                depends_on=tuple(deps) if deps is not None else None,
                precision=c["precision"],
                unit=c["unit"],
                label=c["label"],
            )
        )

    kpis = []
    for key, spec in t["kpis"].items():
        k = _load_formula_spec(_kpi_schema, key, spec)
        kpis.append(KpiDefinition(key, k["formula"], precision=k["precision"], label=k["label"], unit=k["unit"]))

    return TestTypeSchema(
        t["test_type"],
        name=t["name"],
        description=t["description"],
        standard=t["standard"],
        row_label=t["row_label"],
        header_fields=header,
        row_fields=rows,
        derived=derived,
        constants=[ConstantDefinition(key, **c) for key, c in t["constants"].items()],
        summary=[SummaryField(where=_where(s.pop("where")), **s) for s in t["summary"]],
        curves=[CurveDefinition(where=_where(c.pop("where")), **c) for c in t["curves"]],
        selections=[
            SelectionDefinition(s["key"], s["score"], tuple(s["fields_"]), prefix=s["prefix"], title=s["title"])
            for s in t["selections"]
        ],
        kpis=kpis,
        rules=[
            ComplianceRule(
                r["status"], r["label"], [Condition(**c) for c in r["conditions"]], min_passed=r["min_passed"]
            )
            for r in t["rules"]
        ],
        min_rows=t["min_rows"],
        max_rows=t["max_rows"],
        charts=t["charts"],
        version=t["version"],
        status=t["status"],
    )


def _load_formula_spec(loader, key, spec):
    if isinstance(spec, str):
        spec = {"formula": spec}
    try:
        return loader.load(spec)
    except marshmallow.ValidationError as err:
        raise SchemaError(f"Invalid template: {{{key!r}: {err.messages}}}") from err


def _where(where):
    if not where:
        return None
    return where["field"], where["equals"]


class SchemaRegistry:
    """Test types known to one engine instance: built-ins plus loaded templates."""

    def __init__(self, include_builtin=True):
        self._schemas = {}
        if include_builtin:
            self._schemas.update(WORKSHEET_SPECS)

    def __contains__(self, test_type):
        return test_type in self._schemas

    def __len__(self):
        return len(self._schemas)

    def test_types(self):
        return sorted(self._schemas)

    def get(self, test_type):
        try:
            return self._schemas[test_type]
        except KeyError:
            raise SchemaError(f"Unknown test type: {test_type}") from None

    def register(self, schema):
        existing = self._schemas.get(schema.test_type)
        if existing is not None and existing.status == STATUS_PUBLISHED and schema.version <= existing.version:
            raise SchemaError(
                f"{schema.test_type} v{existing.version} is published; a replacement needs a higher version"
            )
        self._schemas[schema.test_type] = schema
        return schema

    def load_template(self, data):
        return self.register(build_schema_from_template(data))

    def load_file(self, path):
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as err:
            raise SchemaError(f"{path.name}: not valid JSON ({err})") from err
        return self.load_template(data)

    def load_dir(self, directory):
        loaded = []
        for path in sorted(Path(directory).glob("*.json")):
            loaded.append(self.load_file(path))
            logger.info("Loaded template %s from %s", loaded[-1].test_type, path.name)
        return loaded

    def publish(self, test_type):
        """Freeze a draft; later edits must be registered under a higher version."""
        schema = self.get(test_type)
        if schema.status == STATUS_PUBLISHED:
            raise SchemaError(f"{test_type} v{schema.version} is already published")
        published = copy.copy(schema)
        published.status = STATUS_PUBLISHED
        self._schemas[test_type] = published
        logger.info("Published %s v%d", test_type, schema.version)
        return published


def default_registry(template_dir=None):
    """Built-in test types plus any templates in ``template_dir`` (or the configured one)."""
    if template_dir is None:
        from labengine.config import get_config

        template_dir = get_config().TEMPLATE_DIR
    registry = SchemaRegistry()
    if template_dir:
        registry.load_dir(template_dir)
    return registry
