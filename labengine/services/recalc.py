"""Dependency-driven recalculation.

Every public function takes a TestRecord and returns a new one. An edit only
re-evaluates the derived fields that transitively depend on the edited field;
the summary is rebuilt after every row change.
"""
import logging
from dataclasses import replace
from datetime import date, datetime

from labengine.services.errors import (
    EmptyAggregate,
    EvalError,
    RecordLockedError,
    RowLimitError,
    SchemaError,
    UnknownFieldError,
    UnknownReference,
    UnknownRowError,
    ValidationError,
)
from labengine.services.records import SOURCE_MANUAL, OptimumPoint, SampleRow, TestRecord, frozen_map
from labengine.services.schema import CURVE_OPTIMUM, KIND_DATE, KIND_NUMERIC, KIND_SELECT, TestTypeSchema
from labengine.services import curves
from labengine.services.summary import curve_points, recompute_summary, value_lists
from labengine.services.values import from_si, is_blank, is_number, parse_iso_date, parse_number, round_to, to_si

logger = logging.getLogger(__name__)


def create_test_record(test_type, registry=None, constants=None):
    """Open an empty record for ``test_type`` (an id or a TestTypeSchema)."""
    if isinstance(test_type, TestTypeSchema):
        schema = test_type
    else:
        if registry is None:
            from labengine.services.templates import default_registry

            registry = default_registry()
        schema = registry.get(test_type)

    overrides = {}
    for key, raw in (constants or {}).items():
        if key not in schema.constant_index:
            raise UnknownFieldError(f"{schema.test_type} has no constant {key!r}")
        try:
            value = parse_number(raw)
        except ValueError as exc:
            raise ValidationError(key, f"Constant {key} must be a number") from exc
        if value is None:
            continue
        overrides[key] = value

    header = {f.key: f.default for f in schema.header_fields if f.default is not None}
    rows = tuple(_new_row(schema, f"r{i}") for i in range(1, schema.min_rows + 1))
    record = TestRecord(
        schema=schema,
        header=frozen_map(header),
        rows=rows,
        constants=frozen_map(overrides),
        next_row_seq=schema.min_rows + 1,
    )
    record = recompute_record(record)
    logger.debug("Created %s record with %d rows", schema.test_type, len(rows), extra={"test_type": schema.test_type})
    return record


def on_field_edit(record, row_id, field_key, raw_value):
    """Apply one raw edit. ``row_id=None`` edits a header field."""
    _check_editable(record)
    schema = record.schema
    header_edit = row_id is None

    f = schema.field(field_key, row=not header_edit)
    if f is None:
        if field_key in schema.derived_index:
            raise UnknownFieldError(f"{field_key!r} is derived and cannot be edited")
        raise UnknownFieldError(f"{schema.test_type} has no {'header' if header_edit else 'row'} field {field_key!r}")

    pos = None
    if not header_edit:
        pos = record.row_index(row_id)
        if pos is None:
            raise UnknownRowError(f"No row {row_id!r}")

    try:
        value = coerce_value(f, raw_value)
    except ValueError as exc:
        logger.warning(
            "Rejected %s=%r on %s: %s",
            field_key,
            raw_value,
            row_id or "header",
            exc,
            extra={"test_type": schema.test_type},
        )
        return _mark_invalid(record, pos, field_key, str(exc))

    if header_edit:
        header = dict(record.header)
        _store(header, field_key, value)
        invalid = dict(record.header_invalid)
        invalid.pop(field_key, None)
        record = replace(record, header=frozen_map(header), header_invalid=frozen_map(invalid))
        rows = record.rows
    else:
        row = record.rows[pos]
        values = dict(row.values)
        _store(values, field_key, value)
        invalid = dict(row.invalid)
        invalid.pop(field_key, None)
        rows = list(record.rows)
        rows[pos] = replace(row, values=frozen_map(values), invalid=frozen_map(invalid))
        rows = tuple(rows)

    plan = schema.recompute_plan(field_key, header=header_edit)
    logger.debug(
        "Edit %s on %s touches %s",
        field_key,
        row_id or "header",
        [k for k, _ in plan],
        extra={"test_type": schema.test_type},
    )
    rows = apply_plan(schema, rows, record.header, record.constants, plan, pos)
    return _after_rows_changed(replace(record, rows=rows))


def add_row(record):
    _check_editable(record)
    schema = record.schema
    if len(record.rows) >= schema.max_rows:
        raise RowLimitError(f"{schema.test_type} allows at most {schema.max_rows} rows")
    row = _new_row(schema, f"r{record.next_row_seq}")
    record = replace(record, rows=record.rows + (row,), next_row_seq=record.next_row_seq + 1)
    return recompute_record(record)


def remove_row(record, row_id):
    _check_editable(record)
    schema = record.schema
    pos = record.row_index(row_id)
    if pos is None:
        raise UnknownRowError(f"No row {row_id!r}")
    if len(record.rows) <= schema.min_rows:
        raise RowLimitError(f"{schema.test_type} needs at least {schema.min_rows} rows")
    rows = record.rows[:pos] + record.rows[pos + 1 :]
    return recompute_record(replace(record, rows=rows))


def recompute_record(record):
    """Re-evaluate every derived field in every row, then the summary."""
    rows = apply_plan(record.schema, record.rows, record.header, record.constants, record.schema.full_plan(), None)
    return _after_rows_changed(replace(record, rows=rows))


def set_manual_optimum(record, x, y):
    """Pin the optimum to an operator-picked point on the compaction curve."""
    _check_editable(record)
    curve = optimum_curve(record.schema)
    try:
        px = parse_number(x)
        py = parse_number(y)
    except ValueError as exc:
        raise ValidationError(curve.key, "Optimum must be numeric") from exc
    if px is None or py is None:
        raise ValidationError(curve.key, "Optimum needs both x and y")
    span = curves.data_range(curve_points(record.rows, curve))
    if span is None or not span[0] <= px <= span[1]:
        raise ValidationError(curve.key, f"{px:g} is outside the measured {curve.x} range")
    point = OptimumPoint(x=px, y=py, source=SOURCE_MANUAL, method="manual")
    record = replace(record, manual_optimum=point)
    return _with_summary(record)


def clear_optimum(record):
    _check_editable(record)
    return _with_summary(replace(record, manual_optimum=None))


def optimum_curve(schema):
    for c in schema.curves:
        if c.kind == CURVE_OPTIMUM:
            return c
    raise SchemaError(f"{schema.test_type} has no optimum curve")


def coerce_value(f, raw):
    """Validate ``raw`` for field ``f``. Returns the stored value or None for blank."""
    if is_blank(raw):
        return None
    if f.kind == KIND_NUMERIC:
        try:
            val = parse_number(raw)
        except (TypeError, ValueError):
            raise ValueError(f"{f.label or f.key} must be a number")
        if f.min is not None and val < f.min:
            raise ValueError(f"{f.label or f.key} must be at least {f.min:g}")
        if f.max is not None and val > f.max:
            raise ValueError(f"{f.label or f.key} must be at most {f.max:g}")
        return val
    if f.kind == KIND_SELECT:
        text = str(raw).strip()
        if text not in f.options and is_number(raw):
            # spreadsheets hand back 5 for a "5.0" option
            text = next((o for o in f.options if _numeric_option(o) == float(raw)), text)
        if text not in f.options:
            raise ValueError(f"{f.label or f.key} must be one of {', '.join(f.options)}")
        return text
    if f.kind == KIND_DATE:
        if isinstance(raw, datetime):
            return raw.date().isoformat()
        if isinstance(raw, date):
            return raw.isoformat()
        return parse_iso_date(raw)
    return str(raw).strip()


def _numeric_option(option):
    try:
        return float(option)
    except ValueError:
        return None


def apply_plan(schema, rows, header, constants, plan, pos):
    """Evaluate ``plan`` over ``rows``; steps flagged all-rows touch every row."""
    if not plan:
        return tuple(rows)
    derived = [dict(r.derived) for r in rows]
    errors = [dict(r.errors) for r in rows]
    touched = set()
    for dkey, all_rows in plan:
        d = schema.derived_index[dkey]
        lists = value_lists(schema, rows, derived) if d.cross_row else None
        targets = range(len(rows)) if (all_rows or pos is None) else (pos,)
        for i in targets:
            touched.add(i)
            env = row_env(schema, rows[i].values, derived[i], header, constants)
            value, code = evaluate_derived(d, env, lists)
            if value is None:
                derived[i].pop(dkey, None)
            else:
                derived[i][dkey] = value
            if code:
                errors[i][dkey] = code
            else:
                errors[i].pop(dkey, None)
    return tuple(
        replace(row, derived=frozen_map(derived[i]), errors=frozen_map(errors[i])) if i in touched else row
        for i, row in enumerate(rows)
    )


def evaluate_derived(d, env, lists=None):
    """Returns ``(value, error_code)``; a missing input is absent without an error."""
    for name in d.depends_on:
        if name not in env and name not in d.formula.aggregate_refs:
            return None, None
    try:
        raw = d.formula.evaluate(env, lists)
    except (UnknownReference, EmptyAggregate):
        return None, None
    except EvalError as exc:
        return None, exc.code
    return round_to(from_si(raw, d.unit), d.precision), None


def row_env(schema, values, derived, header, constants):
    env = {}
    for f in schema.header_fields:
        if f.is_numeric and header.get(f.key) is not None:
            env[f.key] = to_si(header[f.key], f.unit)
    for c in schema.constants:
        env[c.key] = to_si(constants.get(c.key, c.value), c.unit)
    for f in schema.row_fields:
        if f.is_numeric and values.get(f.key) is not None:
            env[f.key] = to_si(values[f.key], f.unit)
    for key, val in derived.items():
        env[key] = to_si(val, schema.derived_index[key].unit)
    return env


def _after_rows_changed(record):
    manual = record.manual_optimum
    if manual is not None:
        curve = optimum_curve(record.schema)
        span = curves.data_range(curve_points(record.rows, curve))
        if span is None or not span[0] <= manual.x <= span[1]:
            logger.warning(
                "Manual optimum at %s=%g dropped: outside the measured range",
                curve.x,
                manual.x,
                extra={"test_type": record.test_type},
            )
            record = replace(record, manual_optimum=None)
    return _with_summary(record)


def _with_summary(record):
    summary = recompute_summary(
        record.rows,
        record.schema,
        header=record.header,
        constants=record.constants,
        manual_optimum=record.manual_optimum,
    )
    return replace(record, summary=summary)


def _mark_invalid(record, pos, field_key, message):
    if pos is None:
        invalid = dict(record.header_invalid)
        invalid[field_key] = message
        return replace(record, header_invalid=frozen_map(invalid))
    row = record.rows[pos]
    invalid = dict(row.invalid)
    invalid[field_key] = message
    rows = list(record.rows)
    rows[pos] = replace(row, invalid=frozen_map(invalid))
    return replace(record, rows=tuple(rows))


def _new_row(schema, row_id):
    values = {f.key: f.default for f in schema.row_fields if f.default is not None}
    return SampleRow(id=row_id, values=frozen_map(values))


def _store(values, key, value):
    if value is None:
        values.pop(key, None)
    else:
        values[key] = value


def _check_editable(record):
    if record.finalized:
        raise RecordLockedError("Finalized records cannot be edited; open a new revision")

