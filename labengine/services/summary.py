"""Aggregation and compliance classification.

``recompute_summary`` is a pure function of the rows: it never looks at the
previous summary, so calling it twice on the same input yields equal results.
"""
import logging

from labengine.services import curves
from labengine.services.errors import EvalError, EmptyAggregate, InsufficientData, NoBracket, UnknownReference
from labengine.services.formula import mean, stddev
from labengine.services.records import (
    SOURCE_AUTO,
    STATUS_INSUFFICIENT,
    STATUS_UNCLASSIFIED,
    OptimumPoint,
    SummaryResult,
    frozen_map,
)
from labengine.services.schema import CURVE_OPTIMUM
from labengine.services.values import fmt, from_si, round_to, to_si

logger = logging.getLogger(__name__)

DEFAULT_PRECISION = 3


def recompute_summary(rows, schema, header=None, constants=None, manual_optimum=None):
    header = header or {}
    constants = constants or {}
    aggregates, insufficient = _aggregates(rows, schema)
    si_values = {}
    metrics = {}
    curve_states = {}
    warnings = []
    optimum = None

    for curve in schema.curves:
        points = curve_points(rows, curve)
        if curve.kind == CURVE_OPTIMUM:
            point, state = _optimum(curve, points, manual_optimum if optimum is None else None)
            if point is not None and optimum is None:
                optimum = point
            if point is not None:
                _put(metrics, si_values, curve.x_name, point.x, _unit_of(schema, curve.x), curve.precision)
                _put(metrics, si_values, curve.y_name, point.y, _unit_of(schema, curve.y), curve.precision)
        else:
            value, state = _flow(curve, points)
            if value is not None:
                _put(metrics, si_values, curve.y_name, value, _unit_of(schema, curve.y), curve.precision)
        if state:
            curve_states[curve.key] = state
            if state == InsufficientData.code:
                insufficient = True

    for sel in schema.selections:
        row = best_row(rows, sel.score)
        if row is None:
            curve_states[sel.key] = InsufficientData.code
            insufficient = True
            continue
        for name, out in zip(sel.fields, sel.outputs):
            _put(metrics, si_values, out, row.value(name), _unit_of(schema, name), _precision_of(schema, name))

    for c in schema.uncalibrated(constants):
        if _constant_used(schema, c.key):
            warnings.append(
                f"{c.label or c.key} uses the assumed value {fmt(c.value)} {c.unit}".rstrip()
                + "; calibrate it for this material"
            )

    if insufficient:
        return SummaryResult(
            aggregates=frozen_map(),
            status=STATUS_INSUFFICIENT,
            label="Insufficient data",
            optimum=optimum,
            metrics=frozen_map(metrics),
            curve_states=frozen_map(curve_states),
            warnings=tuple(warnings),
        )

    env = _summary_env(schema, aggregates, header, constants)
    env.update(si_values)
    lists = value_lists(schema, rows)
    for kpi in schema.kpis:
        try:
            raw = kpi.formula.evaluate(env, lists)
        except (UnknownReference, EmptyAggregate):
            continue
        except EvalError as exc:
            warnings.append(f"{kpi.label or kpi.key}: {exc.code}")
            continue
        env[kpi.key] = raw
        metrics[kpi.key] = round_to(from_si(raw, kpi.unit), kpi.precision)

    status, label = classify(schema.rules, _rule_metrics(schema, aggregates, metrics, header, constants))
    return SummaryResult(
        aggregates=frozen_map(aggregates),
        status=status,
        label=label,
        optimum=optimum,
        metrics=frozen_map(metrics),
        curve_states=frozen_map(curve_states),
        warnings=tuple(warnings),
    )


def classify(rules, metrics):
    """First rule whose conditions all hold wins."""
    for rule in rules:
        if rule.matches(metrics):
            return rule.status, rule.label
    return STATUS_UNCLASSIFIED, ""


def best_row(rows, score):
    """Row with the lowest ``score`` value; the earlier row wins a tie."""
    best = None
    for row in rows:
        val = row.value(score)
        if val is not None and (best is None or val < best[0]):
            best = (val, row)
    return best[1] if best else None


def curve_points(rows, curve):
    points = []
    for row in rows:
        if not _row_matches(row, curve.where):
            continue
        x = row.value(curve.x)
        y = row.value(curve.y)
        if x is not None and y is not None:
            points.append((x, y))
    return curves.sorted_points(points)


def value_lists(schema, rows, derived=None):
    """SI values of every numeric row field and derived field across rows.

    ``derived`` overrides the rows' own derived maps while a recompute is in flight.
    """
    if derived is None:
        derived = [r.derived for r in rows]
    lists = {}
    for f in schema.row_fields:
        if f.is_numeric:
            lists[f.key] = [to_si(r.values[f.key], f.unit) for r in rows if r.values.get(f.key) is not None]
    for d in schema.derived:
        lists[d.key] = [to_si(ds[d.key], d.unit) for ds in derived if ds.get(d.key) is not None]
    return lists


def _aggregates(rows, schema):
    out = {}
    insufficient = False
    for s in schema.summary:
        values = [
            row.value(s.source)
            for row in rows
            if _row_matches(row, s.where) and row.value(s.source) is not None
        ]
        if len(values) < max(1, s.min_valid):
            logger.debug("%s: %s has %d of %d valid rows", schema.test_type, s.key, len(values), s.min_valid)
            insufficient = True
            continue
        precision = s.precision if s.precision is not None else _precision_of(schema, s.source)
        out[s.aggregate_key("count")] = len(values)
        out[s.aggregate_key("mean")] = round_to(mean(values), precision)
        out[s.aggregate_key("min")] = round_to(min(values), precision)
        out[s.aggregate_key("max")] = round_to(max(values), precision)
        sd = stddev(values)
        if sd is not None:
            out[s.aggregate_key("stddev")] = round_to(sd, precision)
    if insufficient:
        return {}, True
    return out, False


def _optimum(curve, points, manual):
    if manual is not None:
        return manual, None
    if len(points) < curve.min_points:
        return None, InsufficientData.code
    x, y, method = curves.select_optimum(points, curve.method)
    return OptimumPoint(x=round_to(x, curve.precision), y=round_to(y, curve.precision), source=SOURCE_AUTO, method=method), None


def _flow(curve, points):
    if len(points) < curve.min_points:
        return None, InsufficientData.code
    try:
        return curves.flow_curve_interpolate(points, curve.reference), None
    except (InsufficientData, NoBracket) as exc:
        logger.debug("Flow curve %s cannot interpolate: %s", curve.key, exc)
        return None, exc.code


def _row_matches(row, where):
    if not where:
        return True
    key, expected = where
    return row.values.get(key) == expected


def _put(metrics, si_values, name, value, unit, precision):
    if not name or value is None:
        return
    metrics[name] = round_to(value, precision)
    si_values[name] = to_si(value, unit)


def _unit_of(schema, key):
    if key in schema.derived_index:
        return schema.derived_index[key].unit
    return schema.row_index[key].unit


def _precision_of(schema, key):
    if key in schema.derived_index:
        return schema.derived_index[key].precision
    return DEFAULT_PRECISION


def _summary_env(schema, aggregates, header, constants):
    env = {}
    for s in schema.summary:
        unit = _unit_of(schema, s.source)
        for suffix in ("mean", "stddev", "min", "max"):
            key = s.aggregate_key(suffix)
            if key in aggregates:
                env[key] = to_si(aggregates[key], unit)
        count_key = s.aggregate_key("count")
        if count_key in aggregates:
            env[count_key] = float(aggregates[count_key])
    for f in schema.header_fields:
        if f.is_numeric and header.get(f.key) is not None:
            env[f.key] = to_si(header[f.key], f.unit)
    for c in schema.constants:
        env[c.key] = to_si(constants.get(c.key, c.value), c.unit)
    return env


def _rule_metrics(schema, aggregates, metrics, header, constants):
    out = {}
    for f in schema.header_fields:
        if f.is_numeric and header.get(f.key) is not None:
            out[f.key] = header[f.key]
    for c in schema.constants:
        out[c.key] = constants.get(c.key, c.value)
    out.update(aggregates)
    out.update(metrics)
    return out


def _constant_used(schema, key):
    if any(key in d.formula.names for d in schema.derived):
        return True
    return any(key in k.formula.names for k in schema.kpis)
