"""Declarative test-type schemas.

A ``TestTypeSchema`` is pure data: raw input fields (header and per-row),
derived row fields with their formulas, material constants, summary fields,
curves, best-row selections, KPI formulas and ordered compliance rules. Building one validates
units and references, rejects dependency cycles and precomputes, for every
input, the ordered list of derived fields an edit has to touch.
"""
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Optional, Tuple

from labengine.services.errors import SchemaError
from labengine.services.formula import parse
from labengine.services.values import check_unit

KIND_NUMERIC = "numeric"
KIND_TEXT = "text"
KIND_SELECT = "select"
KIND_DATE = "date"
FIELD_KINDS = (KIND_NUMERIC, KIND_TEXT, KIND_SELECT, KIND_DATE)

CURVE_OPTIMUM = "optimum"
CURVE_FLOW = "flow"
OPTIMUM_MAX = "max"
OPTIMUM_QUADRATIC = "quadratic"

AGGREGATE_SUFFIXES = ("mean", "stddev", "count", "min", "max")
CONDITION_OPS = (">=", ">", "<=", "<", "==", "!=", "between")


@dataclass(frozen=True)
class FieldDefinition:
    key: str
    label: str = ""
    kind: str = KIND_NUMERIC
    unit: str = ""
    required: bool = False
    options: Tuple[str, ...] = ()
    min: Optional[float] = None
    max: Optional[float] = None
    default: Any = None

    def __post_init__(self):
        if self.kind not in FIELD_KINDS:
            raise SchemaError(f"Field {self.key!r} has unknown kind {self.kind!r}")
        if self.kind == KIND_SELECT and not self.options:
            raise SchemaError(f"Select field {self.key!r} needs options")
        if self.kind == KIND_NUMERIC:
            check_unit(self.unit)
        object.__setattr__(self, "options", tuple(self.options))

    @property
    def is_numeric(self):
        return self.kind == KIND_NUMERIC


@dataclass(frozen=True)
class DerivedFieldDefinition:
    key: str
    formula: Any
    depends_on: Optional[Tuple[str, ...]] = None
    precision: int = 3
    unit: str = ""
    label: str = ""

    def __post_init__(self):
        formula = parse(self.formula)
        object.__setattr__(self, "formula", formula)
        check_unit(self.unit)
        if self.depends_on is None:
            object.__setattr__(self, "depends_on", tuple(sorted(formula.names)))
        else:
            deps = tuple(self.depends_on)
            missing = formula.names - set(deps)
            if missing:
                raise SchemaError(
                    f"Derived field {self.key!r} uses {sorted(missing)} without declaring them in depends_on"
                )
            object.__setattr__(self, "depends_on", deps)

    @property
    def cross_row(self):
        return bool(self.formula.aggregate_refs)


@dataclass(frozen=True)
class ConstantDefinition:
    key: str
    value: float
    unit: str = ""
    label: str = ""
    calibrate: bool = False

    def __post_init__(self):
        check_unit(self.unit)


@dataclass(frozen=True)
class SummaryField:
    key: str
    source: str
    min_valid: int = 1
    where: Optional[Tuple[str, str]] = None
    precision: Optional[int] = None
    label: str = ""

    def aggregate_key(self, suffix):
        return f"{self.key}_{suffix}"


@dataclass(frozen=True)
class CurveDefinition:
    key: str
    x: str
    y: str
    kind: str = CURVE_OPTIMUM
    method: str = OPTIMUM_MAX
    reference: float = 25.0
    min_points: int = 2
    where: Optional[Tuple[str, str]] = None
    x_name: Optional[str] = None
    y_name: Optional[str] = None
    precision: int = 3
    title: str = ""

    def __post_init__(self):
        if self.kind not in (CURVE_OPTIMUM, CURVE_FLOW):
            raise SchemaError(f"Curve {self.key!r} has unknown kind {self.kind!r}")
        if self.method not in (OPTIMUM_MAX, OPTIMUM_QUADRATIC):
            raise SchemaError(f"Curve {self.key!r} has unknown method {self.method!r}")
        if self.kind == CURVE_FLOW and self.reference <= 0:
            raise SchemaError(f"Curve {self.key!r} reference must be positive")

    @property
    def outputs(self):
        names = []
        if self.kind == CURVE_OPTIMUM and self.x_name:
            names.append(self.x_name)
        if self.y_name:
            names.append(self.y_name)
        return names


@dataclass(frozen=True)
class SelectionDefinition:
    """Publishes the fields of the row with the lowest ``score`` as ``{prefix}_{field}`` metrics.

    Ties go to the earlier row.
    """

    key: str
    score: str
    fields: Tuple[str, ...]
    prefix: str = ""
    title: str = ""

    def __post_init__(self):
        object.__setattr__(self, "fields", tuple(self.fields))
        if not self.fields:
            raise SchemaError(f"Selection {self.key!r} publishes no fields")

    @property
    def outputs(self):
        prefix = self.prefix or self.key
        return [f"{prefix}_{name}" for name in self.fields]


@dataclass(frozen=True)
class KpiDefinition:
    key: str
    formula: Any
    precision: int = 3
    label: str = ""
    unit: str = ""

    def __post_init__(self):
        object.__setattr__(self, "formula", parse(self.formula))


@dataclass(frozen=True)
class Condition:
    metric: str
    op: str
    value: float
    value2: Optional[float] = None

    def __post_init__(self):
        if self.op not in CONDITION_OPS:
            raise SchemaError(f"Unknown rule operator {self.op!r}")
        if self.op == "between" and self.value2 is None:
            raise SchemaError(f"'between' on {self.metric!r} needs two bounds")

    def holds(self, metrics):
        val = metrics.get(self.metric)
        if val is None:
            return False
        if self.op == ">=":
            return val >= self.value
        if self.op == ">":
            return val > self.value
        if self.op == "<=":
            return val <= self.value
        if self.op == "<":
            return val < self.value
        if self.op == "==":
            return val == self.value
        if self.op == "!=":
            return val != self.value
        lo, hi = sorted((self.value, self.value2))
        return lo <= val <= hi


@dataclass(frozen=True)
class ComplianceRule:
    status: str
    label: str = ""
    conditions: Tuple[Condition, ...] = field(default_factory=tuple)
    min_passed: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "conditions", tuple(self.conditions))
        if self.min_passed is not None and not 1 <= self.min_passed <= len(self.conditions):
            raise SchemaError(f"Rule {self.status!r} needs 1..{len(self.conditions)} passed conditions")

    def matches(self, metrics):
        """All conditions must hold, or at least ``min_passed`` of them."""
        passed = sum(1 for c in self.conditions if c.holds(metrics))
        if self.min_passed is None:
            return passed == len(self.conditions)
        return passed >= self.min_passed


class TestTypeSchema:
    __test__ = False

    def __init__(
        self,
        test_type,
        name="",
        header_fields=(),
        row_fields=(),
        derived=(),
        constants=(),
        summary=(),
        curves=(),
        selections=(),
        kpis=(),
        rules=(),
        min_rows=1,
        max_rows=50,
        description="",
        standard="",
        row_label="Sample",
        charts=None,
        version=1,
        status="published",
    ):
        self.test_type = test_type
        self.name = name or test_type
        self.description = description
        self.standard = standard
        self.row_label = row_label
        self.version = version
        self.status = status
        self.header_fields = tuple(header_fields)
        self.row_fields = tuple(row_fields)
        self.derived = tuple(derived)
        self.constants = tuple(constants)
        self.summary = tuple(summary)
        self.curves = tuple(curves)
        self.selections = tuple(selections)
        self.kpis = tuple(kpis)
        self.rules = tuple(rules)
        self.min_rows = int(min_rows)
        self.max_rows = int(max_rows)
        self.charts = MappingProxyType(dict(charts or {}))

        if self.min_rows < 1 or self.max_rows < self.min_rows:
            raise SchemaError(f"{test_type}: invalid row bounds {min_rows}..{max_rows}")

        self.header_index = MappingProxyType({f.key: f for f in self.header_fields})
        self.row_index = MappingProxyType({f.key: f for f in self.row_fields})
        self.derived_index = MappingProxyType({d.key: d for d in self.derived})
        self.constant_index = MappingProxyType({c.key: c for c in self.constants})
        self._check_unique_keys()
        self._check_derived_references()
        self.order = self._topological_order()
        self._plans = MappingProxyType(self._build_plans())
        self.summary_names = self._check_summary()

    def __repr__(self):
        return f"TestTypeSchema({self.test_type!r}, version={self.version})"

    def field(self, key, row=True):
        index = self.row_index if row else self.header_index
        return index.get(key)

    def recompute_plan(self, key, header=False):
        """Ordered ``(derived_key, all_rows)`` pairs affected by an edit of ``key``."""
        return self._plans.get((key, header), ())

    def full_plan(self):
        return tuple((key, True) for key in self.order)

    def required_fields(self, row=True):
        fields = self.row_fields if row else self.header_fields
        return [f for f in fields if f.required]

    def uncalibrated(self, overrides=None):
        overrides = overrides or {}
        return [c for c in self.constants if c.calibrate and c.key not in overrides]

    def _check_unique_keys(self):
        seen = set()
        for key in (
            [f.key for f in self.header_fields]
            + [f.key for f in self.row_fields]
            + [d.key for d in self.derived]
            + [c.key for c in self.constants]
        ):
            if key in seen:
                raise SchemaError(f"{self.test_type}: duplicate key {key!r}")
            seen.add(key)

    def _numeric_row_names(self):
        return {f.key for f in self.row_fields if f.is_numeric} | set(self.derived_index)

    def _check_derived_references(self):
        scalar_names = (
            self._numeric_row_names()
            | {f.key for f in self.header_fields if f.is_numeric}
            | set(self.constant_index)
        )
        list_names = self._numeric_row_names()
        for d in self.derived:
            for name in d.formula.references:
                if name not in scalar_names:
                    raise SchemaError(f"{self.test_type}: {d.key!r} references unknown or non-numeric {name!r}")
            for name in d.formula.aggregate_refs:
                if name not in list_names:
                    raise SchemaError(f"{self.test_type}: {d.key!r} aggregates unknown or non-numeric {name!r}")
            for name in set(d.depends_on) - d.formula.names:
                if name not in scalar_names:
                    raise SchemaError(f"{self.test_type}: {d.key!r} depends on unknown or non-numeric {name!r}")

    def _topological_order(self):
        deps = {d.key: {n for n in d.depends_on if n in self.derived_index} for d in self.derived}
        order = []
        ready = [d.key for d in self.derived if not deps[d.key]]
        remaining = {k: set(v) for k, v in deps.items()}
        while ready:
            key = ready.pop(0)
            order.append(key)
            for other, pending in remaining.items():
                if key in pending:
                    pending.discard(key)
                    if not pending and other not in order and other not in ready:
                        ready.append(other)
        if len(order) != len(self.derived):
            cycle = sorted(k for k in remaining if k not in order)
            raise SchemaError(f"{self.test_type}: dependency cycle among {cycle}")
        return tuple(order)

    def _build_plans(self):
        dependents = {}
        for d in self.derived:
            for name in d.depends_on:
                dependents.setdefault(name, set()).add(d.key)

        inputs = (
            [(f.key, False) for f in self.row_fields]
            + [(d.key, False) for d in self.derived]
            + [(f.key, True) for f in self.header_fields]
            + [(c.key, True) for c in self.constants]
        )
        plans = {}
        for key, header in inputs:
            affected = set()
            stack = [key]
            while stack:
                for dep in dependents.get(stack.pop(), ()):
                    if dep not in affected:
                        affected.add(dep)
                        stack.append(dep)
            spread = set()
            plan = []
            for dkey in self.order:
                if dkey not in affected:
                    continue
                d = self.derived_index[dkey]
                if header or d.cross_row or any(n in spread for n in d.depends_on):
                    spread.add(dkey)
                plan.append((dkey, dkey in spread))
            plans[(key, header)] = tuple(plan)
        return plans

    def _check_summary(self):
        list_names = self._numeric_row_names()
        filter_names = {f.key for f in self.row_fields if not f.is_numeric}
        names = {f.key for f in self.header_fields if f.is_numeric} | set(self.constant_index)

        for s in self.summary:
            if s.source not in list_names:
                raise SchemaError(f"{self.test_type}: summary {s.key!r} uses unknown source {s.source!r}")
            if s.where and s.where[0] not in filter_names:
                raise SchemaError(f"{self.test_type}: summary {s.key!r} filters on unknown field {s.where[0]!r}")
            names.update(s.aggregate_key(suffix) for suffix in AGGREGATE_SUFFIXES)
        for c in self.curves:
            for axis in (c.x, c.y):
                if axis not in list_names:
                    raise SchemaError(f"{self.test_type}: curve {c.key!r} uses unknown field {axis!r}")
            if c.where and c.where[0] not in filter_names:
                raise SchemaError(f"{self.test_type}: curve {c.key!r} filters on unknown field {c.where[0]!r}")
            names.update(c.outputs)
        for sel in self.selections:
            for name in (sel.score,) + sel.fields:
                if name not in list_names:
                    raise SchemaError(f"{self.test_type}: selection {sel.key!r} uses unknown field {name!r}")
            names.update(sel.outputs)
        for k in self.kpis:
            for name in k.formula.references:
                if name not in names:
                    raise SchemaError(f"{self.test_type}: KPI {k.key!r} references unknown {name!r}")
            for name in k.formula.aggregate_refs:
                if name not in list_names:
                    raise SchemaError(f"{self.test_type}: KPI {k.key!r} aggregates unknown {name!r}")
            names.add(k.key)
        for rule in self.rules:
            for cond in rule.conditions:
                if cond.metric not in names:
                    raise SchemaError(f"{self.test_type}: rule {rule.status!r} uses unknown metric {cond.metric!r}")
        return frozenset(names)
