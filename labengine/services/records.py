import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping, Optional, Tuple

from labengine.services.errors import FinalizeError, ValidationError
from labengine.services.values import is_blank

logger = logging.getLogger(__name__)

STATUS_INSUFFICIENT = "insufficient"
STATUS_UNCLASSIFIED = "unclassified"

STATE_EMPTY = "empty"
STATE_EDITING = "editing"
STATE_INSUFFICIENT = "insufficient"
STATE_COMPUTED = "computed"
STATE_FINALIZED = "finalized"

SOURCE_AUTO = "auto"
SOURCE_MANUAL = "manual"


def frozen_map(data=None):
    return MappingProxyType(dict(data or {}))


def now_iso():
    return datetime.now().isoformat(timespec="seconds")


@dataclass(frozen=True)
class OptimumPoint:
    x: float
    y: float
    source: str = SOURCE_AUTO
    method: str = ""

    def as_dict(self):
        return {"x": self.x, "y": self.y, "source": self.source, "method": self.method}


@dataclass(frozen=True)
class SampleRow:
    id: str
    values: Mapping[str, Any] = field(default_factory=frozen_map)
    derived: Mapping[str, float] = field(default_factory=frozen_map)
    invalid: Mapping[str, str] = field(default_factory=frozen_map)
    errors: Mapping[str, str] = field(default_factory=frozen_map)

    def value(self, key):
        if key in self.derived:
            return self.derived[key]
        return self.values.get(key)


@dataclass(frozen=True)
class SummaryResult:
    aggregates: Mapping[str, float] = field(default_factory=frozen_map)
    status: str = STATUS_INSUFFICIENT
    label: str = ""
    optimum: Optional[OptimumPoint] = None
    metrics: Mapping[str, float] = field(default_factory=frozen_map)
    curve_states: Mapping[str, str] = field(default_factory=frozen_map)
    warnings: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TestRecord:
    """Editable state of one test. Every operation returns a new record."""

    __test__ = False

    schema: Any
    header: Mapping[str, Any] = field(default_factory=frozen_map)
    rows: Tuple[SampleRow, ...] = ()
    summary: SummaryResult = field(default_factory=SummaryResult)
    constants: Mapping[str, float] = field(default_factory=frozen_map)
    header_invalid: Mapping[str, str] = field(default_factory=frozen_map)
    manual_optimum: Optional[OptimumPoint] = None
    revision: int = 1
    next_row_seq: int = 1

    @property
    def test_type(self):
        return self.schema.test_type

    @property
    def finalized(self):
        return False

    def row(self, row_id):
        for row in self.rows:
            if row.id == row_id:
                return row
        return None

    def row_index(self, row_id):
        for i, row in enumerate(self.rows):
            if row.id == row_id:
                return i
        return None


@dataclass(frozen=True)
class FinalizedTestRecord:
    record: TestRecord
    finalized_at: str

    @property
    def finalized(self):
        return True

    @property
    def schema(self):
        return self.record.schema

    @property
    def test_type(self):
        return self.record.test_type

    @property
    def revision(self):
        return self.record.revision

    @property
    def header(self):
        return self.record.header

    @property
    def rows(self):
        return self.record.rows

    @property
    def summary(self):
        return self.record.summary


def record_state(record):
    if record.finalized:
        return STATE_FINALIZED
    schema = record.schema
    has_data = _entered(record.header, schema.header_index) or any(_entered(r.values, schema.row_index) for r in record.rows)
    invalid = bool(record.header_invalid) or any(r.invalid for r in record.rows)
    if not has_data and not invalid:
        return STATE_EMPTY
    if invalid:
        return STATE_EDITING
    if record.summary.status == STATUS_INSUFFICIENT:
        return STATE_INSUFFICIENT
    return STATE_COMPUTED


def _entered(values, fields):
    """True when any value differs from its field default."""
    for key, val in values.items():
        f = fields.get(key)
        if not is_blank(val) and (f is None or val != f.default):
            return True
    return False


def validation_issues(record):
    """Every problem that blocks finalizing ``record``, in display order."""
    schema = record.schema
    issues = []
    for key, message in record.header_invalid.items():
        issues.append(ValidationError(key, message))
    for f in schema.required_fields(row=False):
        if is_blank(record.header.get(f.key)):
            issues.append(ValidationError(f.key, f"{f.label or f.key} is required"))

    if len(record.rows) < schema.min_rows:
        issues.append(ValidationError(None, f"At least {schema.min_rows} rows are required"))
    for row in record.rows:
        for key, message in row.invalid.items():
            issues.append(ValidationError(key, message, row_id=row.id))
        for f in schema.required_fields(row=True):
            if is_blank(row.values.get(f.key)):
                issues.append(ValidationError(f.key, f"{f.label or f.key} is required", row_id=row.id))

    if record.summary.status == STATUS_INSUFFICIENT:
        issues.append(ValidationError(None, "Not enough valid rows to compute the summary"))
    return issues


def finalize(record):
    if record.finalized:
        raise FinalizeError("Record is already finalized", [])
    issues = validation_issues(record)
    if issues:
        logger.info("Finalize rejected for %s: %d issue(s)", record.test_type, len(issues))
        raise FinalizeError(f"{len(issues)} issue(s) block finalizing", issues)
    out = FinalizedTestRecord(record=record, finalized_at=now_iso())
    logger.info(
        "Finalized %s revision %d with status %s",
        record.test_type,
        record.revision,
        record.summary.status,
        extra={"test_type": record.test_type},
    )
    return out


def new_revision(finalized):
    """Editable copy of a finalized record; the finalized value is untouched."""
    if not finalized.finalized:
        raise FinalizeError("Only finalized records can be revised", [])
    base = finalized.record
    logger.info("Opened revision %d of %s", base.revision + 1, base.test_type)
    return replace(base, revision=base.revision + 1)
