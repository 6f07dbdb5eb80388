"""
test_recalc.py - edits, dependency-driven recalculation and row management.

Worked example used throughout (field density):
  wet 1.90 g/cm3 at 12 % moisture -> dry = 1.90 / 1.12 = 1.696 g/cm3
"""
import logging

import pytest

from conftest import PROCTOR_POINTS, fill
from labengine.services.errors import (
    RecordLockedError,
    RowLimitError,
    SchemaError,
    UnknownFieldError,
    UnknownRowError,
    ValidationError,
)
from labengine.services.recalc import (
    add_row,
    clear_optimum,
    coerce_value,
    create_test_record,
    on_field_edit,
    remove_row,
    set_manual_optimum,
)
from labengine.services.records import finalize
from labengine.services.schema import DerivedFieldDefinition, FieldDefinition, TestTypeSchema
from labengine.services.worksheet_specs import get_spec


@pytest.fixture
def field_density(registry):
    return create_test_record("field_density", registry)


class TestCreate:
    def test_rows_and_header_defaults(self, field_density):
        assert [r.id for r in field_density.rows] == ["r1"]
        assert field_density.header["required_compaction"] == 95.0
        assert field_density.next_row_seq == 2

    def test_min_rows_are_created(self, registry):
        record = create_test_record("proctor", registry)
        assert [r.id for r in record.rows] == ["r1", "r2", "r3", "r4"]

    def test_row_defaults(self, registry):
        record = create_test_record("concrete_compression", registry)
        assert dict(record.rows[0].values) == {"age_days": "28", "length": 150.0, "breadth": 150.0}
        assert record.rows[0].derived["area"] == 22500.0

    def test_constant_overrides(self, registry):
        record = create_test_record("hot_mix_design", registry, constants={"aggregate_density": "2.70"})
        assert record.constants["aggregate_density"] == 2.7
        with pytest.raises(UnknownFieldError):
            create_test_record("hot_mix_design", registry, constants={"binder": 1.0})
        with pytest.raises(ValidationError):
            create_test_record("hot_mix_design", registry, constants={"asphalt_density": "heavy"})

    def test_unknown_test_type(self, registry):
        with pytest.raises(SchemaError):
            create_test_record("slump", registry)

    def test_accepts_a_schema(self, deviation_schema):
        record = create_test_record(deviation_schema)
        assert record.test_type == "deviation_check"


class TestFieldEdit:
    def test_dry_density_worked_example(self, field_density):
        record = fill(field_density, [{"wet_density": "1.90", "moisture_content": 12}])
        assert record.rows[0].derived["dry_density"] == 1.696

    def test_clearing_an_input_removes_dependents(self, field_density):
        record = fill(field_density, [{"wet_density": 1.9, "moisture_content": 12}], {"max_dry_density": 2.0})
        assert record.rows[0].derived["degree_compaction"] == 84.8
        record = on_field_edit(record, "r1", "moisture_content", "")
        assert "moisture_content" not in record.rows[0].values
        assert "dry_density" not in record.rows[0].derived
        assert "degree_compaction" not in record.rows[0].derived

    def test_invalid_input_keeps_previous_value(self, field_density, caplog):
        record = fill(field_density, [{"wet_density": 1.9, "moisture_content": 12}])
        with caplog.at_level(logging.WARNING, logger="labengine"):
            record = on_field_edit(record, "r1", "moisture_content", "abc")
        row = record.rows[0]
        assert row.values["moisture_content"] == 12.0
        assert row.derived["dry_density"] == 1.696
        assert "must be a number" in row.invalid["moisture_content"]
        assert "Rejected moisture_content" in caplog.text

    def test_range_is_enforced(self, field_density):
        record = on_field_edit(field_density, "r1", "moisture_content", 120)
        assert "at most 100" in record.rows[0].invalid["moisture_content"]
        record = on_field_edit(record, "r1", "moisture_content", 10)
        assert "moisture_content" not in record.rows[0].invalid

    def test_division_by_zero_is_recorded(self, field_density):
        record = fill(field_density, [{"wet_density": 2.2, "moisture_content": 10}], {"max_dry_density": 0})
        row = record.rows[0]
        assert row.derived["dry_density"] == 2.0
        assert "degree_compaction" not in row.derived
        assert row.errors["degree_compaction"] == "division_by_zero"

    def test_missing_input_is_absent_without_error(self, field_density):
        record = fill(field_density, [{"wet_density": 2.2, "moisture_content": 10}])
        row = record.rows[0]
        assert "degree_compaction" not in row.derived
        assert "degree_compaction" not in row.errors

    def test_declared_dependency_gates_evaluation(self):
        schema = TestTypeSchema(
            "gated",
            row_fields=[FieldDefinition("a", "A"), FieldDefinition("b", "B")],
            derived=[DerivedFieldDefinition("c", "a * 2", depends_on=("a", "b"))],
        )
        record = on_field_edit(create_test_record(schema), "r1", "a", 3)
        assert "c" not in record.rows[0].derived
        assert "c" not in record.rows[0].errors
        record = on_field_edit(record, "r1", "b", 1)
        assert record.rows[0].derived["c"] == 6.0

    def test_header_edit_recomputes_every_row(self, field_density):
        record = fill(
            field_density,
            [{"wet_density": 2.2, "moisture_content": 10}, {"wet_density": 2.2, "moisture_content": 10}],
            {"max_dry_density": 2.0},
        )
        assert [r.derived["degree_compaction"] for r in record.rows] == [100.0, 100.0]
        record = on_field_edit(record, None, "max_dry_density", 2.5)
        assert [r.derived["degree_compaction"] for r in record.rows] == [80.0, 80.0]

    def test_fixing_a_zero_clears_the_error(self, field_density):
        record = fill(field_density, [{"wet_density": 2.2, "moisture_content": 10}], {"max_dry_density": 0})
        record = on_field_edit(record, None, "max_dry_density", 2.5)
        assert record.rows[0].derived["degree_compaction"] == 80.0
        assert dict(record.rows[0].errors) == {}

    def test_invalid_header_value(self, field_density):
        record = on_field_edit(field_density, None, "max_dry_density", "dense")
        assert "max_dry_density" in record.header_invalid
        assert "max_dry_density" not in record.header

    def test_unknown_field(self, field_density):
        with pytest.raises(UnknownFieldError):
            on_field_edit(field_density, "r1", "colour", "red")
        with pytest.raises(UnknownFieldError, match="derived"):
            on_field_edit(field_density, "r1", "dry_density", 1.7)
        with pytest.raises(UnknownFieldError):
            on_field_edit(field_density, None, "wet_density", 1.7)

    def test_unknown_row(self, field_density):
        with pytest.raises(UnknownRowError):
            on_field_edit(field_density, "r9", "wet_density", 1.9)

    def test_records_are_immutable(self, field_density):
        edited = on_field_edit(field_density, "r1", "wet_density", 1.9)
        assert "wet_density" not in field_density.rows[0].values
        assert edited.rows[0].values["wet_density"] == 1.9
        with pytest.raises(TypeError):
            edited.rows[0].values["wet_density"] = 2.0

    def test_untouched_rows_are_reused(self, proctor_record):
        edited = on_field_edit(proctor_record, "r1", "wet_density", 1.9)
        assert edited.rows[0] is not proctor_record.rows[0]
        for old, new in zip(proctor_record.rows[1:], edited.rows[1:]):
            assert new is old

    def test_text_edit_touches_no_derived_values(self, deviation_schema):
        record = fill(create_test_record(deviation_schema), [{"x": 4.0}, {"x": 4.2}])
        edited = on_field_edit(record, "r1", "tag", "  north  ")
        assert edited.rows[0].values["tag"] == "north"
        assert edited.rows[0].derived == record.rows[0].derived
        assert edited.rows[1] is record.rows[1]


class TestCrossRow:
    def test_deviation_from_mean(self, deviation_schema):
        record = fill(create_test_record(deviation_schema), [{"x": 4.0}, {"x": 4.2}])
        assert record.rows[0].derived["deviation"] == -0.1
        assert record.rows[1].derived["deviation"] == 0.1

    def test_editing_one_row_updates_the_others(self, deviation_schema):
        record = fill(create_test_record(deviation_schema), [{"x": 4.0}, {"x": 4.2}])
        record = on_field_edit(record, "r1", "x", 4.4)
        assert record.rows[0].derived["deviation"] == 0.1
        assert record.rows[1].derived["deviation"] == -0.1
        assert record.rows[0].derived["double_x"] == 8.8

    def test_removing_a_row_updates_the_others(self, deviation_schema):
        record = fill(create_test_record(deviation_schema), [{"x": 4.0}, {"x": 4.2}])
        record = remove_row(record, "r2")
        assert record.rows[0].derived["deviation"] == 0.0


class TestRows:
    def test_add_and_remove(self, deviation_schema):
        record = create_test_record(deviation_schema)
        for _ in range(4):
            record = add_row(record)
        assert [r.id for r in record.rows] == ["r1", "r2", "r3", "r4", "r5"]
        with pytest.raises(RowLimitError):
            add_row(record)
        record = add_row(remove_row(record, "r5"))
        assert record.rows[-1].id == "r6"

    def test_cannot_drop_below_min_rows(self, deviation_schema):
        record = create_test_record(deviation_schema)
        with pytest.raises(RowLimitError):
            remove_row(record, "r1")

    def test_remove_unknown_row(self, proctor_record):
        with pytest.raises(UnknownRowError):
            remove_row(proctor_record, "r42")

    def test_proctor_row_cap(self, proctor_record):
        record = proctor_record
        for _ in range(6):
            record = add_row(record)
        assert len(record.rows) == 10
        with pytest.raises(RowLimitError):
            add_row(record)

    def test_finalized_records_are_locked(self, proctor_record):
        done = finalize(proctor_record)
        with pytest.raises(RecordLockedError):
            on_field_edit(done, "r1", "wet_density", 2.0)
        with pytest.raises(RecordLockedError):
            add_row(done)
        with pytest.raises(RecordLockedError):
            set_manual_optimum(done, 13, 1.8)


class TestOptimum:
    def test_automatic_optimum_is_a_measured_point(self, proctor_record):
        optimum = proctor_record.summary.optimum
        assert optimum.source == "auto"
        assert optimum.method == "max-observed"
        # 12 % and 14 % tie at 1.79; the lower moisture wins
        assert (optimum.x, optimum.y) == (12.0, 1.79)
        measured = [(r.values["moisture_content"], r.derived["dry_density"]) for r in proctor_record.rows]
        assert (optimum.x, optimum.y) in measured
        assert proctor_record.summary.metrics["optimum_moisture"] == 12.0
        assert proctor_record.summary.metrics["max_dry_density"] == 1.79

    def test_three_points_are_insufficient(self, registry):
        record = fill(create_test_record("proctor", registry), PROCTOR_POINTS[:3])
        assert record.summary.status == "insufficient"
        assert record.summary.optimum is None
        assert record.summary.curve_states["compaction_curve"] == "insufficient_data"
        assert dict(record.summary.aggregates) == {}

    def test_manual_optimum_survives_new_rows(self, proctor_record):
        record = set_manual_optimum(proctor_record, 14.2, 1.82)
        record = fill(record, PROCTOR_POINTS + [{"moisture_content": 15, "wet_density": 2.3}])
        optimum = record.summary.optimum
        assert (optimum.x, optimum.y, optimum.source) == (14.2, 1.82, "manual")
        assert record.summary.metrics["max_dry_density"] == 1.82

    def test_manual_optimum_dropped_when_range_shrinks(self, proctor_record, caplog):
        record = set_manual_optimum(proctor_record, 15.5, 1.75)
        with caplog.at_level(logging.WARNING, logger="labengine"):
            record = on_field_edit(record, "r4", "moisture_content", 13)
        assert record.manual_optimum is None
        assert record.summary.optimum.source == "auto"
        assert "dropped" in caplog.text

    def test_manual_optimum_must_be_in_range(self, proctor_record):
        with pytest.raises(ValidationError):
            set_manual_optimum(proctor_record, 20, 1.8)
        with pytest.raises(ValidationError):
            set_manual_optimum(proctor_record, "wet", 1.8)
        with pytest.raises(ValidationError):
            set_manual_optimum(proctor_record, 13, None)

    def test_clear_returns_to_automatic(self, proctor_record):
        record = clear_optimum(set_manual_optimum(proctor_record, 14.2, 1.82))
        assert record.summary.optimum.source == "auto"
        assert record.summary.optimum.method == "max-observed"

    def test_schema_without_curve(self, field_density):
        with pytest.raises(SchemaError):
            set_manual_optimum(field_density, 1, 1)


class TestCoerce:
    def test_select_accepts_spreadsheet_numbers(self):
        penetration = get_spec("cbr").field("penetration")
        assert coerce_value(penetration, 5) == "5.0"
        assert coerce_value(penetration, 2.5) == "2.5"
        with pytest.raises(ValueError):
            coerce_value(penetration, 6)

    def test_dates(self):
        import datetime

        cast = get_spec("concrete_compression").field("cast_date", row=False)
        assert coerce_value(cast, "2024-02-29") == "2024-02-29"
        assert coerce_value(cast, datetime.datetime(2024, 3, 1, 9, 30)) == "2024-03-01"
        with pytest.raises(ValueError):
            coerce_value(cast, "2023-02-29")

    def test_blank_is_none(self):
        assert coerce_value(get_spec("proctor").field("wet_density"), "  ") is None
