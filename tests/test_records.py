"""
test_records.py - record lifecycle: state, finalize and revisions.
"""
import pytest

from conftest import PROCTOR_POINTS, fill
from labengine.services.errors import FinalizeError, ValidationError
from labengine.services.recalc import create_test_record, on_field_edit
from labengine.services.records import finalize, new_revision, record_state, validation_issues


class TestRecordState:
    def test_new_record_is_empty(self, registry):
        assert record_state(create_test_record("proctor", registry)) == "empty"

    def test_defaults_do_not_count_as_data(self, registry):
        """Marshall rows start with correction_factor 1.0 and are still empty."""
        record = create_test_record("marshall_stability", registry)
        assert record.rows[0].values["correction_factor"] == 1.0
        assert record_state(record) == "empty"

    def test_transitions(self, registry):
        record = create_test_record("proctor", registry)
        record = fill(record, PROCTOR_POINTS[:1])
        assert record_state(record) == "insufficient"
        record = fill(record, PROCTOR_POINTS)
        assert record_state(record) == "computed"
        record = on_field_edit(record, "r2", "wet_density", "n/a")
        assert record_state(record) == "editing"
        record = on_field_edit(record, "r2", "wet_density", 2.0048)
        assert record_state(record) == "computed"
        assert record_state(finalize(record)) == "finalized"


class TestFinalize:
    def test_empty_record_lists_every_issue(self, registry):
        record = create_test_record("proctor", registry)
        with pytest.raises(FinalizeError) as exc:
            finalize(record)
        issues = [i.as_dict() for i in exc.value.issues]
        assert {"row_id": "r1", "field": "moisture_content", "message": "Moisture Content is required"} in issues
        assert {"row_id": "r4", "field": "wet_density", "message": "Wet Density is required"} in issues
        assert issues[-1]["message"] == "Not enough valid rows to compute the summary"

    def test_invalid_entries_block_finalize(self, proctor_record):
        record = on_field_edit(proctor_record, "r3", "moisture_content", -5)
        with pytest.raises(FinalizeError) as exc:
            finalize(record)
        assert [(i.row_id, i.field_key) for i in exc.value.issues] == [("r3", "moisture_content")]

    def test_missing_header_value(self, registry):
        record = fill(create_test_record("field_density", registry), [{"wet_density": 2.2, "moisture_content": 10}])
        assert [i.field_key for i in validation_issues(record)] == ["max_dry_density", None]

    def test_finalize_freezes_the_record(self, proctor_record):
        done = finalize(proctor_record)
        assert done.finalized
        assert done.record is proctor_record
        assert done.summary.status == "acceptable"
        assert done.finalized_at
        with pytest.raises(FinalizeError):
            finalize(done)

    def test_new_revision_is_editable(self, proctor_record):
        done = finalize(proctor_record)
        revised = new_revision(done)
        assert revised.revision == 2
        assert not revised.finalized
        edited = on_field_edit(revised, "r1", "wet_density", 1.9)
        assert edited.rows[0].values["wet_density"] == 1.9
        assert done.rows[0].values["wet_density"] == 1.881

    def test_only_finalized_records_are_revised(self, proctor_record):
        with pytest.raises(FinalizeError):
            new_revision(proctor_record)


def test_validation_error_as_dict():
    err = ValidationError("wet_density", "Wet Density must be a number", row_id="r2")
    assert str(err) == "Wet Density must be a number"
    assert err.as_dict() == {"row_id": "r2", "field": "wet_density", "message": "Wet Density must be a number"}
