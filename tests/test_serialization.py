"""
test_serialization.py - stored report JSON for finalized records.
"""
import json

import pytest

from conftest import fill
from labengine.services.errors import SchemaError
from labengine.services.recalc import create_test_record, on_field_edit, set_manual_optimum
from labengine.services.records import finalize, record_state
from labengine.services.serialization import from_report_json, to_report_json


@pytest.fixture
def finalized_density(registry):
    record = fill(
        create_test_record("field_density", registry),
        [
            {"location": "CH 0+100", "wet_density": 2.2, "moisture_content": 10},
            {"location": "CH 0+150", "wet_density": 2.09, "moisture_content": 10},
        ],
        {"max_dry_density": 2.0},
    )
    return finalize(record)


class TestToReport:
    def test_report_shape(self, finalized_density):
        report = to_report_json(finalized_density)
        assert report["test_type"] == "field_density"
        assert report["fields"]["max_dry_density"]["scope"] == "header"
        assert report["fields"]["wet_density"] == {
            "type": "numeric",
            "label": "Field Wet Density",
            "unit": "g/cm3",
            "required": True,
            "options": [],
            "scope": "row",
        }
        assert report["calculations"]["dry_density"] == "wet_density / (1 + moisture_content / 100)"
        assert report["data_json"]["header"]["max_dry_density"] == 2.0
        assert report["data_json"]["rows"][1]["derived"]["degree_compaction"] == 95.0
        assert report["summary_json"]["compliance_status"] == "pass"
        assert report["summary_json"]["calculated_results"]["compaction_margin"] == 0.0

    def test_report_is_plain_json(self, finalized_density):
        text = json.dumps(to_report_json(finalized_density))
        assert json.loads(text)["revision"] == 1

    def test_only_finalized_records(self, registry):
        with pytest.raises(SchemaError):
            to_report_json(create_test_record("field_density", registry))


class TestFromReport:
    def test_round_trip(self, finalized_density, registry):
        loaded = from_report_json(json.loads(json.dumps(to_report_json(finalized_density))), registry)
        assert loaded.finalized
        assert record_state(loaded) == "finalized"
        assert loaded.finalized_at == finalized_density.finalized_at
        original = finalized_density.record
        assert [dict(r.values) for r in loaded.rows] == [dict(r.values) for r in original.rows]
        assert [dict(r.derived) for r in loaded.rows] == [dict(r.derived) for r in original.rows]
        assert loaded.summary.status == original.summary.status
        assert dict(loaded.summary.metrics) == dict(original.summary.metrics)
        assert loaded.record.next_row_seq == 3

    def test_manual_optimum_survives(self, proctor_record, registry):
        done = finalize(set_manual_optimum(proctor_record, 14.2, 1.82))
        loaded = from_report_json(to_report_json(done), registry)
        assert loaded.record.manual_optimum.as_dict() == {"x": 14.2, "y": 1.82, "source": "manual", "method": "manual"}
        assert loaded.summary.optimum.source == "manual"

    def test_revision_of_loaded_report_is_editable(self, finalized_density, registry):
        from labengine.services.records import new_revision

        revised = new_revision(from_report_json(to_report_json(finalized_density), registry))
        edited = on_field_edit(revised, "r2", "wet_density", 2.2)
        assert edited.revision == 2
        assert edited.rows[1].derived["degree_compaction"] == 100.0

    @pytest.mark.parametrize(
        "data",
        [{"test_type": "field_density"}, {"test_type": "field_density", "finalized_at": "x", "data_json": {}, "summary_json": {}}],
    )
    def test_invalid_report(self, data, registry):
        with pytest.raises(SchemaError):
            from_report_json(data, registry)

    def test_unknown_test_type(self, finalized_density, registry):
        report = to_report_json(finalized_density)
        report["test_type"] = "slump"
        with pytest.raises(SchemaError):
            from_report_json(report, registry)
