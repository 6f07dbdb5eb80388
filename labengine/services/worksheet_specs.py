"""Built-in test types.

Each entry is a TestTypeSchema built from plain data. Formulas are written
against SI values (densities in kg/m3, masses in kg, stresses in Pa); results
come back in the unit declared on the derived field.
"""
from types import MappingProxyType

from labengine.services.errors import SchemaError
from labengine.services.schema import (
    CURVE_FLOW,
    CURVE_OPTIMUM,
    KIND_DATE,
    KIND_NUMERIC,
    KIND_SELECT,
    KIND_TEXT,
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

PROCTOR_METHODS = ("Standard Proctor", "Modified Proctor")
PENETRATIONS_MM = ("0.5", "1.0", "1.5", "2.0", "2.5", "3.0", "4.0", "5.0", "7.5", "10.0")


def _num(key, label, unit="", required=False, **kw):
    return FieldDefinition(key, label, KIND_NUMERIC, unit, required, **kw)


def _text(key, label, required=False):
    return FieldDefinition(key, label, KIND_TEXT, required=required)


def _select(key, label, options, required=False, default=None):
    return FieldDefinition(key, label, KIND_SELECT, required=required, options=options, default=default)


def _calc(key, formula, unit="", precision=3, label=""):
    return DerivedFieldDefinition(key, formula, unit=unit, precision=precision, label=label)


def _bands(metric, op, bands, fallback):
    """Ordered threshold tiers; ``fallback`` is the catch-all (status, label)."""
    rules = [ComplianceRule(status, label, [Condition(metric, op, threshold)]) for threshold, status, label in bands]
    if fallback:
        rules.append(ComplianceRule(fallback[0], fallback[1], []))
    return rules


def _line_chart(title, x, y):
    return {"type": "line", "title": title, "x_axis": x, "y_axis": y}


def _proctor():
    return TestTypeSchema(
        "proctor",
        name="Proctor Compaction Test",
        standard="ASTM D 698 / D 1557",
        description="Moisture-density relationship; maximum dry density and optimum moisture content",
        row_label="Point",
        header_fields=[
            _select("test_method", "Test Method", PROCTOR_METHODS, required=True, default=PROCTOR_METHODS[0]),
            _text("soil_description", "Soil Description"),
            FieldDefinition("test_date", "Test Date", KIND_DATE),
        ],
        row_fields=[
            _num("moisture_content", "Moisture Content", "%", required=True, min=0, max=100),
            _num("wet_density", "Wet Density", "g/cm3", required=True, min=0),
        ],
        derived=[
            _calc("dry_density", "wet_density / (1 + moisture_content / 100)", "g/cm3", 3, "Dry Density"),
        ],
        summary=[SummaryField("dry_density", "dry_density", min_valid=4, label="Dry Density")],
        curves=[
            CurveDefinition(
                "compaction_curve",
                x="moisture_content",
                y="dry_density",
                kind=CURVE_OPTIMUM,
                min_points=4,
                x_name="optimum_moisture",
                y_name="max_dry_density",
                title="Compaction Curve",
            )
        ],
        rules=[
            ComplianceRule("complete", "Well-defined curve (5+ points)", [Condition("dry_density_count", ">=", 5)]),
            ComplianceRule("acceptable", "Minimum 4-point curve", []),
        ],
        min_rows=4,
        max_rows=10,
        charts={"compaction_curve": _line_chart("Compaction Curve", "moisture_content", "dry_density")},
    )


def _compaction():
    return TestTypeSchema(
        "compaction",
        name="Compaction Test",
        description="Standard Proctor or Modified Proctor test",
        header_fields=[
            _select("test_method", "Test Method", PROCTOR_METHODS, required=True),
            _num("mold_volume", "Mold Volume", "cm3", required=True, min=0),
        ],
        row_fields=[
            _num("sample_mass", "Sample Mass", "kg"),
            _num("wet_mass", "Wet Mass of Soil", "kg", required=True, min=0),
            _num("moisture_content", "Moisture Content", "%", required=True, min=0, max=100),
        ],
        derived=[
            _calc("wet_density", "wet_mass / mold_volume", "g/cm3", 3, "Wet Density"),
            _calc("dry_density", "wet_density / (1 + moisture_content / 100)", "g/cm3", 3, "Dry Density"),
        ],
        summary=[SummaryField("dry_density", "dry_density", label="Dry Density")],
    )


def _sand_cone():
    return TestTypeSchema(
        "sand_cone",
        name="Sand Cone Test",
        standard="ASTM D 1556",
        description="Field density test using sand cone method",
        row_label="Test",
        header_fields=[
            _num("max_dry_density", "Maximum Dry Density (Lab)", "g/cm3", required=True),
            _num("sand_density", "Bulk Density of Test Sand", "g/cm3", required=True, min=0),
            _num("cone_sand_mass", "Sand in Cone and Base Plate", "g", required=True, min=0),
        ],
        row_fields=[
            _text("location", "Location"),
            _num("sand_before", "Sand + Apparatus Before", "g", required=True, min=0),
            _num("sand_after", "Sand + Apparatus After", "g", required=True, min=0),
            _num("wet_soil_mass", "Wet Soil from Hole", "g", required=True, min=0),
            _num("dry_soil_mass", "Dry Soil from Hole", "g", required=True, min=0),
        ],
        derived=[
            _calc("sand_used", "sand_before - sand_after", "g", 1, "Sand Used"),
            _calc("hole_volume", "(sand_used - cone_sand_mass) / sand_density", "cm3", 1, "Volume of Hole"),
            _calc("moisture_content", "(wet_soil_mass - dry_soil_mass) / dry_soil_mass * 100", "%", 2, "Moisture"),
            _calc("wet_density", "wet_soil_mass / hole_volume", "g/cm3", 3, "Wet Density"),
            _calc("dry_density", "dry_soil_mass / hole_volume", "g/cm3", 3, "Dry Density"),
            _calc("degree_compaction", "dry_density / max_dry_density * 100", "%", 1, "Degree of Compaction"),
        ],
        summary=[
            SummaryField("dry_density", "dry_density", label="Dry Density"),
            SummaryField("moisture_content", "moisture_content", label="Moisture"),
            SummaryField("degree_compaction", "degree_compaction", label="Degree of Compaction"),
        ],
        rules=_bands(
            "degree_compaction_mean",
            ">=",
            [
                (95, "excellent", "Excellent - Well compacted"),
                (90, "good", "Good - Adequately compacted"),
                (85, "fair", "Fair - Moderately compacted"),
            ],
            ("poor", "Poor - Insufficient compaction"),
        ),
    )


def _field_density():
    return TestTypeSchema(
        "field_density",
        name="Field Density Test",
        description="Standard field density determination",
        row_label="Location",
        header_fields=[
            _num("max_dry_density", "Maximum Dry Density (Lab)", "g/cm3", required=True),
            _num("optimum_moisture", "Optimum Moisture Content", "%"),
            _num("required_compaction", "Required Degree of Compaction", "%", default=95.0),
        ],
        row_fields=[
            _text("location", "Test Location"),
            _num("wet_density", "Field Wet Density", "g/cm3", required=True, min=0),
            _num("moisture_content", "Field Moisture Content", "%", required=True, min=0, max=100),
        ],
        derived=[
            _calc("dry_density", "wet_density / (1 + moisture_content / 100)", "g/cm3", 3, "Field Dry Density"),
            _calc("degree_compaction", "dry_density / max_dry_density * 100", "%", 1, "Degree of Compaction"),
        ],
        summary=[SummaryField("degree_compaction", "degree_compaction", label="Degree of Compaction")],
        kpis=[
            KpiDefinition(
                "compaction_margin",
                "degree_compaction_min - required_compaction",
                precision=1,
                label="Lowest compaction over required",
                unit="%",
            )
        ],
        rules=[
            ComplianceRule("pass", "PASS - Meets specification", [Condition("compaction_margin", ">=", 0)]),
            ComplianceRule("fail", "FAIL - Below specification", [Condition("compaction_margin", "<", 0)]),
        ],
    )


def _asphalt_core_density():
    return TestTypeSchema(
        "asphalt_core_density",
        name="Asphalt Core Density",
        standard="ASTM D 2726",
        row_label="Core",
        header_fields=[
            _num("theoretical_density", "Maximum Theoretical Density", "kg/m3", required=True, min=0),
            _text("layer", "Layer"),
        ],
        row_fields=[
            _text("core_id", "Core No."),
            _text("chainage", "Chainage"),
            _num("diameter", "Diameter", "mm", required=True, min=0),
            _num("height", "Height", "mm", required=True, min=0),
            _num("weight", "Weight in Air", "g", required=True, min=0),
        ],
        derived=[
            _calc("volume", "PI * (diameter / 2) ^ 2 * height", "cm3", 1, "Volume"),
            _calc("bulk_density", "weight / volume", "kg/m3", 0, "Bulk Density"),
            _calc("compaction", "bulk_density / theoretical_density * 100", "%", 1, "Compaction"),
        ],
        summary=[
            SummaryField("bulk_density", "bulk_density", label="Bulk Density"),
            SummaryField("compaction", "compaction", label="Compaction"),
        ],
        rules=_bands(
            "compaction_mean",
            ">=",
            [
                (98, "excellent", "Excellent - Well compacted"),
                (95, "good", "Good - Adequately compacted"),
                (92, "fair", "Fair - Moderately compacted"),
            ],
            ("poor", "Poor - Insufficient compaction"),
        ),
    )


def _marshall_stability():
    return TestTypeSchema(
        "marshall_stability",
        name="Marshall Stability and Flow",
        standard="ASTM D 6927",
        row_label="Specimen",
        header_fields=[_text("mix_type", "Mix Type")],
        row_fields=[
            _text("specimen_id", "Specimen"),
            _num("stability", "Measured Stability", "N", required=True, min=0),
            _num("correction_factor", "Volume Correction Factor", "ratio", default=1.0, min=0),
            _num("flow", "Flow", "mm", required=True, min=0),
            _num("air_voids", "Air Voids", "%", required=True, min=0, max=100),
        ],
        derived=[
            _calc("corrected_stability", "stability * correction_factor", "N", 0, "Corrected Stability"),
        ],
        summary=[
            SummaryField("stability", "corrected_stability", min_valid=3, label="Stability"),
            SummaryField("flow", "flow", label="Flow", precision=2),
            SummaryField("air_voids", "air_voids", label="Air Voids", precision=2),
        ],
        rules=_bands(
            "stability_mean",
            ">=",
            [
                (8000, "excellent", "Excellent - Very High Stability"),
                (6000, "good", "Good - High Stability"),
                (4000, "fair", "Fair - Moderate Stability"),
                (2000, "poor", "Poor - Low Stability"),
            ],
            ("very_poor", "Very Poor - Inadequate Stability"),
        ),
        min_rows=3,
    )


def _mix_design_rules():
    checks = [
        Condition("stability_ratio", ">=", 0.9),
        Condition("flow_deviation", "<=", 0.5),
        Condition("voids_deviation", "<=", 1.0),
        Condition("vfb_deviation", "<=", 5.0),
        Condition("vfa_deviation", "<=", 5.0),
    ]
    return [
        ComplianceRule("excellent", "All parameters within specification", checks),
        ComplianceRule("good", "Most parameters acceptable", checks, min_passed=4),
        ComplianceRule("fair", "Requires adjustment", checks, min_passed=3),
        ComplianceRule("poor", "Significant adjustments needed", []),
    ]


def _hot_mix_design():
    return TestTypeSchema(
        "hot_mix_design",
        name="Hot Mix Design",
        description="Marshall mix design trials over asphalt content",
        row_label="Trial",
        header_fields=[
            _num("target_stability", "Target Stability", "N", required=True, min=0),
            _num("target_flow", "Target Flow", "mm", min=0, default=3.0),
            _num("target_voids", "Target Air Voids", "%", min=0, max=100, default=4.0),
            _num("target_vfb", "Target VFB", "%", min=0, max=100, default=75.0),
            _num("target_vfa", "Target VFA", "%", min=0, max=100, default=65.0),
        ],
        constants=[
            ConstantDefinition("aggregate_density", 2.65, "g/cm3", "Aggregate Density", calibrate=True),
            ConstantDefinition("asphalt_density", 1.03, "g/cm3", "Asphalt Density", calibrate=True),
        ],
        row_fields=[
            _num("asphalt_content", "Asphalt Content", "%", required=True, min=0, max=100),
            _num("bulk_density", "Bulk Density", "g/cm3", required=True, min=0),
            _num("stability", "Stability", "N", required=True, min=0),
            _num("flow", "Flow", "mm"),
            _num("voids", "Air Voids", "%", min=0, max=100),
        ],
        derived=[
            _calc("vma", "100 - bulk_density * (100 - asphalt_content) / aggregate_density", "%", 1, "VMA"),
            _calc("vfb", "bulk_density * asphalt_content / asphalt_density", "%", 1, "VFB"),
            _calc("vfa", "vfb / (100 - voids) * 100", "%", 1, "VFA"),
            # summed relative deviation from the five design targets
            _calc(
                "design_score",
                "ABS(stability - target_stability) / target_stability"
                " + ABS(flow - target_flow) / target_flow"
                " + ABS(voids - target_voids) / target_voids"
                " + ABS(vfb - target_vfb) / target_vfb"
                " + ABS(vfa - target_vfa) / target_vfa",
                precision=4,
                label="Design Score",
            ),
        ],
        summary=[
            SummaryField("stability", "stability", min_valid=3, label="Stability"),
            SummaryField("vfb", "vfb", label="VFB"),
        ],
        curves=[
            CurveDefinition(
                "stability_curve",
                x="asphalt_content",
                y="stability",
                kind=CURVE_OPTIMUM,
                method=OPTIMUM_QUADRATIC,
                min_points=3,
                x_name="optimum_asphalt_content",
                y_name="peak_stability",
                title="Stability vs Asphalt Content",
            )
        ],
        selections=[
            SelectionDefinition(
                "optimal_trial",
                score="design_score",
                fields=("asphalt_content", "stability", "flow", "voids", "vfb", "vfa"),
                prefix="design",
                title="Optimal Trial",
            )
        ],
        kpis=[
            KpiDefinition("stability_ratio", "design_stability / target_stability", precision=3),
            KpiDefinition("flow_deviation", "ABS(design_flow - target_flow)", precision=2, unit="mm"),
            KpiDefinition("voids_deviation", "ABS(design_voids - target_voids)", precision=2, unit="%"),
            KpiDefinition("vfb_deviation", "ABS(design_vfb - target_vfb)", precision=1, unit="%"),
            KpiDefinition("vfa_deviation", "ABS(design_vfa - target_vfa)", precision=1, unit="%"),
        ],
        rules=_mix_design_rules(),
        min_rows=3,
        max_rows=12,
        charts={"stability_curve": _line_chart("Stability vs Asphalt Content", "asphalt_content", "stability")},
    )


def _atterberg_limits():
    return TestTypeSchema(
        "atterberg_limits",
        name="Atterberg Limits",
        standard="ASTM D 4318",
        row_label="Trial",
        header_fields=[_text("soil_description", "Soil Description")],
        row_fields=[
            _select("trial_type", "Trial", ("LL", "PL"), required=True, default="LL"),
            _num("blows", "Number of Blows", "blows", min=0),
            _num("container_mass", "Container", "g", required=True, min=0),
            _num("wet_soil_container", "Wet Soil + Container", "g", required=True, min=0),
            _num("dry_soil_container", "Dry Soil + Container", "g", required=True, min=0),
        ],
        derived=[
            _calc(
                "moisture_content",
                "(wet_soil_container - dry_soil_container) / (dry_soil_container - container_mass) * 100",
                "%",
                2,
                "Moisture Content",
            ),
        ],
        summary=[SummaryField("plastic_limit", "moisture_content", where=("trial_type", "PL"), precision=2)],
        curves=[
            CurveDefinition(
                "flow_curve",
                x="blows",
                y="moisture_content",
                kind=CURVE_FLOW,
                where=("trial_type", "LL"),
                y_name="liquid_limit",
                precision=2,
                title="Flow Curve",
            )
        ],
        kpis=[KpiDefinition("plasticity_index", "liquid_limit - plastic_limit_mean", precision=2, unit="%")],
        rules=[
            ComplianceRule("non_plastic", "Non-plastic soil", [Condition("plasticity_index", "<=", 0)]),
            ComplianceRule("low_plasticity", "Low plasticity", [Condition("plasticity_index", "<=", 7)]),
            ComplianceRule("medium_plasticity", "Medium plastic clay", [Condition("plasticity_index", "<=", 17)]),
            ComplianceRule("high_plasticity", "Highly plastic clay", [Condition("plasticity_index", ">", 17)]),
        ],
        min_rows=3,
        max_rows=10,
        charts={"flow_curve": _line_chart("Flow Curve", "blows", "moisture_content")},
    )


def _cbr():
    return TestTypeSchema(
        "cbr",
        name="California Bearing Ratio",
        standard="ASTM D 1883",
        row_label="Reading",
        header_fields=[
            _num("proving_ring_constant", "Proving Ring Constant", "ratio", default=1.0, min=0),
        ],
        constants=[
            ConstantDefinition("standard_load_2_5", 1370, "kg", "Standard Load at 2.5 mm"),
            ConstantDefinition("standard_load_5_0", 2055, "kg", "Standard Load at 5.0 mm"),
        ],
        row_fields=[
            _select("penetration", "Penetration (mm)", PENETRATIONS_MM, required=True),
            _num("load_reading", "Load Reading", "kg", required=True, min=0),
        ],
        derived=[
            _calc("corrected_load", "load_reading * proving_ring_constant", "kg", 1, "Corrected Load"),
        ],
        summary=[
            SummaryField("load_2_5", "corrected_load", where=("penetration", "2.5"), precision=1),
            SummaryField("load_5_0", "corrected_load", where=("penetration", "5.0"), precision=1),
        ],
        kpis=[
            KpiDefinition("cbr_2_5", "load_2_5_max / standard_load_2_5 * 100", precision=1, unit="%"),
            KpiDefinition("cbr_5_0", "load_5_0_max / standard_load_5_0 * 100", precision=1, unit="%"),
            KpiDefinition("cbr", "(cbr_2_5 + cbr_5_0 - ABS(cbr_2_5 - cbr_5_0)) / 2", precision=1, unit="%"),
        ],
        rules=_bands(
            "cbr",
            ">=",
            [
                (80, "excellent", "Excellent (80% and above)"),
                (50, "good", "Good (50-80%)"),
                (30, "fair", "Fair (30-50%)"),
                (10, "poor", "Poor (10-30%)"),
            ],
            ("very_poor", "Very Poor (Less than 10%)"),
        ),
        min_rows=2,
        max_rows=len(PENETRATIONS_MM),
        charts={"load_penetration": _line_chart("Load vs Penetration", "penetration", "corrected_load")},
    )


def _concrete_compression():
    return TestTypeSchema(
        "concrete_compression",
        name="Concrete Compressive Strength",
        standard="BS EN 12390-3",
        row_label="Cube",
        header_fields=[
            _num("specified_strength", "Specified Strength", "MPa", required=True, min=0),
            FieldDefinition("cast_date", "Date Cast", KIND_DATE),
        ],
        row_fields=[
            _text("specimen_id", "Cube No."),
            _select("age_days", "Age (days)", ("7", "14", "28"), required=True, default="28"),
            _num("length", "Length", "mm", default=150.0, min=0),
            _num("breadth", "Breadth", "mm", default=150.0, min=0),
            _num("max_load", "Maximum Load", "kN", required=True, min=0),
        ],
        derived=[
            _calc("area", "length * breadth", "mm2", 0, "Loaded Area"),
            _calc("strength", "max_load / area", "MPa", 2, "Compressive Strength"),
        ],
        summary=[SummaryField("strength_28", "strength", where=("age_days", "28"), precision=2)],
        kpis=[
            KpiDefinition("strength_ratio", "strength_28_mean / specified_strength * 100", precision=1, unit="%"),
        ],
        rules=[
            ComplianceRule("pass", "PASS - Meets specified strength", [Condition("strength_ratio", ">=", 100)]),
            ComplianceRule("fail", "FAIL - Below specified strength", [Condition("strength_ratio", "<", 100)]),
        ],
        max_rows=12,
    )


def _water_absorption():
    return TestTypeSchema(
        "water_absorption",
        name="Water Absorption",
        standard="ASTM C 127",
        row_label="Sample",
        row_fields=[
            _num("oven_dry_mass", "Oven-Dry Mass", "g", required=True, min=0),
            _num("ssd_mass", "Saturated Surface-Dry Mass", "g", required=True, min=0),
            _num("submerged_mass", "Submerged Mass", "g", min=0),
        ],
        derived=[
            _calc("water_absorption", "(ssd_mass - oven_dry_mass) / oven_dry_mass * 100", "%", 2, "Absorption"),
            _calc("bulk_specific_gravity", "oven_dry_mass / (ssd_mass - submerged_mass)", "", 3, "Bulk SG"),
        ],
        summary=[SummaryField("water_absorption", "water_absorption", label="Water Absorption")],
        rules=_bands(
            "water_absorption_mean",
            "<=",
            [
                (0.5, "excellent", "Excellent - Very Low Absorption"),
                (1.0, "good", "Good - Low Absorption"),
                (2.0, "fair", "Fair - Moderate Absorption"),
                (3.0, "poor", "Poor - High Absorption"),
            ],
            ("very_poor", "Very Poor - Excessive Absorption"),
        ),
    )


def _los_angeles_abrasion():
    return TestTypeSchema(
        "los_angeles_abrasion",
        name="Los Angeles Abrasion",
        standard="ASTM C 131",
        header_fields=[_select("grading", "Grading", ("A", "B", "C", "D"))],
        row_fields=[
            _num("initial_mass", "Original Sample Mass", "g", required=True, min=0),
            _num("final_mass", "Mass Retained After Test", "g", required=True, min=0),
        ],
        derived=[
            _calc("abrasion_loss", "(initial_mass - final_mass) / initial_mass * 100", "%", 2, "Abrasion Loss"),
        ],
        summary=[SummaryField("abrasion_loss", "abrasion_loss", label="Abrasion Loss")],
        rules=_bands(
            "abrasion_loss_mean",
            "<=",
            [
                (10, "excellent", "Excellent - Very High Resistance"),
                (20, "good", "Good - High Resistance"),
                (30, "fair", "Fair - Moderate Resistance"),
                (40, "poor", "Poor - Low Resistance"),
                (50, "very_poor", "Very Poor - Very Low Resistance"),
            ],
            ("unsuitable", "Unsuitable - Extremely Low Resistance"),
        ),
        max_rows=5,
    )


def _aggregate_impact_value():
    return TestTypeSchema(
        "aggregate_impact_value",
        name="Aggregate Impact Value",
        standard="BS 812-112",
        row_fields=[
            _num("sample_mass", "Sample Mass", "g", min=0),
            _num("mass_after_impact", "Mass After Impact", "g", min=0),
            _num("retained_before", "Retained on 2.36 mm Before", "g", required=True, min=0),
            _num("retained_after", "Retained on 2.36 mm After", "g", required=True, min=0),
        ],
        derived=[
            _calc("aiv", "(retained_before - retained_after) / retained_before * 100", "%", 2, "AIV"),
            _calc("fines", "(sample_mass - mass_after_impact) / sample_mass * 100", "%", 2, "Fines"),
        ],
        summary=[SummaryField("aiv", "aiv", label="Aggregate Impact Value")],
        rules=_bands(
            "aiv_mean",
            "<=",
            [
                (10, "exceptionally_strong", "Exceptionally Strong"),
                (20, "strong", "Strong"),
                (30, "satisfactory", "Satisfactory for Road Surfacing"),
                (45, "weak", "Weak for Road Surfacing"),
            ],
            ("unsuitable", "Unsuitable for Road Surfacing"),
        ),
    )


def _aggregate_crushing_value():
    return TestTypeSchema(
        "aggregate_crushing_value",
        name="Aggregate Crushing Value",
        standard="BS 812-110",
        row_fields=[
            _num("total_mass", "Total Sample Mass", "g", required=True, min=0),
            _num("passing_mass", "Passing 2.36 mm", "g", required=True, min=0),
        ],
        derived=[_calc("acv", "passing_mass / total_mass * 100", "%", 2, "ACV")],
        summary=[SummaryField("acv", "acv", label="Aggregate Crushing Value")],
        rules=_bands(
            "acv_mean",
            "<=",
            [
                (10, "excellent", "Excellent - Very high strength aggregate"),
                (15, "good", "Good - High strength aggregate"),
                (20, "fair", "Fair - Moderate strength aggregate"),
                (25, "poor", "Poor - Low strength aggregate"),
            ],
            ("very_poor", "Very Poor - Very weak aggregate"),
        ),
    )


_BUILDERS = (
    _proctor,
    _compaction,
    _sand_cone,
    _field_density,
    _asphalt_core_density,
    _marshall_stability,
    _hot_mix_design,
    _atterberg_limits,
    _cbr,
    _concrete_compression,
    _water_absorption,
    _los_angeles_abrasion,
    _aggregate_impact_value,
    _aggregate_crushing_value,
)

WORKSHEET_SPECS = MappingProxyType({s.test_type: s for s in (build() for build in _BUILDERS)})


def get_spec(test_type):
    try:
        return WORKSHEET_SPECS[test_type]
    except KeyError:
        raise SchemaError(f"Unknown test type: {test_type}") from None
