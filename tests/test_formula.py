"""
test_formula.py - the closed arithmetic grammar.

Covers precedence, references, aggregate functions over row lists, and the
error taxonomy (unknown reference, division by zero, malformed, non-finite).
"""
import pytest

from labengine.services.errors import (
    DivisionByZero,
    EmptyAggregate,
    Malformed,
    NonFiniteResult,
    UnknownReference,
)
from labengine.services.formula import BinaryOp, Call, Literal, Reference, evaluate, parse, tokenize


class TestGrammar:
    @pytest.mark.parametrize(
        "source, expected",
        [
            ("2 + 3 * 4", 14.0),
            ("(2 + 3) * 4", 20.0),
            ("10 - 4 - 3", 3.0),
            ("12 / 3 / 2", 2.0),
            ("2 ^ 3 ^ 2", 512.0),
            ("-2 ^ 2", -4.0),
            ("2 * -3", -6.0),
            ("1.5e3 / 4", 375.0),
            (".5 + .25", 0.75),
        ],
    )
    def test_precedence_and_associativity(self, source, expected):
        assert evaluate(source, {}) == pytest.approx(expected)

    def test_names_resolve_from_env(self):
        assert evaluate("wet_density / (1 + moisture_content / 100)", {"wet_density": 1900.0, "moisture_content": 12.0}) == pytest.approx(1696.4286, abs=1e-4)

    def test_ast_is_tagged_variants(self):
        f = parse("a + AVERAGE(b) * 2")
        assert isinstance(f.ast, BinaryOp)
        assert f.ast.left == Reference("a")
        assert isinstance(f.ast.right.left, Call)
        assert f.ast.right.right == Literal(2.0)

    def test_references_split_scalar_and_aggregate(self):
        f = parse("a * AVERAGE(b) + PI")
        assert f.references == {"a"}
        assert f.aggregate_refs == {"b"}
        assert f.names == {"a", "b"}

    def test_pi_and_scalar_functions(self):
        assert evaluate("PI * 2 ^ 2", {}) == pytest.approx(12.566370614)
        assert evaluate("ABS(-3) + SQRT(16) + LOG10(100)", {}) == pytest.approx(9.0)

    def test_function_names_are_case_insensitive(self):
        assert evaluate("average(x)", {}, {"x": [1.0, 3.0]}) == 2.0

    def test_parse_is_idempotent_and_comparable(self):
        f = parse("a + 1")
        assert parse(f) is f
        assert parse("a + 1") == f
        assert hash(parse(" a + 1 ")) == hash(f)


class TestAggregates:
    def test_average_of_two_rows(self):
        """[4.0, 4.2] -> 4.1."""
        assert evaluate("AVERAGE(x)", {}, {"x": [4.0, 4.2]}) == pytest.approx(4.1)

    def test_sample_stddev(self):
        assert evaluate("STDDEV(x)", {}, {"x": [2.0, 4.0, 4.0, 4.0, 5.0, 5.0, 7.0, 9.0]}) == pytest.approx(2.13809, abs=1e-5)

    def test_stddev_needs_two_values(self):
        with pytest.raises(EmptyAggregate):
            evaluate("STDDEV(x)", {}, {"x": [4.0]})

    def test_sum_min_max_count(self):
        lists = {"x": [3.0, 1.0, 2.0]}
        assert evaluate("SUM(x)", {}, lists) == 6.0
        assert evaluate("MIN(x)", {}, lists) == 1.0
        assert evaluate("MAX(x)", {}, lists) == 3.0
        assert evaluate("COUNT(x)", {}, lists) == 3.0

    def test_count_of_empty_list_is_zero(self):
        assert evaluate("COUNT(x)", {}, {"x": []}) == 0.0

    def test_average_of_empty_list(self):
        with pytest.raises(EmptyAggregate):
            evaluate("AVERAGE(x)", {}, {"x": []})

    def test_aggregate_of_unknown_list(self):
        with pytest.raises(UnknownReference):
            evaluate("AVERAGE(x)", {"x": 1.0}, {})


class TestErrors:
    def test_unknown_reference_names_the_field(self):
        with pytest.raises(UnknownReference) as exc:
            evaluate("a + b", {"a": 1.0})
        assert exc.value.name == "b"
        assert exc.value.code == "unknown_reference"

    def test_none_in_env_is_unknown(self):
        with pytest.raises(UnknownReference):
            evaluate("a * 2", {"a": None})

    def test_division_by_zero(self):
        with pytest.raises(DivisionByZero):
            evaluate("dry_density / max_dry_density * 100", {"dry_density": 1.7, "max_dry_density": 0.0})

    def test_tiny_divisor_is_not_zero(self):
        # 0.0005 mm3 in SI
        assert evaluate("mass / volume", {"mass": 1e-15, "volume": 5e-13}) == pytest.approx(0.002)

    @pytest.mark.parametrize(
        "source",
        ["", "2 +", "a b", "(1 + 2", "1 + 2)", "FOO(1)", "AVERAGE(a + b)", "AVERAGE(a, b)", "SQRT(1, 2)", "1 $ 2", "a,"],
    )
    def test_malformed(self, source):
        with pytest.raises(Malformed):
            parse(source)

    def test_host_code_is_never_executed(self):
        with pytest.raises(Malformed):
            parse("__import__('os').system('true')")

    def test_non_finite_results(self):
        with pytest.raises(NonFiniteResult):
            evaluate("SQRT(x)", {"x": -1.0})
        with pytest.raises(NonFiniteResult):
            evaluate("10 ^ 400", {})
        with pytest.raises(NonFiniteResult):
            evaluate("x * x", {"x": 1e200})


class TestDeterminism:
    def test_same_inputs_same_output(self):
        env = {"a": 1.3, "b": 7.9}
        lists = {"a": [1.3, 2.2, 5.1]}
        outs = {evaluate("a / b + STDDEV(a)", env, lists) for _ in range(5)}
        assert len(outs) == 1

    def test_tokenizer_reports_position(self):
        with pytest.raises(Malformed, match="Unexpected character at position 1"):
            tokenize("1 # 2")
