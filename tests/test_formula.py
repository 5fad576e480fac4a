"""Tests for the objective-function formula language."""
import math

import numpy as np
import pytest

from formula import (
    Boolean,
    CompileError,
    CompiledFormula,
    EvaluationError,
    Number,
    Text,
    box,
    compile_formula,
)

FEATURES = {
    "A": lambda c: c["a"],
    "B": lambda c: c["b"],
    "FLAG": lambda c: c.get("flag", False),
    "NAME": lambda c: c.get("name", ""),
}

CANDIDATE = {"a": 3.0, "b": 4.0, "flag": True, "name": "vise"}


def evaluate(expression, candidate=CANDIDATE):
    return CompiledFormula(FEATURES, expression).evaluate(candidate)


def number(expression, candidate=CANDIDATE):
    return CompiledFormula(FEATURES, expression).evaluate_number(candidate)


class TestBox:

    def test_numbers(self):
        assert box(3) == Number(3.0)
        assert box(2.5) == Number(2.5)
        assert box(np.float64(1.5)) == Number(1.5)
        assert box(np.int64(7)) == Number(7.0)

    def test_booleans_are_not_numbers(self):
        assert box(True) == Boolean(True)
        assert box(np.bool_(False)) == Boolean(False)

    def test_text(self):
        assert box("abc") == Text("abc")

    def test_values_pass_through(self):
        assert box(Number(1.0)) == Number(1.0)

    def test_unsupported(self):
        with pytest.raises(EvaluationError):
            box(None)
        with pytest.raises(EvaluationError):
            box([1, 2])


class TestArithmetic:

    def test_precedence(self):
        assert number("A + B * 2") == pytest.approx(11.0)
        assert number("(A + B) * 2") == pytest.approx(14.0)
        assert number("A - B - 1") == pytest.approx(-2.0)
        assert number("B / A / 2") == pytest.approx(4.0 / 3.0 / 2.0)

    def test_power_is_right_associative(self):
        assert number("2 ** 3 ** 2") == pytest.approx(512.0)

    def test_unary_minus_binds_looser_than_power(self):
        assert number("-2 ** 2") == pytest.approx(-4.0)
        assert number("2 ** -1") == pytest.approx(0.5)

    def test_modulo(self):
        assert number("7 % 3") == pytest.approx(1.0)

    def test_literals(self):
        assert number("1e-3 * 1000") == pytest.approx(1.0)
        assert number(".5 + 0.25") == pytest.approx(0.75)

    def test_ieee_division(self):
        """Division by zero yields inf/NaN instead of raising."""
        assert number("A / 0") == math.inf
        assert number("-A / 0") == -math.inf
        assert math.isnan(number("0 / 0"))

    def test_invalid_function_arguments(self):
        assert math.isnan(number("sqrt(-1)"))
        assert number("log(0)") == -math.inf

    def test_round_with_non_finite_digits(self):
        assert math.isnan(number("round(A, A / 0 * 0)"))
        assert math.isnan(number("round(A, A / 0)"))
        assert number("round(A / 0, 2)") == math.inf
        assert number("round(2.5, 1e6)") == pytest.approx(2.5)


class TestFunctionsAndConstants:

    def test_functions(self):
        assert number("abs(-A)") == pytest.approx(3.0)
        assert number("min(A, B, 1)") == pytest.approx(1.0)
        assert number("max(A, B)") == pytest.approx(4.0)
        assert number("sqrt(B)") == pytest.approx(2.0)
        assert number("pow(A, 2)") == pytest.approx(9.0)
        assert number("exp(0)") == pytest.approx(1.0)
        assert number("log(E)") == pytest.approx(1.0)
        assert number("log(8, 2)") == pytest.approx(3.0)
        assert number("log10(1000)") == pytest.approx(3.0)
        assert number("floor(2.7)") == pytest.approx(2.0)
        assert number("ceil(2.1)") == pytest.approx(3.0)
        assert number("round(2.456, 2)") == pytest.approx(2.46)
        assert number("sign(-A)") == pytest.approx(-1.0)

    def test_math_prefixed_spellings(self):
        assert number("Math.Max(A, B) + Math.Abs(-1)") == pytest.approx(5.0)
        assert number("Math.Ceiling(A / 2)") == pytest.approx(2.0)
        assert number("Math.PI") == pytest.approx(math.pi)

    def test_constants(self):
        assert number("PI") == pytest.approx(math.pi)
        assert number("E") == pytest.approx(math.e)
        assert number("EPS") == pytest.approx(1e-6)

    def test_nan_propagates_through_max(self):
        assert math.isnan(number("max(A, 0 / 0)"))

    def test_feature_shadows_constant(self):
        formula = CompiledFormula({"E": lambda c: 10.0}, "E * 2")
        assert formula.evaluate_number(None) == pytest.approx(20.0)


class TestLogicAndComparison:

    def test_comparisons(self):
        assert evaluate("A < B") == Boolean(True)
        assert evaluate("A >= B") == Boolean(False)
        assert evaluate("A == 3") == Boolean(True)
        assert evaluate("A != 3") == Boolean(False)

    def test_logical_operators(self):
        assert evaluate("FLAG && A > 1") == Boolean(True)
        assert evaluate("!FLAG || A > 10") == Boolean(False)
        assert evaluate("not FLAG or A > 1") == Boolean(True)
        assert evaluate("FLAG and false") == Boolean(False)

    def test_short_circuit(self):
        """The right operand is not evaluated when the left decides."""
        assert evaluate("false && NAME") == Boolean(False)
        assert evaluate("true || NAME") == Boolean(True)

    def test_conditional(self):
        assert number("FLAG ? A : B") == pytest.approx(3.0)
        assert number("A > B ? 1 : B > 3 ? 2 : 3") == pytest.approx(2.0)

    def test_text(self):
        assert evaluate("NAME == \"vise\"") == Boolean(True)
        assert evaluate("NAME + '-jaw'") == Text("vise-jaw")


class TestCompileErrors:

    def test_unknown_identifier(self):
        with pytest.raises(CompileError, match="Unknown identifier 'C'") as info:
            CompiledFormula(FEATURES, "A + C")
        assert info.value.position == 4
        assert info.value.expression == "A + C"

    def test_unknown_function(self):
        with pytest.raises(CompileError, match="Unknown function"):
            CompiledFormula(FEATURES, "median(A, B)")

    @pytest.mark.parametrize("expression", ["sqrt(A, B)", "pow(A)", "max()", "log(A, B, 2)"])
    def test_wrong_arity(self, expression):
        with pytest.raises(CompileError, match="argument"):
            CompiledFormula(FEATURES, expression)

    @pytest.mark.parametrize("expression", ["A +", "(A + B", "A B", "A ? B", "A $ B", ")"])
    def test_syntax_errors(self, expression):
        with pytest.raises(CompileError):
            CompiledFormula(FEATURES, expression)

    @pytest.mark.parametrize("expression", ["", "   "])
    def test_empty_formula(self, expression):
        with pytest.raises(CompileError, match="Empty"):
            CompiledFormula(FEATURES, expression)

    def test_typo_fails_before_any_candidate(self):
        calls = []
        features = {"A": lambda c: calls.append(c) or 1.0}
        with pytest.raises(CompileError):
            compile_formula(features, "A + a")
        assert calls == []


class TestEvaluation:

    def test_identifiers_in_order_of_use(self):
        formula = CompiledFormula(FEATURES, "B * 2 + A - B")
        assert formula.identifiers == ("B", "A")

    def test_extractor_called_once_per_evaluation(self):
        calls = []
        features = {"A": lambda c: calls.append(c) or 2.0}
        formula = CompiledFormula(features, "A * A + A")
        assert formula.evaluate_number("x") == pytest.approx(6.0)
        assert calls == ["x"]

    def test_feature_substitution(self):
        formula = CompiledFormula(FEATURES, "A + B")
        doubled = {name: (lambda f: lambda c: 2 * f(c))(f) for name, f in FEATURES.items()}
        assert formula.evaluate_number(CANDIDATE, doubled) == pytest.approx(14.0)

    def test_non_numeric_result(self):
        with pytest.raises(EvaluationError, match="number is required"):
            number("A > B")

    def test_type_mismatch(self):
        with pytest.raises(EvaluationError):
            number("A + FLAG")
        with pytest.raises(EvaluationError):
            evaluate("A == NAME")
        with pytest.raises(EvaluationError):
            evaluate("A ? 1 : 2")

    def test_features_are_read_only(self):
        formula = CompiledFormula(dict(FEATURES), "A")
        with pytest.raises(TypeError):
            formula.features["Z"] = lambda c: 0.0
