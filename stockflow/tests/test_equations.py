"""
Tests for equation parsing
"""

import pytest
from stockflow.parser import parse, tokenize
from stockflow.expressions import (
    BinaryOp,
    Conditional,
    Constant,
    UnaryOp,
    Variable,
    extract_variable_references,
    format_expression,
    iter_function_calls,
)
from stockflow.exceptions import (
    EquationSyntaxError,
    UnknownFunctionError,
    UnsortedLookupPointsError,
    WrongArgumentCountError,
)


def test_tokenize_operators_and_names():
    """Test tokenizer output and operator spellings"""
    tokens = tokenize('"Birth Rate" ** 2 <> x = 1')
    kinds = [t.kind for t in tokens]
    values = [t.value for t in tokens]

    assert kinds == ["name", "op", "number", "op", "name", "op", "number", "end"]
    assert values[0] == "Birth Rate"
    assert values[1] == "^"
    assert values[3] == "!="
    assert values[5] == "=="


def test_tokenize_rejects_unknown_character():
    """Test that stray characters are syntax errors with a position"""
    with pytest.raises(EquationSyntaxError) as exc_info:
        tokenize("a + $b")
    assert exc_info.value.code == "syntax_error"
    assert exc_info.value.details["position"] == 4


def test_parse_precedence():
    """Test multiplicative binds tighter than additive"""
    expr = parse("1 + 2 * 3")
    assert expr == BinaryOp("+", Constant(1.0), BinaryOp("*", Constant(2.0), Constant(3.0)))


def test_parse_power_left_associative():
    """Test ^ is left-associative and unary minus binds tighter"""
    assert parse("2 ^ 3 ^ 2") == BinaryOp(
        "^", BinaryOp("^", Constant(2.0), Constant(3.0)), Constant(2.0)
    )
    assert parse("-2 ^ 2") == BinaryOp("^", UnaryOp("-", Constant(2.0)), Constant(2.0))


def test_parse_comparison_is_loosest_binary():
    """Test comparisons bind looser than arithmetic"""
    expr = parse("a + 1 > b * 2")
    assert isinstance(expr, BinaryOp)
    assert expr.op == ">"


def test_parse_if_then_else_case_insensitive():
    """Test IF/THEN/ELSE keywords in any case"""
    expr = parse("if x > 1 then 10 else 20")
    assert isinstance(expr, Conditional)
    assert expr.condition == BinaryOp(">", Variable("x"), Constant(1.0))
    assert expr.then_branch == Constant(10.0)
    assert expr.else_branch == Constant(20.0)


def test_parse_if_inside_arithmetic():
    """Test a conditional used as an operand"""
    expr = parse("2 * IF x THEN 1 ELSE 0")
    assert isinstance(expr, BinaryOp)
    assert isinstance(expr.right, Conditional)


def test_parse_function_call_sites_are_unique():
    """Test that each call site gets its own identity"""
    expr = parse("DELAY1(x, 2) + delay1(x, 2)", owner="out")
    calls = list(iter_function_calls(expr))

    assert [c.name for c in calls] == ["DELAY1", "DELAY1"]
    assert calls[0].site == "out/DELAY1@0"
    assert calls[1].site == "out/DELAY1@15"
    assert calls[0].site != calls[1].site


def test_parse_quoted_names():
    """Test quoted names with spaces"""
    expr = parse('"Birth Rate" * Population')
    assert extract_variable_references(expr) == {"Birth Rate", "Population"}


def test_parse_unknown_function():
    """Test unknown function fails at parse time"""
    with pytest.raises(UnknownFunctionError) as exc_info:
        parse("FOO(1)", owner="x")
    assert exc_info.value.code == "unknown_function"
    assert exc_info.value.element_id == "x"


def test_parse_wrong_argument_count():
    """Test arity is checked at parse time"""
    with pytest.raises(WrongArgumentCountError):
        parse("SQRT(1, 2)")
    with pytest.raises(WrongArgumentCountError):
        parse("WITH_LOOKUP(x, 0, 1, 2)")


def test_parse_unsorted_lookup_points():
    """Test literal WITH_LOOKUP points must be strictly ascending"""
    with pytest.raises(UnsortedLookupPointsError):
        parse("WITH_LOOKUP(x, 0, 1, 0, 2)")
    with pytest.raises(UnsortedLookupPointsError):
        parse("WITH_LOOKUP(x, 5, 1, -1, 2)")


@pytest.mark.parametrize(
    "text",
    ["", "1 +", "(1 + 2", "1 2", "IF x THEN 1", "ELSE", "x + * y"],
)
def test_parse_syntax_errors(text):
    """Test malformed equations raise syntax errors"""
    with pytest.raises(EquationSyntaxError):
        parse(text)


@pytest.mark.parametrize(
    "owner,text",
    [("births", "r * (P"), ("births", "r $ P"), ("P.initial", "10 +")],
)
def test_syntax_errors_name_their_element(owner, text):
    """Test syntax errors carry the owning element and the equation text"""
    with pytest.raises(EquationSyntaxError) as exc_info:
        parse(text, owner=owner)
    error = exc_info.value
    assert error.element_id == owner.split(".")[0]
    assert error.equation == text
    assert error.to_dict()["details"]["element_id"] == error.element_id


def test_lookup_table_argument_is_not_a_reference():
    """Test LOOKUP's table name is not collected as a variable"""
    expr = parse("LOOKUP(demand, effect_table)")
    assert extract_variable_references(expr) == {"demand"}


def test_format_expression_reparses():
    """Test formatted text parses back to the same tree"""
    for text in [
        "a - (b - c)",
        "(a + b) * c",
        "-x ^ 2",
        "IF a >= 1 THEN a ELSE -1",
        '"Birth Rate" / 2',
    ]:
        expr = parse(text)
        assert parse(format_expression(expr)) == expr
