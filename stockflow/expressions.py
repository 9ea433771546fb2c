"""
Expression tree for stockflow equations
Immutable node types produced by the parser and consumed by the evaluator
"""

from dataclasses import dataclass
from typing import Iterator, Optional, Set, Tuple, Union


@dataclass(frozen=True)
class Constant:
    value: float


@dataclass(frozen=True)
class Variable:
    name: str


@dataclass(frozen=True)
class BinaryOp:
    """Binary operation; op is one of + - * / ^ > < >= <= == !="""

    op: str
    left: "Expression"
    right: "Expression"


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: "Expression"


@dataclass(frozen=True)
class FunctionCall:
    """
    Call to a registered function

    Attributes:
        name: Upper-cased function name
        args: Argument expressions
        site: Stable call-site identity assigned at parse time; stateful
            functions key their persistent state on it
    """

    name: str
    args: Tuple["Expression", ...]
    site: str = ""


@dataclass(frozen=True)
class Conditional:
    condition: "Expression"
    then_branch: "Expression"
    else_branch: "Expression"


Expression = Union[Constant, Variable, BinaryOp, UnaryOp, FunctionCall, Conditional]


def iter_nodes(expr: Expression) -> Iterator[Expression]:
    """Depth-first walk over every node of an expression"""
    yield expr
    if isinstance(expr, BinaryOp):
        yield from iter_nodes(expr.left)
        yield from iter_nodes(expr.right)
    elif isinstance(expr, UnaryOp):
        yield from iter_nodes(expr.operand)
    elif isinstance(expr, FunctionCall):
        for arg in expr.args:
            yield from iter_nodes(arg)
    elif isinstance(expr, Conditional):
        yield from iter_nodes(expr.condition)
        yield from iter_nodes(expr.then_branch)
        yield from iter_nodes(expr.else_branch)


def iter_function_calls(expr: Expression) -> Iterator[FunctionCall]:
    for node in iter_nodes(expr):
        if isinstance(node, FunctionCall):
            yield node


def extract_variable_references(expr: Expression) -> Set[str]:
    """
    Collect every variable name referenced by an expression

    The table-name argument of LOOKUP(x, table) is not a variable and is
    skipped.

    Args:
        expr: Parsed expression

    Returns:
        Set of referenced names
    """
    names: Set[str] = set()

    def visit(node: Expression) -> None:
        if isinstance(node, Variable):
            names.add(node.name)
        elif isinstance(node, BinaryOp):
            visit(node.left)
            visit(node.right)
        elif isinstance(node, UnaryOp):
            visit(node.operand)
        elif isinstance(node, FunctionCall):
            args = node.args[:1] if node.name == "LOOKUP" else node.args
            for arg in args:
                visit(arg)
        elif isinstance(node, Conditional):
            visit(node.condition)
            visit(node.then_branch)
            visit(node.else_branch)

    visit(expr)
    return names


def constant_value(expr: Expression) -> Optional[float]:
    """Literal value of a constant or negated constant, else None"""
    if isinstance(expr, Constant):
        return expr.value
    if isinstance(expr, UnaryOp) and expr.op == "-":
        inner = constant_value(expr.operand)
        return None if inner is None else -inner
    return None


_PRECEDENCE = {
    ">": 1, "<": 1, ">=": 1, "<=": 1, "==": 1, "!=": 1,
    "+": 2, "-": 2,
    "*": 3, "/": 3,
    "^": 4,
}


def format_expression(expr: Expression) -> str:
    """Render an expression back to equation text (fully parseable)"""
    if isinstance(expr, Constant):
        return repr(expr.value)
    if isinstance(expr, Variable):
        if expr.name.isidentifier():
            return expr.name
        return f'"{expr.name}"'
    if isinstance(expr, UnaryOp):
        inner = format_expression(expr.operand)
        if isinstance(expr.operand, (BinaryOp, Conditional)):
            inner = f"({inner})"
        return f"{expr.op}{inner}"
    if isinstance(expr, BinaryOp):
        level = _PRECEDENCE[expr.op]
        left = format_expression(expr.left)
        right = format_expression(expr.right)
        if isinstance(expr.left, Conditional) or (
            isinstance(expr.left, BinaryOp) and _PRECEDENCE[expr.left.op] < level
        ):
            left = f"({left})"
        # Operators are left-associative, so an equal-precedence right operand
        # needs parentheses
        if isinstance(expr.right, Conditional) or (
            isinstance(expr.right, BinaryOp) and _PRECEDENCE[expr.right.op] <= level
        ):
            right = f"({right})"
        return f"{left} {expr.op} {right}"
    if isinstance(expr, FunctionCall):
        args = ", ".join(format_expression(arg) for arg in expr.args)
        return f"{expr.name}({args})"
    if isinstance(expr, Conditional):
        return (
            f"IF {format_expression(expr.condition)} "
            f"THEN {format_expression(expr.then_branch)} "
            f"ELSE {format_expression(expr.else_branch)}"
        )
    raise TypeError(f"Not an expression node: {expr!r}")
