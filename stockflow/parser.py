"""
Equation parser for the stockflow engine
Recursive-descent parser turning equation text into an expression tree
"""

import re
from dataclasses import dataclass
from typing import List, Optional

from stockflow.constants import FUNCTION_ARITY, KEYWORDS, describe_arity
from stockflow.exceptions import (
    EquationSyntaxError,
    EvaluationError,
    LookupTooLargeError,
    UnknownFunctionError,
    UnsortedLookupPointsError,
    WrongArgumentCountError,
)
from stockflow.expressions import (
    BinaryOp,
    Conditional,
    Constant,
    Expression,
    FunctionCall,
    UnaryOp,
    Variable,
    constant_value,
)
from stockflow.lookup import check_point_count

# ============================================================================
# Tokenizer
# ============================================================================

_TOKEN_PATTERN = re.compile(
    r"""
    (?P<space>\s+)
  | (?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<quoted>"[^"]*")
  | (?P<op>\*\*|>=|<=|==|!=|<>|[-+*/^<>=])
  | (?P<lparen>\()
  | (?P<rparen>\))
  | (?P<comma>,)
    """,
    re.VERBOSE,
)

# Alternative spellings accepted for operators
_OPERATOR_SPELLINGS = {"**": "^", "=": "==", "<>": "!="}

_COMPARISON_OPS = {">", "<", ">=", "<=", "==", "!="}


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    pos: int


def tokenize(text: str) -> List[Token]:
    """
    Split equation text into tokens

    Raises:
        EquationSyntaxError: On a character that starts no token
    """
    tokens: List[Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_PATTERN.match(text, pos)
        if match is None:
            raise EquationSyntaxError(
                f"Unexpected character '{text[pos]}'", position=pos, equation=text
            )
        kind = match.lastgroup
        value = match.group()
        if kind == "quoted":
            tokens.append(Token("name", value[1:-1].strip(), pos))
        elif kind == "op":
            tokens.append(Token("op", _OPERATOR_SPELLINGS.get(value, value), pos))
        elif kind != "space":
            tokens.append(Token(kind, value, pos))
        pos = match.end()
    tokens.append(Token("end", "", len(text)))
    return tokens


# ============================================================================
# Parser
# ============================================================================


class Parser:
    """
    Recursive-descent parser, loosest to tightest binding:
    conditional, comparison, additive, multiplicative, power, unary, primary.

    Every function call gets a call-site identity "{owner}/{NAME}@{offset}" so
    stateful functions in different equations never share state.
    """

    def __init__(self, text: str, owner: str = ""):
        self.text = text
        self.owner = owner
        try:
            self.tokens = tokenize(text)
        except EquationSyntaxError as e:
            raise self._with_context(e)
        self.index = 0

    # ------------------------------------------------------------------
    # Token helpers
    # ------------------------------------------------------------------

    def peek(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        if token.kind != "end":
            self.index += 1
        return token

    def _is_keyword(self, token: Token, keyword: str) -> bool:
        return token.kind == "name" and token.value.upper() == keyword

    def _is_op(self, token: Token, *ops: str) -> bool:
        return token.kind == "op" and token.value in ops

    def _error(self, message: str, token: Optional[Token] = None) -> EquationSyntaxError:
        token = token or self.peek()
        return self._with_context(EquationSyntaxError(message, position=token.pos))

    def _describe(self, token: Token) -> str:
        return "end of equation" if token.kind == "end" else f"'{token.value}'"

    def expect(self, kind: str, what: str) -> Token:
        token = self.peek()
        if token.kind != kind:
            raise self._error(f"Expected {what}, found {self._describe(token)}")
        return self.advance()

    def expect_keyword(self, keyword: str) -> Token:
        token = self.peek()
        if not self._is_keyword(token, keyword):
            raise self._error(f"Expected {keyword}, found {self._describe(token)}")
        return self.advance()

    # ------------------------------------------------------------------
    # Grammar
    # ------------------------------------------------------------------

    def parse(self) -> Expression:
        if self.peek().kind == "end":
            raise self._error("Empty equation")
        expr = self.parse_conditional()
        token = self.peek()
        if token.kind != "end":
            raise self._error(f"Unexpected {self._describe(token)}")
        return expr

    def parse_conditional(self) -> Expression:
        if self._is_keyword(self.peek(), "IF"):
            return self._parse_if()
        return self.parse_comparison()

    def _parse_if(self) -> Expression:
        self.expect_keyword("IF")
        condition = self.parse_conditional()
        self.expect_keyword("THEN")
        then_branch = self.parse_conditional()
        self.expect_keyword("ELSE")
        else_branch = self.parse_conditional()
        return Conditional(condition, then_branch, else_branch)

    def parse_comparison(self) -> Expression:
        left = self.parse_additive()
        while self._is_op(self.peek(), *_COMPARISON_OPS):
            op = self.advance().value
            left = BinaryOp(op, left, self.parse_additive())
        return left

    def parse_additive(self) -> Expression:
        left = self.parse_multiplicative()
        while self._is_op(self.peek(), "+", "-"):
            op = self.advance().value
            left = BinaryOp(op, left, self.parse_multiplicative())
        return left

    def parse_multiplicative(self) -> Expression:
        left = self.parse_power()
        while self._is_op(self.peek(), "*", "/"):
            op = self.advance().value
            left = BinaryOp(op, left, self.parse_power())
        return left

    def parse_power(self) -> Expression:
        # Left-associative: 2^3^2 == (2^3)^2
        left = self.parse_unary()
        while self._is_op(self.peek(), "^"):
            self.advance()
            left = BinaryOp("^", left, self.parse_unary())
        return left

    def parse_unary(self) -> Expression:
        token = self.peek()
        if self._is_op(token, "-"):
            self.advance()
            return UnaryOp("-", self.parse_unary())
        if self._is_op(token, "+"):
            self.advance()
            return self.parse_unary()
        return self.parse_primary()

    def parse_primary(self) -> Expression:
        token = self.peek()

        if token.kind == "number":
            self.advance()
            return Constant(float(token.value))

        if token.kind == "lparen":
            self.advance()
            expr = self.parse_conditional()
            self.expect("rparen", "')'")
            return expr

        if token.kind == "name":
            upper = token.value.upper()
            if upper == "IF":
                return self._parse_if()
            if upper in KEYWORDS:
                raise self._error(f"Unexpected keyword {upper}")
            self.advance()
            if self.peek().kind == "lparen":
                return self._parse_call(token)
            return Variable(token.value)

        raise self._error(f"Unexpected {self._describe(token)}")

    def _parse_call(self, name_token: Token) -> FunctionCall:
        name = name_token.value.upper()
        if name not in FUNCTION_ARITY:
            raise self._with_context(UnknownFunctionError(name_token.value))

        self.expect("lparen", "'('")
        args: List[Expression] = []
        if self.peek().kind != "rparen":
            args.append(self.parse_conditional())
            while self.peek().kind == "comma":
                self.advance()
                args.append(self.parse_conditional())
        self.expect("rparen", "')' or ','")

        call = FunctionCall(
            name=name, args=tuple(args), site=f"{self.owner}/{name}@{name_token.pos}"
        )
        self._check_arity(call)
        if name == "WITH_LOOKUP":
            self._check_lookup_points(call)
        return call

    # ------------------------------------------------------------------
    # Static checks
    # ------------------------------------------------------------------

    def _with_context(self, exc: EvaluationError) -> EvaluationError:
        element = self.owner.removesuffix(".initial")
        return exc.with_context(element_id=element or None, equation=self.text)

    def _check_arity(self, call: FunctionCall) -> None:
        low, high = FUNCTION_ARITY[call.name]
        got = len(call.args)
        if got < low or (high is not None and got > high):
            raise self._with_context(
                WrongArgumentCountError(call.name, describe_arity(call.name), got)
            )
        if call.name == "WITH_LOOKUP" and got % 2 == 0:
            raise self._with_context(
                WrongArgumentCountError(call.name, "an odd number (at least 3)", got)
            )

    def _check_lookup_points(self, call: FunctionCall) -> None:
        """Reject oversized tables and literal x-values that are not strictly ascending"""
        try:
            check_point_count(len(call.args) // 2)
        except LookupTooLargeError as e:
            raise self._with_context(e)
        xs = [constant_value(arg) for arg in call.args[1::2]]
        if any(x is None for x in xs):
            return
        for i in range(1, len(xs)):
            if xs[i] <= xs[i - 1]:
                raise self._with_context(
                    UnsortedLookupPointsError(
                        f"WITH_LOOKUP x-values must be strictly ascending "
                        f"({xs[i - 1]} then {xs[i]})",
                        index=i,
                    )
                )


def parse(text: str, owner: str = "") -> Expression:
    """
    Parse equation text into an expression tree

    Args:
        text: Equation text
        owner: Name of the equation's owner; scopes call-site identities

    Returns:
        Parsed expression

    Raises:
        EquationSyntaxError: Malformed text
        UnknownFunctionError: Call to an unregistered function
        WrongArgumentCountError: Arity mismatch
        UnsortedLookupPointsError: Literal WITH_LOOKUP points out of order
    """
    return Parser(text, owner).parse()
