"""Recursive-descent parser producing the engine's syntax tree."""

from dataclasses import dataclass
from dataclasses import field

from matbridge.engine import lexer
from matbridge.engine.errors import syntax_error
from matbridge.engine.lexer import Token

COMMAND_WORDS: frozenset[str] = frozenset({"clear", "who", "clc"})

_COMPARISON_OPERATORS: frozenset[str] = frozenset({"==", "~=", "<", "<=", ">", ">="})
_ADDITIVE_OPERATORS: frozenset[str] = frozenset({"+", "-"})
_MULTIPLICATIVE_OPERATORS: frozenset[str] = frozenset({"*", "/", "\\", ".*", "./", ".\\"})
_POWER_OPERATORS: frozenset[str] = frozenset({"^", ".^"})
_UNARY_OPERATORS: frozenset[str] = frozenset({"+", "-", "~"})
_STATEMENT_ENDS: frozenset[str] = frozenset({lexer.SEMI, lexer.COMMA, lexer.NEWLINE, lexer.EOF})


class Expr:
    """Base class of expression nodes."""


@dataclass
class Number(Expr):
    value: float | complex


@dataclass
class String(Expr):
    value: str
    double_quoted: bool = False


@dataclass
class Name(Expr):
    name: str


@dataclass
class End(Expr):
    """``end`` inside an index expression."""


@dataclass
class Colon(Expr):
    """Bare ``:`` selecting a whole dimension."""


@dataclass
class Matrix(Expr):
    rows: list[list[Expr]]


@dataclass
class CellLiteral(Expr):
    rows: list[list[Expr]]


@dataclass
class Binary(Expr):
    operator: str
    left: Expr
    right: Expr


@dataclass
class Unary(Expr):
    operator: str
    operand: Expr


@dataclass
class Transpose(Expr):
    operand: Expr
    conjugate: bool


@dataclass
class Range(Expr):
    start: Expr
    step: Expr | None
    stop: Expr


@dataclass
class Index(Expr):
    """``target(args)``: array indexing or a function call."""

    target: Expr
    args: list[Expr]


@dataclass
class CellIndex(Expr):
    target: Expr
    args: list[Expr]


@dataclass
class Field(Expr):
    """``target.name`` or ``target.(expr)``."""

    target: Expr
    name: str | None
    name_expr: Expr | None = None


@dataclass
class Accessor:
    """One step of an assignment target: ``paren``, ``brace`` or ``field``."""

    kind: str
    args: list[Expr] = field(default_factory=list)
    name: str | None = None
    name_expr: Expr | None = None


@dataclass
class LValue:
    name: str
    accessors: list[Accessor]


class Statement:
    """Base class of statement nodes."""

    display: bool = True


@dataclass
class ExprStatement(Statement):
    expr: Expr
    display: bool = True


@dataclass
class Assign(Statement):
    """Assignment; ``None`` targets stand for ``~`` placeholders."""

    targets: list[LValue | None]
    value: Expr
    display: bool = True


@dataclass
class Command(Statement):
    name: str
    args: list[str]
    display: bool = True


class Parser:
    """Parse a token list into statements."""

    _tokens: list[Token]
    _position: int
    _index_depth: int

    def __init__(self, tokens: list[Token]) -> None:
        """Initialize the parser.

        :param tokens: Tokens from :func:`matbridge.engine.lexer.tokenize`.
        """
        self._tokens = tokens
        self._position = 0
        self._index_depth = 0

    # -- token helpers ----------------------------------------------------------

    def _peek(self, offset: int = 0) -> Token:
        position: int = min(self._position + offset, len(self._tokens) - 1)
        return self._tokens[position]

    def _advance(self) -> Token:
        token: Token = self._tokens[self._position]
        if token.type != lexer.EOF:
            self._position += 1
        return token

    def _at_operator(self, operators: frozenset[str] | str) -> bool:
        token: Token = self._peek()
        if token.type != lexer.OP:
            return False
        if isinstance(operators, str) is True:
            return token.text == operators
        return token.text in operators

    def _expect(self, token_type: str, text: str | None = None) -> Token:
        token: Token = self._peek()
        if token.type != token_type or (text is not None and token.text != text):
            expected: str = text if text is not None else token_type
            found: str = token.text if token.type != lexer.EOF else "end of input"
            raise syntax_error(f"expected {expected!r} but found {found!r}", token.position)
        return self._advance()

    # -- statements -------------------------------------------------------------

    def parse_program(self) -> list[Statement]:
        """Parse every statement in the token stream.

        :returns: Statements in source order.
        :raises EngineError: On syntax errors.
        """
        statements: list[Statement] = []
        while True:
            while self._peek().type in (lexer.SEMI, lexer.COMMA, lexer.NEWLINE):
                self._advance()
            if self._peek().type == lexer.EOF:
                break
            statement: Statement = self._parse_statement()
            terminator: Token = self._peek()
            if terminator.type not in _STATEMENT_ENDS:
                raise syntax_error(f"unexpected {terminator.text!r}", terminator.position)
            statement.display = terminator.type != lexer.SEMI
            statements.append(statement)
        return statements

    def _parse_statement(self) -> Statement:
        token: Token = self._peek()
        if token.type == lexer.NAME and token.text in COMMAND_WORDS:
            following: Token = self._peek(1)
            if following.type in _STATEMENT_ENDS or following.type == lexer.NAME:
                return self._parse_command()
        if token.type == lexer.LBRACKET and self._is_multi_assignment() is True:
            return self._parse_multi_assignment()

        expr: Expr = self._parse_expression()
        if self._at_operator("=") is True:
            equals: Token = self._advance()
            target: LValue = self._to_lvalue(expr, equals.position)
            value: Expr = self._parse_expression()
            return Assign([target], value)
        return ExprStatement(expr)

    def _parse_command(self) -> Command:
        name: str = self._advance().text
        args: list[str] = []
        while self._peek().type == lexer.NAME:
            args.append(self._advance().text)
        return Command(name, args)

    def _is_multi_assignment(self) -> bool:
        """Look past the bracket group for a following ``=``."""
        depth: int = 0
        offset: int = 0
        while True:
            token: Token = self._peek(offset)
            if token.type == lexer.EOF:
                return False
            if token.type in (lexer.LBRACKET, lexer.LPAREN, lexer.LBRACE):
                depth += 1
            elif token.type in (lexer.RBRACKET, lexer.RPAREN, lexer.RBRACE):
                depth -= 1
                if depth == 0:
                    following: Token = self._peek(offset + 1)
                    return following.type == lexer.OP and following.text == "="
            offset += 1

    def _parse_multi_assignment(self) -> Assign:
        self._expect(lexer.LBRACKET)
        targets: list[LValue | None] = []
        while self._peek().type != lexer.RBRACKET:
            if self._peek().type == lexer.COMMA:
                self._advance()
                continue
            token: Token = self._peek()
            if token.type == lexer.OP and token.text == "~":
                after: Token = self._peek(1)
                if after.type in (lexer.COMMA, lexer.RBRACKET):
                    self._advance()
                    targets.append(None)
                    continue
            expr: Expr = self._parse_postfix()
            targets.append(self._to_lvalue(expr, token.position))
        self._expect(lexer.RBRACKET)
        self._expect(lexer.OP, "=")
        value: Expr = self._parse_expression()
        if len(targets) == 0:
            raise syntax_error("empty assignment target list", self._peek().position)
        return Assign(targets, value)

    def _to_lvalue(self, expr: Expr, position: int) -> LValue:
        """Convert an indexing chain rooted at a name into an assignment target.

        :param expr: Parsed left-hand side.
        :param position: Source offset for error messages.
        :returns: Assignment target.
        :raises EngineError: If ``expr`` cannot be assigned to.
        """
        accessors: list[Accessor] = []
        node: Expr = expr
        while True:
            if isinstance(node, Name) is True:
                accessors.reverse()
                return LValue(node.name, accessors)
            if isinstance(node, Index) is True:
                accessors.append(Accessor("paren", args=node.args))
                node = node.target
                continue
            if isinstance(node, CellIndex) is True:
                accessors.append(Accessor("brace", args=node.args))
                node = node.target
                continue
            if isinstance(node, Field) is True:
                accessors.append(Accessor("field", name=node.name, name_expr=node.name_expr))
                node = node.target
                continue
            raise syntax_error("invalid assignment target", position)

    # -- expressions ------------------------------------------------------------

    def _parse_expression(self) -> Expr:
        return self._parse_short_or()

    def _parse_short_or(self) -> Expr:
        left: Expr = self._parse_short_and()
        while self._at_operator("||") is True:
            self._advance()
            left = Binary("||", left, self._parse_short_and())
        return left

    def _parse_short_and(self) -> Expr:
        left: Expr = self._parse_or()
        while self._at_operator("&&") is True:
            self._advance()
            left = Binary("&&", left, self._parse_or())
        return left

    def _parse_or(self) -> Expr:
        left: Expr = self._parse_and()
        while self._at_operator("|") is True:
            self._advance()
            left = Binary("|", left, self._parse_and())
        return left

    def _parse_and(self) -> Expr:
        left: Expr = self._parse_comparison()
        while self._at_operator("&") is True:
            self._advance()
            left = Binary("&", left, self._parse_comparison())
        return left

    def _parse_comparison(self) -> Expr:
        left: Expr = self._parse_range()
        while self._at_operator(_COMPARISON_OPERATORS) is True:
            operator: str = self._advance().text
            left = Binary(operator, left, self._parse_range())
        return left

    def _parse_range(self) -> Expr:
        start: Expr = self._parse_additive()
        if self._at_operator(":") is False:
            return start
        self._advance()
        second: Expr = self._parse_additive()
        if self._at_operator(":") is False:
            return Range(start, None, second)
        self._advance()
        stop: Expr = self._parse_additive()
        return Range(start, second, stop)

    def _parse_additive(self) -> Expr:
        left: Expr = self._parse_multiplicative()
        while self._at_operator(_ADDITIVE_OPERATORS) is True:
            operator: str = self._advance().text
            left = Binary(operator, left, self._parse_multiplicative())
        return left

    def _parse_multiplicative(self) -> Expr:
        left: Expr = self._parse_unary()
        while self._at_operator(_MULTIPLICATIVE_OPERATORS) is True:
            operator: str = self._advance().text
            left = Binary(operator, left, self._parse_unary())
        return left

    def _parse_unary(self) -> Expr:
        if self._at_operator(_UNARY_OPERATORS) is True:
            operator: str = self._advance().text
            return Unary(operator, self._parse_unary())
        return self._parse_power()

    def _parse_power(self) -> Expr:
        left: Expr = self._parse_postfix()
        while self._at_operator(_POWER_OPERATORS) is True:
            operator: str = self._advance().text
            exponent: Expr
            if self._at_operator(_UNARY_OPERATORS) is True:
                sign: str = self._advance().text
                exponent = Unary(sign, self._parse_postfix())
            else:
                exponent = self._parse_postfix()
            left = Binary(operator, left, exponent)
        return left

    def _parse_postfix(self) -> Expr:
        expr: Expr = self._parse_primary()
        while True:
            token: Token = self._peek()
            if token.type == lexer.LPAREN:
                self._advance()
                expr = Index(expr, self._parse_arguments(lexer.RPAREN))
                continue
            if token.type == lexer.LBRACE:
                self._advance()
                expr = CellIndex(expr, self._parse_arguments(lexer.RBRACE))
                continue
            if token.type == lexer.OP and token.text == ".":
                self._advance()
                following: Token = self._peek()
                if following.type == lexer.NAME:
                    self._advance()
                    expr = Field(expr, following.text)
                    continue
                if following.type == lexer.LPAREN:
                    self._advance()
                    name_expr: Expr = self._parse_expression()
                    self._expect(lexer.RPAREN)
                    expr = Field(expr, None, name_expr)
                    continue
                raise syntax_error("expected a field name after '.'", following.position)
            if token.type == lexer.OP and token.text in ("'", ".'"):
                self._advance()
                expr = Transpose(expr, token.text == "'")
                continue
            return expr

    def _parse_arguments(self, closer: str) -> list[Expr]:
        args: list[Expr] = []
        if self._peek().type == closer:
            self._advance()
            return args
        self._index_depth += 1
        try:
            while True:
                token: Token = self._peek()
                following: Token = self._peek(1)
                if token.type == lexer.OP and token.text == ":" and following.type in (lexer.COMMA, closer):
                    self._advance()
                    args.append(Colon())
                else:
                    args.append(self._parse_expression())
                if self._peek().type == lexer.COMMA:
                    self._advance()
                    continue
                self._expect(closer)
                return args
        finally:
            self._index_depth -= 1

    def _parse_primary(self) -> Expr:
        token: Token = self._peek()
        if token.type == lexer.NUMBER:
            self._advance()
            return Number(token.value)
        if token.type == lexer.STRING:
            self._advance()
            return String(token.value, token.text.startswith('"'))
        if token.type == lexer.NAME:
            self._advance()
            if token.text == "end":
                if self._index_depth == 0:
                    raise syntax_error("'end' is only valid inside an index expression", token.position)
                return End()
            return Name(token.text)
        if token.type == lexer.LPAREN:
            self._advance()
            inner: Expr = self._parse_expression()
            self._expect(lexer.RPAREN)
            return inner
        if token.type == lexer.LBRACKET:
            self._advance()
            return Matrix(self._parse_rows(lexer.RBRACKET))
        if token.type == lexer.LBRACE:
            self._advance()
            return CellLiteral(self._parse_rows(lexer.RBRACE))
        found: str = token.text if token.type != lexer.EOF else "end of input"
        raise syntax_error(f"unexpected {found!r}", token.position)

    def _parse_rows(self, closer: str) -> list[list[Expr]]:
        rows: list[list[Expr]] = []
        row: list[Expr] = []
        while True:
            token: Token = self._peek()
            if token.type == closer:
                self._advance()
                break
            if token.type == lexer.EOF:
                raise syntax_error("unterminated bracket", token.position)
            if token.type == lexer.SEMI:
                self._advance()
                if len(row) > 0:
                    rows.append(row)
                    row = []
                continue
            if token.type == lexer.COMMA:
                self._advance()
                continue
            row.append(self._parse_expression())
        if len(row) > 0:
            rows.append(row)
        return rows


def parse(source: str) -> list[Statement]:
    """Parse source text into statements.

    :param source: Program text.
    :returns: Statements in order.
    :raises EngineError: On lexical or syntax errors.
    """
    return Parser(lexer.tokenize(source)).parse_program()
