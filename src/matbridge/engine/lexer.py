"""Tokenizer for the engine's expression language.

Inside ``[...]`` and ``{...}`` whitespace separates elements, so the lexer
inserts ``COMMA`` tokens there: ``[1 -2]`` has two elements while
``[1 - 2]`` and ``[1-2]`` have one. Newlines inside brackets separate rows.
A quote directly after a value is a transpose; anywhere else it opens a
char literal.
"""

import re
from dataclasses import dataclass

from matbridge.engine.errors import syntax_error

NUMBER: str = "NUMBER"
STRING: str = "STRING"
NAME: str = "NAME"
OP: str = "OP"
LPAREN: str = "LPAREN"
RPAREN: str = "RPAREN"
LBRACKET: str = "LBRACKET"
RBRACKET: str = "RBRACKET"
LBRACE: str = "LBRACE"
RBRACE: str = "RBRACE"
COMMA: str = "COMMA"
SEMI: str = "SEMI"
NEWLINE: str = "NEWLINE"
EOF: str = "EOF"

_NUMBER_PATTERN: re.Pattern[str] = re.compile(
    r"(\d+(?:\.(?![*/\\^'])\d*)?|\.\d+)([eE][+-]?\d+)?([ij](?![A-Za-z0-9_]))?"
)
_NAME_PATTERN: re.Pattern[str] = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_OPERATORS: tuple[str, ...] = (
    ".*", "./", ".\\", ".^", "==", "~=", "!=", "<=", ">=", "&&", "||",
    "+", "-", "*", "/", "\\", "^", "<", ">", "&", "|", "~", "!", "=", ":", ".",
)
_VALUE_END_TYPES: frozenset[str] = frozenset({NUMBER, STRING, NAME, RPAREN, RBRACKET, RBRACE})
_OPENERS: dict[str, str] = {"(": LPAREN, "[": LBRACKET, "{": LBRACE}
_CLOSERS: dict[str, str] = {")": RPAREN, "]": RBRACKET, "}": RBRACE}


@dataclass(frozen=True)
class Token:
    """One lexical token."""

    type: str
    text: str
    position: int
    value: object = None


def _ends_value(token: Token | None) -> bool:
    """Report whether ``token`` can end an operand."""
    if token is None:
        return False
    if token.type in _VALUE_END_TYPES:
        return True
    return token.type == OP and token.text in ("'", ".'")


class Lexer:
    """Convert source text into a token list."""

    _source: str
    _position: int
    _tokens: list[Token]
    _brackets: list[str]

    def __init__(self, source: str) -> None:
        """Initialize the lexer.

        :param source: Source text.
        """
        self._source = source
        self._position = 0
        self._tokens = []
        self._brackets = []

    def _previous(self) -> Token | None:
        return self._tokens[-1] if len(self._tokens) > 0 else None

    def _in_matrix(self) -> bool:
        return len(self._brackets) > 0 and self._brackets[-1] in ("[", "{")

    def _emit(self, token_type: str, text: str, position: int, value: object = None) -> None:
        self._tokens.append(Token(token_type, text, position, value))

    def _starts_element(self, position: int) -> bool:
        """Decide whether whitespace before ``position`` separates matrix elements.

        :param position: Offset of the first character after the whitespace.
        :returns: ``True`` when a ``COMMA`` should be inserted.
        """
        source: str = self._source
        if position >= len(source):
            return False
        char: str = source[position]
        following: str = source[position + 1] if position + 1 < len(source) else ""
        if char in ",;]}\n\r%":
            return False
        if char in "+-":
            return following not in (" ", "\t") and following != "" and following != "="
        if char in "~!":
            return following != "="
        if char == "'":
            return True
        if char == ".":
            return following.isdigit()
        if source.startswith("...", position):
            return False
        if char in "*/\\^=<>&|:":
            return False
        return True

    def tokenize(self) -> list[Token]:
        """Tokenize the whole source.

        :returns: Tokens ending with ``EOF``.
        :raises EngineError: On unterminated literals or unknown characters.
        """
        source: str = self._source
        length: int = len(source)
        while self._position < length:
            start: int = self._position
            char: str = source[start]

            if char in " \t":
                while self._position < length and source[self._position] in " \t":
                    self._position += 1
                if self._in_matrix() is True and _ends_value(self._previous()) is True:
                    if self._starts_element(self._position) is True:
                        self._emit(COMMA, " ", start)
                continue

            if source.startswith("...", start):
                newline_at: int = source.find("\n", start)
                self._position = length if newline_at < 0 else newline_at + 1
                continue

            if char == "%":
                newline_at = source.find("\n", start)
                self._position = length if newline_at < 0 else newline_at
                continue

            if char in "\r\n":
                self._position += 1
                if self._in_matrix() is True:
                    self._emit(SEMI, "\n", start)
                elif len(self._brackets) == 0:
                    self._emit(NEWLINE, "\n", start)
                continue

            if char.isdigit() is True or (char == "." and source[start + 1:start + 2].isdigit() is True):
                match: re.Match[str] | None = _NUMBER_PATTERN.match(source, start)
                if match is None:
                    raise syntax_error("invalid number", start)
                literal: str = match.group(1) + (match.group(2) or "")
                number: complex | float = float(literal)
                if match.group(3) is not None:
                    number = complex(0.0, number)
                self._emit(NUMBER, match.group(0), start, number)
                self._position = match.end()
                continue

            if char.isalpha() is True or char == "_":
                name_match: re.Match[str] | None = _NAME_PATTERN.match(source, start)
                if name_match is None:
                    raise syntax_error("invalid name", start)
                self._emit(NAME, name_match.group(0), start)
                self._position = name_match.end()
                continue

            if char == "'":
                previous: Token | None = self._previous()
                adjacent: bool = previous is not None and start > 0 and source[start - 1] not in " \t"
                if _ends_value(previous) is True and adjacent is True:
                    self._emit(OP, "'", start)
                    self._position += 1
                    continue
                self._read_string("'")
                continue

            if char == '"':
                self._read_string('"')
                continue

            if char in _OPENERS:
                self._brackets.append(char)
                self._emit(_OPENERS[char], char, start)
                self._position += 1
                continue

            if char in _CLOSERS:
                if len(self._brackets) > 0:
                    self._brackets.pop()
                self._emit(_CLOSERS[char], char, start)
                self._position += 1
                continue

            if char == ",":
                self._emit(COMMA, ",", start)
                self._position += 1
                continue

            if char == ";":
                self._emit(SEMI, ";", start)
                self._position += 1
                continue

            if source.startswith(".'", start) and _ends_value(self._previous()) is True:
                self._emit(OP, ".'", start)
                self._position += 2
                continue

            operator_text: str | None = None
            for candidate in _OPERATORS:
                if source.startswith(candidate, start):
                    operator_text = candidate
                    break
            if operator_text is None:
                raise syntax_error(f"unexpected character {char!r}", start)
            self._position += len(operator_text)
            if operator_text == "!=":
                operator_text = "~="
            elif operator_text == "!":
                operator_text = "~"
            self._emit(OP, operator_text, start)
            continue

        self._emit(EOF, "", length)
        return self._tokens

    def _read_string(self, quote: str) -> None:
        """Read a quoted literal where a doubled quote stands for one quote.

        :param quote: Opening quote character.
        :raises EngineError: If the literal is not terminated on the same line.
        """
        source: str = self._source
        start: int = self._position
        position: int = start + 1
        pieces: list[str] = []
        while True:
            if position >= len(source) or source[position] == "\n":
                raise syntax_error("unterminated character literal", start)
            char: str = source[position]
            if char == quote:
                if source[position + 1:position + 2] == quote:
                    pieces.append(quote)
                    position += 2
                    continue
                break
            pieces.append(char)
            position += 1
        self._emit(STRING, source[start:position + 1], start, "".join(pieces))
        self._position = position + 1


def tokenize(source: str) -> list[Token]:
    """Tokenize ``source``.

    :param source: Source text.
    :returns: Tokens ending with ``EOF``.
    """
    return Lexer(source).tokenize()
