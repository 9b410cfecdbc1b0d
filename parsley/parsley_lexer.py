"""
Tokenizer for Parsley source text.

The lexer is context sensitive in four places: which kind of `@` literal
follows the sigil, whether `<` opens a tag or is a comparison, whether `/`
opens a regex, and whether it is scanning code, tag content or the raw text
of a <style>/<script> body. The parser switches it back into tag content
after each `{...}` interpolation with `enter_tag_content_mode()`.
"""

import re
from enum import Enum
from typing import NamedTuple, List, Optional


class TokenType(Enum):
    ILLEGAL = "ILLEGAL"
    EOF = "EOF"

    IDENT = "IDENT"
    INT = "INT"
    FLOAT = "FLOAT"
    STRING = "STRING"          # "..." and `...`, interpolating
    RAW_STRING = "RAW_STRING"  # '...'
    MARKUP = "MARKUP"          # <!DOCTYPE ...>, <?...?>, CDATA
    REGEX = "REGEX"
    DATETIME = "DATETIME"
    DURATION = "DURATION"
    PATH = "PATH"
    URL = "URL"
    TEMPLATE_AT = "TEMPLATE_AT"  # @(...)

    TAG = "TAG"              # <name attrs />
    TAG_START = "TAG_START"  # <name attrs>
    TAG_END = "TAG_END"      # </name>
    TAG_TEXT = "TAG_TEXT"

    ASSIGN = "="
    PLUS = "+"
    MINUS = "-"
    BANG = "!"
    ASTERISK = "*"
    SLASH = "/"
    PERCENT = "%"
    LT = "<"
    GT = ">"
    LTE = "<="
    GTE = ">="
    EQ = "=="
    NOT_EQ = "!="
    AND = "and"
    OR = "or"
    AMP = "&"
    PIPE = "|"
    INTERSECT = "&&"
    UNION = "||"
    NULLISH = "??"
    MATCH = "~"
    NOT_MATCH = "!~"
    READ_FROM = "<=="
    WRITE_TO = "==>"
    APPEND_TO = "==>>"
    CONCAT = "++"

    COMMA = ","
    SEMICOLON = ";"
    COLON = ":"
    DOT = "."
    DOTDOT = ".."
    ELLIPSIS = "..."
    LPAREN = "("
    RPAREN = ")"
    LBRACE = "{"
    RBRACE = "}"
    LBRACKET = "["
    RBRACKET = "]"

    FUNCTION = "fn"
    LET = "let"
    EXPORT = "export"
    FOR = "for"
    IN = "in"
    AS = "as"
    TRUE = "true"
    FALSE = "false"
    NULL = "null"
    IF = "if"
    ELSE = "else"
    RETURN = "return"
    DELETE = "delete"
    NOT = "not"


class Token(NamedTuple):
    type: TokenType
    literal: str
    line: int
    column: int

    def __repr__(self) -> str:
        return f"Token({self.type.name}, {self.literal!r}, {self.line}:{self.column})"


KEYWORDS = {
    "fn": TokenType.FUNCTION,
    "function": TokenType.FUNCTION,
    "let": TokenType.LET,
    "export": TokenType.EXPORT,
    "for": TokenType.FOR,
    "in": TokenType.IN,
    "as": TokenType.AS,
    "true": TokenType.TRUE,
    "false": TokenType.FALSE,
    "null": TokenType.NULL,
    "if": TokenType.IF,
    "else": TokenType.ELSE,
    "return": TokenType.RETURN,
    "delete": TokenType.DELETE,
    "and": TokenType.AND,
    "or": TokenType.OR,
    "not": TokenType.NOT,
}

# Tokens after which an operand has just ended; `<` and `/` that follow them
# on the same line are operators.
_VALUE_END = {
    TokenType.IDENT, TokenType.INT, TokenType.FLOAT, TokenType.STRING,
    TokenType.RAW_STRING, TokenType.REGEX, TokenType.DATETIME, TokenType.DURATION,
    TokenType.PATH, TokenType.URL, TokenType.TEMPLATE_AT,
    TokenType.RPAREN, TokenType.RBRACKET, TokenType.RBRACE,
    TokenType.TRUE, TokenType.FALSE, TokenType.NULL,
}

RAW_TEXT_TAGS = ("style", "script")

_DATETIME_RE = re.compile(
    r"\d{4}-\d{2}-\d{2}(?:T\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:\d{2})?)?"
)
_DURATION_RE = re.compile(r"-?(?:\d+(?:mo|y|w|d|h|m|s))+")
_SCHEME_RE = re.compile(r"[A-Za-z][A-Za-z0-9+.\-]{0,19}://")
_STDIO_RE = re.compile(r"(?:stdin|stdout|stderr)(?![A-Za-z0-9_])")
_LITERAL_STOP = set(" \t\r\n)]},;\"'`<>{")
_NEWLINE_WS = re.compile(r"\s*\n\s*")


class _TagFrame:
    __slots__ = ("name", "resume_content", "raw")

    def __init__(self, name: str, resume_content: bool):
        self.name = name
        self.resume_content = resume_content
        self.raw = name.lower() in RAW_TEXT_TAGS


class Lexer:
    """Converts source text into Tokens, one `next_token()` call at a time."""

    def __init__(self, source: str, line: int = 1, column: int = 1):
        self.src = source
        self.pos = 0
        self.line = line
        self.col = column
        self.tags: List[_TagFrame] = []
        self.in_content = False
        self._last: Optional[TokenType] = None
        self._newline_since_last = True
        # one entry per open paren; True when it opens an `if` or `for` header
        self._parens: List[bool] = []

    # -----------------------------------------------------------------
    # Character helpers
    # -----------------------------------------------------------------

    def _peek(self, offset: int = 0) -> str:
        i = self.pos + offset
        return self.src[i] if i < len(self.src) else ""

    def _startswith(self, s: str) -> bool:
        return self.src.startswith(s, self.pos)

    def _advance(self, n: int = 1) -> str:
        out = self.src[self.pos:self.pos + n]
        for ch in out:
            if ch == "\n":
                self.line += 1
                self.col = 1
            else:
                self.col += 1
        self.pos += len(out)
        return out

    def _save(self):
        return (self.pos, self.line, self.col)

    def _restore(self, state):
        self.pos, self.line, self.col = state

    def _skip_whitespace_and_comments(self):
        while self.pos < len(self.src):
            ch = self.src[self.pos]
            if ch in " \t\r\n":
                if ch == "\n":
                    self._newline_since_last = True
                self._advance()
            elif ch == "/" and self._peek(1) == "/":
                while self.pos < len(self.src) and self.src[self.pos] != "\n":
                    self._advance()
            else:
                break

    def _expression_expected(self) -> bool:
        return self._last not in _VALUE_END or self._newline_since_last

    def _emit(self, ttype: TokenType, literal: str, line: int, col: int) -> Token:
        header_close = False
        if ttype == TokenType.LPAREN:
            self._parens.append(self._last in (TokenType.IF, TokenType.FOR))
        elif ttype == TokenType.RPAREN and self._parens:
            header_close = self._parens.pop()
        # a tag may follow the `)` that closes an `if` or `for` header
        self._last = None if header_close else ttype
        self._newline_since_last = False
        return Token(ttype, literal, line, col)

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    def enter_tag_content_mode(self):
        """Resumes tag content scanning after an interpolated expression."""
        if self.tags:
            self.in_content = True

    def tokens(self) -> List[Token]:
        """Lexes the whole input without parser feedback (tag interpolations stay in code mode)."""
        out = []
        while True:
            tok = self.next_token()
            out.append(tok)
            if tok.type == TokenType.EOF:
                return out

    def next_token(self) -> Token:
        if self.in_content and self.tags:
            if self.tags[-1].raw:
                return self._next_raw_text_token()
            return self._next_content_token()
        return self._next_code_token()

    # -----------------------------------------------------------------
    # Code mode
    # -----------------------------------------------------------------

    def _next_code_token(self) -> Token:
        self._skip_whitespace_and_comments()
        line, col = self.line, self.col
        if self.pos >= len(self.src):
            return self._emit(TokenType.EOF, "", line, col)

        ch = self._peek()

        if ch.isalpha() or ch == "_":
            start = self.pos
            while self._peek().isalnum() or self._peek() == "_":
                self._advance()
            word = self.src[start:self.pos]
            return self._emit(KEYWORDS.get(word, TokenType.IDENT), word, line, col)

        if ch.isdigit():
            return self._read_number(line, col)

        if ch in "\"`":
            return self._read_string(ch, TokenType.STRING, line, col)
        if ch == "'":
            return self._read_string(ch, TokenType.RAW_STRING, line, col)

        if ch == "@":
            return self._read_at_literal(line, col)

        if ch == "<":
            if self._expression_expected() and self._tag_follows():
                # a tag opened after an operand must close on its own line
                tok = self._try_read_tag(line, col, single_line=self._last in _VALUE_END)
                if tok is not None:
                    return tok
            for op, tt in (("<==", TokenType.READ_FROM), ("<=", TokenType.LTE)):
                if self._startswith(op):
                    self._advance(len(op))
                    return self._emit(tt, op, line, col)
            self._advance()
            return self._emit(TokenType.LT, "<", line, col)

        if ch == "/" and self._expression_expected():
            tok = self._try_read_regex(line, col)
            if tok is not None:
                return tok

        for op, tt in _OPERATORS:
            if self._startswith(op):
                self._advance(len(op))
                return self._emit(tt, op, line, col)

        self._advance()
        return self._emit(TokenType.ILLEGAL, ch, line, col)

    def _read_number(self, line: int, col: int) -> Token:
        start = self.pos
        while self._peek().isdigit():
            self._advance()
        if self._peek() == "." and self._peek(1).isdigit():
            self._advance()
            while self._peek().isdigit():
                self._advance()
            return self._emit(TokenType.FLOAT, self.src[start:self.pos], line, col)
        return self._emit(TokenType.INT, self.src[start:self.pos], line, col)

    def _read_string(self, quote: str, ttype: TokenType, line: int, col: int) -> Token:
        """Reads a quoted string, returning its raw body (escapes untouched)."""
        self._advance()
        start = self.pos
        depth = 0
        interpolating = ttype == TokenType.STRING
        while self.pos < len(self.src):
            ch = self._peek()
            if ch == "\\":
                self._advance(2)
                continue
            if interpolating and depth and ch in "\"'`":
                # A string literal inside an interpolated expression.
                self._skip_nested_string(ch)
                continue
            if ch == quote:
                body = self.src[start:self.pos]
                self._advance()
                return self._emit(ttype, body, line, col)
            if interpolating and ch == "{":
                depth += 1
            elif interpolating and ch == "}" and depth:
                depth -= 1
            self._advance()
        return self._emit(TokenType.ILLEGAL, "unterminated string", line, col)

    def _skip_nested_string(self, quote: str):
        self._advance()
        while self.pos < len(self.src) and self._peek() != quote:
            if self._peek() == "\\":
                self._advance()
            self._advance()
        self._advance()

    def _try_read_regex(self, line: int, col: int) -> Optional[Token]:
        state = self._save()
        self._advance()
        start = self.pos
        in_class = False
        while self.pos < len(self.src):
            ch = self._peek()
            if ch == "\n":
                break
            if ch == "\\":
                self._advance(2)
                continue
            if ch == "[":
                in_class = True
            elif ch == "]":
                in_class = False
            elif ch == "/" and not in_class:
                pattern = self.src[start:self.pos]
                self._advance()
                flags_start = self.pos
                while self._peek() != "" and self._peek() in "imsx":
                    self._advance()
                flags = self.src[flags_start:self.pos]
                if not pattern:
                    break
                return self._emit(TokenType.REGEX, f"{pattern}/{flags}", line, col)
            self._advance()
        self._restore(state)
        return None

    # -----------------------------------------------------------------
    # @-literals
    # -----------------------------------------------------------------

    def _read_at_literal(self, line: int, col: int) -> Token:
        self._advance()  # @
        if self._peek() == "(":
            self._advance()
            start = self.pos
            depth = 1
            while self.pos < len(self.src):
                ch = self._peek()
                if ch in "\"'`":
                    self._skip_nested_string(ch)
                    continue
                if ch == "(":
                    depth += 1
                elif ch == ")":
                    depth -= 1
                    if depth == 0:
                        body = self.src[start:self.pos]
                        self._advance()
                        return self._emit(TokenType.TEMPLATE_AT, body, line, col)
                self._advance()
            return self._emit(TokenType.ILLEGAL, "unterminated @( template", line, col)

        kind = classify_at_literal(self.src, self.pos)
        if kind is None:
            return self._emit(TokenType.ILLEGAL, "@", line, col)
        if kind == TokenType.DATETIME:
            m = _DATETIME_RE.match(self.src, self.pos)
            self._advance(m.end() - self.pos)
            return self._emit(kind, m.group(0), line, col)
        if kind == TokenType.DURATION:
            m = _DURATION_RE.match(self.src, self.pos)
            end = m.end()
            if end < len(self.src) and (self.src[end].isalnum() or self.src[end] == "_"):
                self._advance(end - self.pos)
                return self._emit(TokenType.ILLEGAL, f"invalid duration literal @{m.group(0)}", line, col)
            self._advance(end - self.pos)
            return self._emit(kind, m.group(0), line, col)
        start = self.pos
        while self.pos < len(self.src) and self._peek() not in _LITERAL_STOP:
            self._advance()
        return self._emit(kind, self.src[start:self.pos], line, col)

    # -----------------------------------------------------------------
    # Tags
    # -----------------------------------------------------------------

    def _try_read_tag(self, line: int, col: int, single_line: bool = False) -> Optional[Token]:
        """Scans a tag run; returns None (position restored) when it is not one."""
        state = self._save()
        if self._startswith("<!--"):
            end = self.src.find("-->", self.pos + 4)
            if end < 0:
                return None
            self._advance(end + 3 - self.pos)
            return self.next_token()
        if self._startswith("<![CDATA["):
            end = self.src.find("]]>", self.pos)
            if end < 0:
                return None
            text = self._advance(end + 3 - self.pos)
            return self._emit(TokenType.MARKUP, text, line, col)
        if self._startswith("<!") or self._startswith("<?"):
            closer = "?>" if self._startswith("<?") else ">"
            end = self.src.find(closer, self.pos + 2)
            if end < 0:
                return None
            text = self._advance(end + len(closer) - self.pos)
            return self._emit(TokenType.MARKUP, text, line, col)
        if self._startswith("</"):
            end = self.src.find(">", self.pos)
            if end < 0:
                return None
            name = self.src[self.pos + 2:end].strip()
            self._advance(end + 1 - self.pos)
            return self._close_tag(name, line, col)

        self._advance()  # <
        body_start = self.pos
        depth = 0
        while self.pos < len(self.src):
            ch = self._peek()
            if ch == "\n" and single_line:
                break
            if ch in "\"'":
                single_line = False
                self._skip_nested_string(ch)
                continue
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
            elif ch == ">" and depth <= 0:
                body = self.src[body_start:self.pos]
                self._advance()
                if body.endswith("/"):
                    return self._emit(TokenType.TAG, body[:-1].strip(), line, col)
                name = body.split(None, 1)[0] if body.strip() else ""
                self.tags.append(_TagFrame(name, self.in_content))
                self.in_content = True
                return self._emit(TokenType.TAG_START, body.strip(), line, col)
            self._advance()
        self._restore(state)
        return None

    def _close_tag(self, name: str, line: int, col: int) -> Token:
        if self.tags:
            frame = self.tags.pop()
            self.in_content = frame.resume_content
        else:
            self.in_content = False
        return self._emit(TokenType.TAG_END, name, line, col)

    # -----------------------------------------------------------------
    # Tag content mode
    # -----------------------------------------------------------------

    def _next_content_token(self) -> Token:
        while True:
            line, col = self.line, self.col
            if self.pos >= len(self.src):
                self.in_content = False
                return self._emit(TokenType.EOF, "", line, col)
            ch = self._peek()
            if ch == "{":
                self._advance()
                self.in_content = False
                return self._emit(TokenType.LBRACE, "{", line, col)
            consume_first = False
            if ch == "<" and self._tag_follows():
                tok = self._try_read_tag(line, col)
                if tok is not None:
                    return tok
                consume_first = True
            text = self._read_text(consume_first)
            if text is None:
                continue
            return self._emit(TokenType.TAG_TEXT, text, line, col)

    def _next_raw_text_token(self) -> Token:
        frame = self.tags[-1]
        while True:
            line, col = self.line, self.col
            if self.pos >= len(self.src):
                self.in_content = False
                return self._emit(TokenType.EOF, "", line, col)
            if self._startswith("@{"):
                self._advance(2)
                self.in_content = False
                return self._emit(TokenType.LBRACE, "@{", line, col)
            closer = re.compile(r"</\s*" + re.escape(frame.name) + r"\s*>", re.IGNORECASE)
            m = closer.match(self.src, self.pos)
            if m:
                self._advance(m.end() - self.pos)
                return self._close_tag(frame.name, line, col)
            start = self.pos
            parts = []
            while self.pos < len(self.src):
                if self._startswith("@{") or closer.match(self.src, self.pos):
                    break
                if self._startswith("//") and (self.pos == 0 or self.src[self.pos - 1] != ":"):
                    parts.append(self.src[start:self.pos])
                    while self.pos < len(self.src) and self._peek() != "\n":
                        self._advance()
                    start = self.pos
                    continue
                self._advance()
            parts.append(self.src[start:self.pos])
            text = "".join(parts)
            if text:
                return self._emit(TokenType.TAG_TEXT, text, line, col)

    def _tag_follows(self) -> bool:
        """True when the `<` at the current position could open or close a tag."""
        nxt = self._peek(1)
        return self._peek() == "<" and nxt != "" and (nxt.isalpha() or nxt in "/!?>")

    def _read_text(self, consume_first: bool = False) -> Optional[str]:
        """Reads a run of tag text, stripping comments and collapsing line breaks."""
        parts = []
        start = self.pos
        if consume_first:
            self._advance()
        while self.pos < len(self.src):
            ch = self._peek()
            if ch == "{" or (ch == "<" and self._tag_follows()):
                break
            if ch == "\\" and self._peek(1) in ("{", "}"):
                parts.append(self.src[start:self.pos])
                self._advance()
                start = self.pos
                self._advance()
                continue
            if self._startswith("//") and (self.pos == 0 or self.src[self.pos - 1] != ":"):
                parts.append(self.src[start:self.pos])
                while self.pos < len(self.src) and self._peek() != "\n":
                    self._advance()
                start = self.pos
                continue
            self._advance()
        parts.append(self.src[start:self.pos])
        return collapse_text("".join(parts))


def collapse_text(text: str) -> Optional[str]:
    """Drops line-break whitespace at the edges of a text run and folds the rest to one space."""
    chunks = _NEWLINE_WS.split(text)
    if len(chunks) > 1:
        if not chunks[0].strip():
            chunks = chunks[1:]
        if chunks and not chunks[-1].strip():
            chunks = chunks[:-1]
        text = " ".join(chunks)
    return text or None


def classify_at_literal(src: str, pos: int) -> Optional[TokenType]:
    """Decides which `@` literal family the text at pos belongs to.

    Families are tried in a fixed order and the first match wins.
    """
    if _SCHEME_RE.match(src, pos):
        return TokenType.URL
    head = src[pos:pos + 3]
    if head.startswith(("/", "./", "../", "~")):
        return TokenType.PATH
    for marker in (".", ".."):
        if head.startswith(marker) and (len(head) == len(marker) or head[len(marker)] in _LITERAL_STOP):
            return TokenType.PATH
    if head.startswith("-") and not head[1:2].isdigit():
        return TokenType.PATH
    if _STDIO_RE.match(src, pos):
        return TokenType.PATH
    if _DATETIME_RE.match(src, pos):
        return TokenType.DATETIME
    if _DURATION_RE.match(src, pos):
        return TokenType.DURATION
    return None


# Longest operators first.
_OPERATORS = [
    ("==>>", TokenType.APPEND_TO),
    ("==>", TokenType.WRITE_TO),
    ("...", TokenType.ELLIPSIS),
    ("==", TokenType.EQ),
    ("!=", TokenType.NOT_EQ),
    ("!~", TokenType.NOT_MATCH),
    (">=", TokenType.GTE),
    ("++", TokenType.CONCAT),
    ("&&", TokenType.INTERSECT),
    ("||", TokenType.UNION),
    ("??", TokenType.NULLISH),
    ("..", TokenType.DOTDOT),
    ("=", TokenType.ASSIGN),
    ("+", TokenType.PLUS),
    ("-", TokenType.MINUS),
    ("!", TokenType.BANG),
    ("*", TokenType.ASTERISK),
    ("/", TokenType.SLASH),
    ("%", TokenType.PERCENT),
    (">", TokenType.GT),
    ("&", TokenType.AMP),
    ("|", TokenType.PIPE),
    ("~", TokenType.MATCH),
    (",", TokenType.COMMA),
    (";", TokenType.SEMICOLON),
    (":", TokenType.COLON),
    (".", TokenType.DOT),
    ("(", TokenType.LPAREN),
    (")", TokenType.RPAREN),
    ("{", TokenType.LBRACE),
    ("}", TokenType.RBRACE),
    ("[", TokenType.LBRACKET),
    ("]", TokenType.RBRACKET),
]
