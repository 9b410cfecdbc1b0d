"""
Parser for Parsley.

Statements are parsed by recursive descent and expressions by precedence
climbing. The parser never stops at the first problem: each one is recorded
as a Diagnostic and the parser skips ahead to the next statement boundary,
so a single pass reports as many errors as it can find.

String and tag-attribute interpolations are parsed here too, by running a
nested Parser over the text between the braces. Their diagnostics carry
positions in the enclosing source.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional, Tuple

from parsley.parsley_lexer import Lexer, Token, TokenType, KEYWORDS
from parsley.parsley_ast import (
    Node, Program, BlockStatement, ExpressionStatement, LetStatement,
    AssignmentStatement, ExportStatement, ReturnStatement, DeleteStatement,
    ReadStatement, WriteStatement, Identifier, IntegerLiteral, FloatLiteral,
    StringLiteral, InterpolatedString, BooleanLiteral, NullLiteral,
    RegexLiteral, DatetimeLiteral, DurationLiteral, PathLiteral, UrlLiteral,
    TemplateAtLiteral, MarkupLiteral, ArrayLiteral, DictionaryLiteral,
    FunctionLiteral, CallExpression, IndexExpression, SliceExpression,
    DotExpression, PrefixExpression, InfixExpression, IfExpression,
    ForExpression, TagAttribute, TagLiteral, ArrayPattern, DictPatternKey,
    DictPattern,
)


@dataclass
class Diagnostic:
    message: str
    line: int
    column: int

    def __str__(self) -> str:
        return f"line {self.line}, column {self.column}: {self.message}"


class Precedence(IntEnum):
    LOWEST = 1
    COMMA = 2
    NULLISH = 3
    OR = 4
    AND = 5
    EQUALS = 6
    LESSGREATER = 7
    MATCH = 8
    RANGE = 9
    SUM = 10
    PRODUCT = 11
    CONCAT = 12
    PREFIX = 13
    CALL = 14


PRECEDENCES = {
    TokenType.COMMA: Precedence.COMMA,
    TokenType.NULLISH: Precedence.NULLISH,
    TokenType.OR: Precedence.OR,
    TokenType.PIPE: Precedence.OR,
    TokenType.AND: Precedence.AND,
    TokenType.AMP: Precedence.AND,
    TokenType.EQ: Precedence.EQUALS,
    TokenType.NOT_EQ: Precedence.EQUALS,
    TokenType.LT: Precedence.LESSGREATER,
    TokenType.GT: Precedence.LESSGREATER,
    TokenType.LTE: Precedence.LESSGREATER,
    TokenType.GTE: Precedence.LESSGREATER,
    TokenType.MATCH: Precedence.MATCH,
    TokenType.NOT_MATCH: Precedence.MATCH,
    TokenType.DOTDOT: Precedence.RANGE,
    TokenType.PLUS: Precedence.SUM,
    TokenType.MINUS: Precedence.SUM,
    TokenType.UNION: Precedence.SUM,
    TokenType.ASTERISK: Precedence.PRODUCT,
    TokenType.SLASH: Precedence.PRODUCT,
    TokenType.PERCENT: Precedence.PRODUCT,
    TokenType.INTERSECT: Precedence.PRODUCT,
    TokenType.CONCAT: Precedence.CONCAT,
    TokenType.LPAREN: Precedence.CALL,
    TokenType.LBRACKET: Precedence.CALL,
    TokenType.DOT: Precedence.CALL,
}

# Word operators are stored under their symbolic spelling.
_CANONICAL_OPERATORS = {
    TokenType.AND: "&",
    TokenType.OR: "|",
    TokenType.NOT: "!",
}

_READABLE_NAMES = {
    TokenType.IDENT: "identifier",
    TokenType.INT: "integer",
    TokenType.FLOAT: "float",
    TokenType.STRING: "string",
    TokenType.RAW_STRING: "string",
    TokenType.EOF: "end of file",
    TokenType.ILLEGAL: "illegal character",
    TokenType.TAG_END: "closing tag",
}

_ESCAPES = {
    "n": "\n", "t": "\t", "r": "\r", "\\": "\\", '"': '"', "'": "'",
    "`": "`", "{": "{", "}": "}",
}

_KEYWORD_TYPES = set(KEYWORDS.values())


def readable_name(ttype: TokenType) -> str:
    if ttype in _READABLE_NAMES:
        return _READABLE_NAMES[ttype]
    return f"'{ttype.value}'"


class Parser:
    def __init__(self, lexer: Lexer):
        self.l = lexer
        self.errors: List[Diagnostic] = []
        self.cur: Token = self.l.next_token()
        self.peek: Token = self.l.next_token()

        self._prefix_fns = {
            TokenType.IDENT: self._parse_identifier,
            TokenType.INT: self._parse_integer,
            TokenType.FLOAT: self._parse_float,
            TokenType.STRING: self._parse_string,
            TokenType.RAW_STRING: self._parse_string,
            TokenType.TRUE: self._parse_boolean,
            TokenType.FALSE: self._parse_boolean,
            TokenType.NULL: self._parse_null,
            TokenType.BANG: self._parse_prefix,
            TokenType.MINUS: self._parse_prefix,
            TokenType.NOT: self._parse_prefix,
            TokenType.LPAREN: self._parse_grouped,
            TokenType.LBRACKET: self._parse_bracket_array,
            TokenType.LBRACE: self._parse_dictionary,
            TokenType.FUNCTION: self._parse_function,
            TokenType.IF: self._parse_if,
            TokenType.FOR: self._parse_for,
            TokenType.REGEX: self._parse_regex,
            TokenType.DATETIME: lambda: DatetimeLiteral(self.cur, self.cur.literal),
            TokenType.DURATION: lambda: DurationLiteral(self.cur, self.cur.literal),
            TokenType.PATH: lambda: PathLiteral(self.cur, self.cur.literal),
            TokenType.URL: lambda: UrlLiteral(self.cur, self.cur.literal),
            TokenType.TEMPLATE_AT: self._parse_template_at,
            TokenType.MARKUP: lambda: MarkupLiteral(self.cur, self.cur.literal),
            TokenType.TAG: self._parse_singleton_tag,
            TokenType.TAG_START: self._parse_tag_pair,
        }
        self._infix_fns = {t: self._parse_infix for t in PRECEDENCES}
        self._infix_fns[TokenType.COMMA] = self._parse_comma_list
        self._infix_fns[TokenType.LPAREN] = self._parse_call
        self._infix_fns[TokenType.LBRACKET] = self._parse_index_or_slice
        self._infix_fns[TokenType.DOT] = self._parse_dot

    # -----------------------------------------------------------------
    # Token helpers
    # -----------------------------------------------------------------

    def _next_token(self):
        self.cur = self.peek
        self.peek = self.l.next_token()

    def _cur_is(self, t: TokenType) -> bool:
        return self.cur.type == t

    def _peek_is(self, t: TokenType) -> bool:
        return self.peek.type == t

    def _expect_peek(self, t: TokenType) -> bool:
        if self._peek_is(t):
            self._next_token()
            return True
        self._peek_error(t)
        return False

    def _peek_precedence(self) -> int:
        return PRECEDENCES.get(self.peek.type, Precedence.LOWEST)

    def _error(self, message: str, token: Optional[Token] = None):
        tok = token or self.cur
        self.errors.append(Diagnostic(message, tok.line, tok.column))

    def _peek_error(self, t: TokenType):
        got = self.peek.literal or readable_name(self.peek.type)
        self._error(f"expected {readable_name(t)}, got '{got}'", self.peek)

    def _no_prefix_error(self):
        tok = self.cur
        if tok.type == TokenType.ILLEGAL and " " in tok.literal:
            self._error(tok.literal)
            return
        self._error(f"unexpected '{tok.literal or readable_name(tok.type)}'")

    def _mark(self):
        state = dict(vars(self.l))
        state["tags"] = list(self.l.tags)
        state["_parens"] = list(self.l._parens)
        return (state, self.cur, self.peek, len(self.errors))

    def _reset(self, mark):
        state, self.cur, self.peek, n_errors = mark
        self.l.__dict__.update(state)
        del self.errors[n_errors:]

    def _synchronize(self):
        """Skips to the last token of the statement that failed to parse."""
        depth = 0
        while not self._cur_is(TokenType.EOF):
            if self._cur_is(TokenType.LBRACE):
                depth += 1
            elif self._cur_is(TokenType.RBRACE):
                depth -= 1
            if depth <= 0:
                if self._cur_is(TokenType.SEMICOLON) or self._peek_is(TokenType.EOF):
                    return
                if self._peek_is(TokenType.RBRACE) or self.peek.line > self.cur.line:
                    return
            elif self._peek_is(TokenType.EOF):
                return
            self._next_token()

    # -----------------------------------------------------------------
    # Program and statements
    # -----------------------------------------------------------------

    def parse_program(self) -> Program:
        program = Program(self.cur)
        program.statements = self._parse_statements(TokenType.EOF)
        return program

    def _parse_statements(self, end: TokenType) -> List[Node]:
        statements = []
        while not self._cur_is(end) and not self._cur_is(TokenType.EOF):
            before = len(self.errors)
            stmt = self._parse_statement()
            if len(self.errors) > before:
                self._synchronize()
                if self._cur_is(end):
                    break
            elif stmt is not None:
                statements.append(stmt)
            if self._peek_is(TokenType.SEMICOLON):
                self._next_token()
            self._next_token()
        return statements

    def _parse_statement(self) -> Optional[Node]:
        match self.cur.type:
            case TokenType.SEMICOLON:
                return None
            case TokenType.LET:
                return self._parse_let()
            case TokenType.EXPORT:
                return self._parse_export()
            case TokenType.RETURN:
                return self._parse_return()
            case TokenType.DELETE:
                return self._parse_delete()
        return self._parse_expression_statement()

    def _parse_let(self, export: bool = False) -> Optional[Node]:
        tok = self.cur
        self._next_token()
        target = self._parse_binding_target()
        if target is None:
            return None
        if self._peek_is(TokenType.READ_FROM):
            self._next_token()
            self._next_token()
            return ReadStatement(tok, target, self.parse_expression(Precedence.LOWEST), is_let=True)
        if not self._expect_peek(TokenType.ASSIGN):
            return None
        self._next_token()
        value = self.parse_expression(Precedence.LOWEST)
        if isinstance(value, FunctionLiteral) and isinstance(target, Identifier):
            value.name = target.value
        return LetStatement(tok, target, value, export=export)

    def _parse_binding_target(self) -> Optional[Node]:
        """Parses `name`, `a, b, c`, `[a, b]` or a dict pattern at the current token."""
        match self.cur.type:
            case TokenType.IDENT:
                first = Identifier(self.cur, self.cur.literal)
                if not self._peek_is(TokenType.COMMA):
                    return first
                names = [first]
                while self._peek_is(TokenType.COMMA):
                    self._next_token()
                    if not self._expect_peek(TokenType.IDENT):
                        return None
                    names.append(Identifier(self.cur, self.cur.literal))
                return ArrayPattern(first.token, names)
            case TokenType.LBRACKET:
                return self._parse_array_pattern()
            case TokenType.LBRACE:
                return self._parse_dict_pattern()
        self._error(f"expected identifier, got '{self.cur.literal or readable_name(self.cur.type)}'")
        return None

    def _parse_export(self) -> Optional[Node]:
        tok = self.cur
        if self._peek_is(TokenType.LET):
            self._next_token()
            return self._parse_let(export=True)
        if not self._expect_peek(TokenType.IDENT):
            return None
        name = Identifier(self.cur, self.cur.literal)
        if not self._peek_is(TokenType.ASSIGN):
            return ExportStatement(tok, name)
        self._next_token()
        self._next_token()
        value = self.parse_expression(Precedence.LOWEST)
        if isinstance(value, FunctionLiteral):
            value.name = name.value
        return AssignmentStatement(tok, name, value, export=True)

    def _parse_return(self) -> ReturnStatement:
        stmt = ReturnStatement(self.cur)
        if (self.peek.type in (TokenType.SEMICOLON, TokenType.RBRACE, TokenType.EOF)
                or self.peek.line > self.cur.line):
            return stmt
        self._next_token()
        stmt.value = self.parse_expression(Precedence.LOWEST)
        return stmt

    def _parse_delete(self) -> Optional[Node]:
        tok = self.cur
        self._next_token()
        target = self.parse_expression(Precedence.LOWEST)
        if target is None:
            return None
        if not isinstance(target, (DotExpression, IndexExpression)):
            self._error("delete needs a property or index expression", tok)
            return None
        return DeleteStatement(tok, target)

    def _parse_expression_statement(self) -> Optional[Node]:
        tok = self.cur
        if self._cur_is(TokenType.LBRACE):
            stmt = self._try_dict_pattern_statement()
            if stmt is not None:
                return stmt

        expr = self.parse_expression(Precedence.LOWEST)
        if expr is None:
            return None

        if self._peek_is(TokenType.ASSIGN):
            target = self._assignment_target(expr)
            if target is None:
                self._error("invalid assignment target", self.peek)
                return None
            self._next_token()
            self._next_token()
            value = self.parse_expression(Precedence.LOWEST)
            if isinstance(value, FunctionLiteral) and isinstance(target, Identifier):
                value.name = target.value
            return AssignmentStatement(tok, target, value)

        if self._peek_is(TokenType.READ_FROM):
            target = self._assignment_target(expr)
            if not isinstance(target, (Identifier, ArrayPattern)):
                self._error("invalid read target", self.peek)
                return None
            self._next_token()
            self._next_token()
            return ReadStatement(tok, target, self.parse_expression(Precedence.LOWEST))

        if self.peek.type in (TokenType.WRITE_TO, TokenType.APPEND_TO):
            append = self._peek_is(TokenType.APPEND_TO)
            self._next_token()
            self._next_token()
            handle = self.parse_expression(Precedence.LOWEST)
            return WriteStatement(tok, expr, handle, append=append)

        return ExpressionStatement(tok, expr)

    def _try_dict_pattern_statement(self) -> Optional[Node]:
        """Backtracking attempt at `{a, b} = expr` or `{data, error} <== expr`."""
        mark = self._mark()
        tok = self.cur
        pattern = self._parse_dict_pattern()
        if pattern is None or len(self.errors) > mark[-1] or \
                self.peek.type not in (TokenType.ASSIGN, TokenType.READ_FROM):
            self._reset(mark)
            return None
        is_read = self._peek_is(TokenType.READ_FROM)
        self._next_token()
        self._next_token()
        value = self.parse_expression(Precedence.LOWEST)
        if is_read:
            return ReadStatement(tok, pattern, value)
        return AssignmentStatement(tok, pattern, value)

    def _assignment_target(self, expr: Node) -> Optional[Node]:
        if isinstance(expr, (Identifier, DotExpression, IndexExpression)):
            return expr
        if isinstance(expr, ArrayLiteral) and expr.elements and \
                all(isinstance(e, Identifier) for e in expr.elements):
            return ArrayPattern(expr.token, list(expr.elements))
        return None

    # -----------------------------------------------------------------
    # Expressions
    # -----------------------------------------------------------------

    def parse_expression(self, precedence: int) -> Optional[Node]:
        prefix = self._prefix_fns.get(self.cur.type)
        if prefix is None:
            self._no_prefix_error()
            return None
        left = prefix()

        while left is not None and not self._peek_is(TokenType.SEMICOLON) \
                and precedence < self._peek_precedence():
            # A bracket or paren on a new line starts a new statement.
            if self.peek.type in (TokenType.LPAREN, TokenType.LBRACKET) and self.peek.line > self.cur.line:
                break
            infix = self._infix_fns.get(self.peek.type)
            if infix is None:
                return left
            self._next_token()
            left = infix(left)
        return left

    def _parse_identifier(self) -> Identifier:
        return Identifier(self.cur, self.cur.literal)

    def _parse_integer(self) -> Optional[Node]:
        try:
            return IntegerLiteral(self.cur, int(self.cur.literal))
        except ValueError:
            self._error(f"could not parse {self.cur.literal!r} as integer")
            return None

    def _parse_float(self) -> Optional[Node]:
        try:
            return FloatLiteral(self.cur, float(self.cur.literal))
        except ValueError:
            self._error(f"could not parse {self.cur.literal!r} as float")
            return None

    def _parse_boolean(self) -> BooleanLiteral:
        return BooleanLiteral(self.cur, self._cur_is(TokenType.TRUE))

    def _parse_null(self) -> NullLiteral:
        return NullLiteral(self.cur)

    def _parse_string(self) -> Node:
        return self.parse_string_body(self.cur.literal, self.cur,
                                      interpolate=self._cur_is(TokenType.STRING))

    def _parse_regex(self) -> RegexLiteral:
        pattern, _, flags = self.cur.literal.rpartition("/")
        return RegexLiteral(self.cur, pattern, flags)

    def _parse_template_at(self) -> TemplateAtLiteral:
        tok = self.cur
        return TemplateAtLiteral(tok, self.parse_string_body(tok.literal, tok, lead=2))

    def _parse_prefix(self) -> Optional[Node]:
        tok = self.cur
        op = _CANONICAL_OPERATORS.get(tok.type, tok.literal)
        self._next_token()
        right = self.parse_expression(Precedence.PREFIX)
        if right is None:
            return None
        return PrefixExpression(tok, op, right)

    def _parse_infix(self, left: Node) -> Optional[Node]:
        tok = self.cur
        op = _CANONICAL_OPERATORS.get(tok.type, tok.literal)
        precedence = PRECEDENCES[tok.type]
        self._next_token()
        right = self.parse_expression(precedence)
        if right is None:
            return None
        return InfixExpression(tok, left, op, right)

    def _parse_comma_list(self, first: Node) -> Optional[Node]:
        """Bare comma list: `1, 2, 3` is an array. Built in a loop, not by recursion."""
        array = ArrayLiteral(self.cur, [first])
        while True:
            self._next_token()
            element = self.parse_expression(Precedence.COMMA)
            if element is None:
                return None
            array.elements.append(element)
            if not self._peek_is(TokenType.COMMA):
                return array
            self._next_token()

    def _parse_grouped(self) -> Optional[Node]:
        self._next_token()
        expr = self.parse_expression(Precedence.LOWEST)
        if not self._expect_peek(TokenType.RPAREN):
            return None
        return expr

    def _parse_bracket_array(self) -> Optional[Node]:
        array = ArrayLiteral(self.cur, [])
        if self._peek_is(TokenType.RBRACKET):
            self._next_token()
            return array
        elements = self._parse_expression_list(TokenType.RBRACKET)
        if elements is None:
            return None
        array.elements = elements
        return array

    def _parse_expression_list(self, end: TokenType) -> Optional[List[Node]]:
        items = []
        if self._peek_is(end):
            self._next_token()
            return items
        self._next_token()
        items.append(self.parse_expression(Precedence.COMMA))
        while self._peek_is(TokenType.COMMA):
            self._next_token()
            if self._peek_is(end):
                break
            self._next_token()
            items.append(self.parse_expression(Precedence.COMMA))
        if not self._expect_peek(end):
            return None
        if any(item is None for item in items):
            return None
        return items

    def _parse_dictionary(self) -> Optional[Node]:
        d = DictionaryLiteral(self.cur, [])
        while True:
            while self.peek.type in (TokenType.COMMA, TokenType.SEMICOLON):
                self._next_token()
            if self._peek_is(TokenType.RBRACE):
                self._next_token()
                return d
            self._next_token()
            key = self._parse_dictionary_key()
            if key is None:
                return None
            if not self._expect_peek(TokenType.COLON):
                return None
            self._next_token()
            value = self.parse_expression(Precedence.COMMA)
            if value is None:
                return None
            if isinstance(value, FunctionLiteral) and isinstance(key, StringLiteral):
                value.name = key.value
            d.pairs.append((key, value))
            if self.peek.type not in (TokenType.COMMA, TokenType.SEMICOLON, TokenType.RBRACE):
                self._peek_error(TokenType.RBRACE)
                return None

    def _parse_dictionary_key(self) -> Optional[Node]:
        tok = self.cur
        if tok.type == TokenType.IDENT or tok.type in _KEYWORD_TYPES:
            return StringLiteral(tok, tok.literal)
        if tok.type in (TokenType.STRING, TokenType.RAW_STRING):
            return self._parse_string()
        if tok.type == TokenType.INT:
            return StringLiteral(tok, tok.literal)
        if tok.type == TokenType.LBRACKET:
            self._next_token()
            key = self.parse_expression(Precedence.LOWEST)
            if not self._expect_peek(TokenType.RBRACKET):
                return None
            return key
        self._error(f"expected identifier as dictionary key, got '{tok.literal or readable_name(tok.type)}'")
        return None

    def _parse_block(self) -> BlockStatement:
        block = BlockStatement(self.cur, [])
        self._next_token()
        block.statements = self._parse_statements(TokenType.RBRACE)
        if not self._cur_is(TokenType.RBRACE):
            self._error("expected '}', got 'end of file'")
        return block

    def _parse_function(self) -> Optional[Node]:
        lit = FunctionLiteral(self.cur)
        if not self._expect_peek(TokenType.LPAREN):
            return None
        params = self._parse_parameters()
        if params is None:
            return None
        lit.params = params
        if not self._expect_peek(TokenType.LBRACE):
            return None
        lit.body = self._parse_block()
        return lit

    def _parse_parameters(self) -> Optional[List[Node]]:
        params = []
        if self._peek_is(TokenType.RPAREN):
            self._next_token()
            return params
        while True:
            self._next_token()
            match self.cur.type:
                case TokenType.IDENT:
                    params.append(Identifier(self.cur, self.cur.literal))
                case TokenType.LBRACKET:
                    param = self._parse_array_pattern()
                    if param is None:
                        return None
                    params.append(param)
                case TokenType.LBRACE:
                    param = self._parse_dict_pattern()
                    if param is None:
                        return None
                    params.append(param)
                case _:
                    self._error(f"expected identifier, got '{self.cur.literal or readable_name(self.cur.type)}'")
                    return None
            if not self._peek_is(TokenType.COMMA):
                break
            self._next_token()
        if not self._expect_peek(TokenType.RPAREN):
            return None
        return params

    def _parse_if(self) -> Optional[Node]:
        expr = IfExpression(self.cur)
        if not self._expect_peek(TokenType.LPAREN):
            return None
        self._next_token()
        if self._cur_is(TokenType.IDENT) and self._peek_is(TokenType.ASSIGN):
            name = self.cur.literal
            self._error("assignment is not allowed inside if condition. Use a separate statement:\n"
                        f"  let {name} = ...\n  if ({name}) {{ ... }}")
            return None
        expr.condition = self.parse_expression(Precedence.LOWEST)
        if expr.condition is None or not self._expect_peek(TokenType.RPAREN):
            return None
        expr.consequence = self._parse_branch()
        if expr.consequence is None:
            return None
        if self._peek_is(TokenType.ELSE):
            self._next_token()
            expr.alternative = self._parse_branch()
            if expr.alternative is None:
                return None
        return expr

    def _parse_branch(self) -> Optional[BlockStatement]:
        """An if/else arm: a block, a `return`, or a single expression."""
        self._next_token()
        if self._cur_is(TokenType.LBRACE):
            return self._parse_block()
        tok = self.cur
        if self._cur_is(TokenType.RETURN):
            return BlockStatement(tok, [self._parse_return()])
        expr = self.parse_expression(Precedence.LOWEST)
        if expr is None:
            return None
        return BlockStatement(tok, [ExpressionStatement(tok, expr)])

    def _parse_for(self) -> Optional[Node]:
        expr = ForExpression(self.cur)
        if not self._expect_peek(TokenType.LPAREN):
            return None
        self._next_token()

        if self._cur_is(TokenType.IDENT) and self.peek.type in (TokenType.IN, TokenType.COMMA):
            first = Identifier(self.cur, self.cur.literal)
            if self._peek_is(TokenType.COMMA):
                self._next_token()
                if not self._expect_peek(TokenType.IDENT):
                    return None
                expr.key = first
                expr.variable = Identifier(self.cur, self.cur.literal)
            else:
                expr.variable = first
        elif self.cur.type in (TokenType.LBRACE, TokenType.LBRACKET):
            mark = self._mark()
            if self._cur_is(TokenType.LBRACE):
                pattern = self._parse_dict_pattern()
            else:
                pattern = self._parse_array_pattern()
            if pattern is not None and len(self.errors) == mark[-1] and self._peek_is(TokenType.IN):
                expr.variable = pattern
            else:
                self._reset(mark)

        if expr.variable is None:
            # Mapping form: for (seq) fn
            expr.iterable = self.parse_expression(Precedence.LOWEST)
            if expr.iterable is None or not self._expect_peek(TokenType.RPAREN):
                return None
            self._next_token()
            expr.body = self.parse_expression(Precedence.LOWEST)
            return expr if expr.body is not None else None

        if not self._expect_peek(TokenType.IN):
            return None
        self._next_token()
        expr.iterable = self.parse_expression(Precedence.LOWEST)
        if expr.iterable is None or not self._expect_peek(TokenType.RPAREN):
            return None
        if not self._expect_peek(TokenType.LBRACE):
            return None
        expr.body = self._parse_block()
        return expr

    def _parse_call(self, function: Node) -> Optional[Node]:
        tok = self.cur
        args = self._parse_expression_list(TokenType.RPAREN)
        if args is None:
            return None
        return CallExpression(tok, function, args)

    def _parse_index_or_slice(self, left: Node) -> Optional[Node]:
        tok = self.cur
        self._next_token()
        if self._cur_is(TokenType.COLON):
            return self._parse_slice(tok, left, None)
        first = self.parse_expression(Precedence.LOWEST)
        if first is None:
            return None
        if self._peek_is(TokenType.COLON):
            self._next_token()
            return self._parse_slice(tok, left, first)
        if not self._expect_peek(TokenType.RBRACKET):
            return None
        return IndexExpression(tok, left, first)

    def _parse_slice(self, tok: Token, left: Node, start: Optional[Node]) -> Optional[Node]:
        expr = SliceExpression(tok, left, start)
        if self._peek_is(TokenType.RBRACKET):
            self._next_token()
            return expr
        self._next_token()
        expr.end = self.parse_expression(Precedence.LOWEST)
        if expr.end is None or not self._expect_peek(TokenType.RBRACKET):
            return None
        return expr

    def _parse_dot(self, left: Node) -> Optional[Node]:
        tok = self.cur
        if self.peek.type != TokenType.IDENT and self.peek.type not in _KEYWORD_TYPES:
            self._peek_error(TokenType.IDENT)
            return None
        self._next_token()
        return DotExpression(tok, left, self.cur.literal)

    # -----------------------------------------------------------------
    # Destructuring patterns
    # -----------------------------------------------------------------

    def _parse_array_pattern(self) -> Optional[ArrayPattern]:
        pattern = ArrayPattern(self.cur, [])
        while True:
            self._next_token()
            match self.cur.type:
                case TokenType.IDENT:
                    pattern.elements.append(Identifier(self.cur, self.cur.literal))
                case TokenType.LBRACKET:
                    nested = self._parse_array_pattern()
                    if nested is None:
                        return None
                    pattern.elements.append(nested)
                case TokenType.LBRACE:
                    nested = self._parse_dict_pattern()
                    if nested is None:
                        return None
                    pattern.elements.append(nested)
                case _:
                    self._error(f"expected identifier, got '{self.cur.literal or readable_name(self.cur.type)}'")
                    return None
            if not self._peek_is(TokenType.COMMA):
                break
            self._next_token()
        if not self._expect_peek(TokenType.RBRACKET):
            return None
        return pattern

    def _parse_dict_pattern(self) -> Optional[DictPattern]:
        pattern = DictPattern(self.cur, [])
        if self._peek_is(TokenType.RBRACE):
            self._error("empty dictionary destructuring pattern", self.peek)
            return None
        self._next_token()
        while True:
            if self._cur_is(TokenType.ELLIPSIS):
                if not self._expect_peek(TokenType.IDENT):
                    return None
                pattern.rest = self.cur.literal
                if not self._peek_is(TokenType.RBRACE):
                    self._error("rest element must be last in destructuring pattern", self.peek)
                    return None
                break
            if not self._cur_is(TokenType.IDENT):
                self._error(f"expected identifier, got '{self.cur.literal or readable_name(self.cur.type)}'")
                return None
            key = DictPatternKey(self.cur.literal)
            if self._peek_is(TokenType.AS):
                self._next_token()
                if not self._expect_peek(TokenType.IDENT):
                    return None
                key.alias = self.cur.literal
            if self._peek_is(TokenType.COLON):
                self._next_token()
                self._next_token()
                if self._cur_is(TokenType.LBRACE):
                    key.nested = self._parse_dict_pattern()
                elif self._cur_is(TokenType.LBRACKET):
                    key.nested = self._parse_array_pattern()
                else:
                    self._error("expected destructuring pattern after ':'")
                    return None
                if key.nested is None:
                    return None
            pattern.keys.append(key)
            if not self._peek_is(TokenType.COMMA):
                break
            self._next_token()
            if self._peek_is(TokenType.RBRACE):
                break
            self._next_token()
        if not self._expect_peek(TokenType.RBRACE):
            return None
        return pattern

    # -----------------------------------------------------------------
    # Tags
    # -----------------------------------------------------------------

    def _parse_singleton_tag(self) -> Optional[Node]:
        tok = self.cur
        name, attributes = self.parse_tag_attributes(tok.literal, tok)
        return TagLiteral(tok, name, attributes, [], singleton=True)

    def _parse_tag_pair(self) -> Optional[Node]:
        tok = self.cur
        name, attributes = self.parse_tag_attributes(tok.literal, tok)
        tag = TagLiteral(tok, name, attributes, [])
        self._next_token()
        while not self._cur_is(TokenType.TAG_END):
            match self.cur.type:
                case TokenType.EOF:
                    self._error(f"expected closing tag </{name}>, got 'end of file'")
                    return None
                case TokenType.TAG_TEXT:
                    tag.contents.append(StringLiteral(self.cur, self.cur.literal))
                case TokenType.TAG:
                    tag.contents.append(self._parse_singleton_tag())
                case TokenType.MARKUP:
                    tag.contents.append(MarkupLiteral(self.cur, self.cur.literal))
                case TokenType.TAG_START:
                    nested = self._parse_tag_pair()
                    if nested is None:
                        return None
                    tag.contents.append(nested)
                case TokenType.LBRACE:
                    if self._peek_is(TokenType.RBRACE):
                        # Empty interpolation `{}`.
                        self.l.enter_tag_content_mode()
                        self._next_token()
                    else:
                        self._next_token()
                        expr = self.parse_expression(Precedence.LOWEST)
                        self.l.enter_tag_content_mode()
                        if expr is None or not self._expect_peek(TokenType.RBRACE):
                            return None
                        tag.contents.append(expr)
                case _:
                    self._error(f"unexpected token in tag contents: '{self.cur.literal}'")
                    return None
            self._next_token()
        if self.cur.literal != name:
            self._error(f"mismatched tags: opening <{name}> but closing </{self.cur.literal}>")
            return None
        return tag

    def parse_tag_attributes(self, raw: str, tok: Token) -> Tuple[str, List[TagAttribute]]:
        """Splits a tag run into its name and attribute list.

        Values may be "interpolated {strings}", 'raw strings', {expressions}
        or bare words; an attribute with no value is a boolean true.
        `{...expr}` spreads a dictionary of attributes.
        """
        raw = raw.strip()
        i = 0
        while i < len(raw) and not raw[i].isspace():
            i += 1
        name = raw[:i]
        attributes: List[TagAttribute] = []
        n = len(raw)
        while i < n:
            while i < n and raw[i].isspace():
                i += 1
            if i >= n:
                break
            if raw[i] == "{":
                end = _matching_brace(raw, i)
                if end < 0:
                    self._error(f"unclosed {{ in tag <{name}>", tok)
                    break
                inner = raw[i + 1:end].strip()
                if inner.startswith("..."):
                    expr = self._parse_embedded(inner[3:], tok, raw, i + 4)
                    if expr is not None:
                        attributes.append(TagAttribute("", expr, spread=True))
                else:
                    self._error(f"expected attribute name in tag <{name}>", tok)
                i = end + 1
                continue
            start = i
            while i < n and not raw[i].isspace() and raw[i] != "=":
                i += 1
            attr = raw[start:i]
            while i < n and raw[i].isspace():
                i += 1
            if i >= n or raw[i] != "=":
                attributes.append(TagAttribute(attr, None))
                continue
            i += 1
            while i < n and raw[i].isspace():
                i += 1
            if i >= n:
                self._error(f"missing value for attribute {attr!r}", tok)
                break
            ch = raw[i]
            if ch in "\"'":
                end = i + 1
                while end < n and raw[end] != ch:
                    end += 2 if raw[end] == "\\" else 1
                body = raw[i + 1:end]
                value = self.parse_string_body(body, tok, interpolate=ch == '"',
                                               lead=i + 2)
                i = end + 1
            elif ch == "{":
                end = _matching_brace(raw, i)
                if end < 0:
                    self._error(f"unclosed {{ in tag <{name}>", tok)
                    break
                value = self._parse_embedded(raw[i + 1:end], tok, raw, i + 1)
                i = end + 1
            else:
                end = i
                while end < n and not raw[end].isspace():
                    end += 1
                value = StringLiteral(tok, raw[i:end])
                i = end
            if value is not None:
                attributes.append(TagAttribute(attr, value))
        return name, attributes

    # -----------------------------------------------------------------
    # Strings and interpolation
    # -----------------------------------------------------------------

    def parse_string_body(self, body: str, tok: Token, interpolate: bool = True, lead: int = 1) -> Node:
        """Turns a raw string body into a StringLiteral or an InterpolatedString.

        `lead` is the distance from the token's column to the first body
        character, used to position errors inside interpolations.
        """
        parts: List = []
        buf: List[str] = []
        i = 0
        n = len(body)
        while i < n:
            ch = body[i]
            if ch == "\\" and i + 1 < n:
                buf.append(_ESCAPES.get(body[i + 1], "\\" + body[i + 1]))
                i += 2
                continue
            if interpolate and ch == "{":
                end = _matching_brace(body, i)
                if end < 0:
                    self._error("unterminated interpolation in string", tok)
                    return StringLiteral(tok, body)
                if buf:
                    parts.append("".join(buf))
                    buf = []
                expr = self._parse_embedded(body[i + 1:end], tok, body, i + 1, lead)
                if expr is not None:
                    parts.append(expr)
                i = end + 1
                continue
            buf.append(ch)
            i += 1
        if buf:
            parts.append("".join(buf))
        if all(isinstance(p, str) for p in parts):
            return StringLiteral(tok, "".join(parts))
        return InterpolatedString(tok, parts)

    def _parse_embedded(self, text: str, tok: Token, outer: str, offset: int, lead: int = 1) -> Optional[Node]:
        """Parses one expression embedded in a string or tag token."""
        before = outer[:offset]
        newlines = before.count("\n")
        if newlines:
            line = tok.line + newlines
            column = len(before) - before.rfind("\n")
        else:
            line = tok.line
            column = tok.column + lead + offset
        sub = Parser(Lexer(text, line, column))
        if sub._cur_is(TokenType.EOF):
            self._error("empty interpolation", tok)
            return None
        expr = sub.parse_expression(Precedence.LOWEST)
        if expr is not None and not sub._peek_is(TokenType.EOF):
            sub._error(f"unexpected '{sub.peek.literal or readable_name(sub.peek.type)}'", sub.peek)
        self.errors.extend(sub.errors)
        return expr if not sub.errors else None


def _matching_brace(text: str, start: int) -> int:
    """Index of the `}` closing the `{` at start, skipping nested strings; -1 if none."""
    depth = 0
    i = start
    n = len(text)
    while i < n:
        ch = text[i]
        if ch in "\"'`" and depth:
            i += 1
            while i < n and text[i] != ch:
                i += 2 if text[i] == "\\" else 1
        elif ch == "\\":
            i += 1
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return -1


def parse(source: str) -> Tuple[Program, List[Diagnostic]]:
    """Parses source text, returning the program and any diagnostics."""
    parser = Parser(Lexer(source))
    try:
        program = parser.parse_program()
    except RecursionError:
        tok = parser.cur
        return Program(tok), [Diagnostic("maximum nesting depth exceeded", tok.line, tok.column)]
    return program, parser.errors
