"""
AST node types produced by the Parsley parser.

Every node records the Token it started at so that runtime errors can be
positioned. Nodes form a tree owned by the Program they belong to.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Any, Tuple

from parsley.parsley_lexer import Token


@dataclass
class Node:
    token: Token = field(repr=False, compare=False)


# -----------------------------------------------------------------
# Statements
# -----------------------------------------------------------------

@dataclass
class Program(Node):
    statements: List[Node] = field(default_factory=list)


@dataclass
class BlockStatement(Node):
    statements: List[Node] = field(default_factory=list)


@dataclass
class ExpressionStatement(Node):
    expression: Node = None


@dataclass
class LetStatement(Node):
    """`let target = value`; `export let ...` sets `export`."""
    target: Node = None
    value: Node = None
    export: bool = False


@dataclass
class AssignmentStatement(Node):
    """`target = value` where target is a name, pattern, dot or index expression."""
    target: Node = None
    value: Node = None
    export: bool = False


@dataclass
class ExportStatement(Node):
    """`export name`: marks an existing binding exported."""
    name: 'Identifier' = None


@dataclass
class ReturnStatement(Node):
    value: Optional[Node] = None


@dataclass
class DeleteStatement(Node):
    target: Node = None


@dataclass
class ReadStatement(Node):
    """`let? target <== source`."""
    target: Node = None
    source: Node = None
    is_let: bool = False


@dataclass
class WriteStatement(Node):
    """`value ==> handle` and `value ==>> handle`."""
    value: Node = None
    handle: Node = None
    append: bool = False


# -----------------------------------------------------------------
# Literals
# -----------------------------------------------------------------

@dataclass
class Identifier(Node):
    value: str = ""


@dataclass
class IntegerLiteral(Node):
    value: int = 0


@dataclass
class FloatLiteral(Node):
    value: float = 0.0


@dataclass
class StringLiteral(Node):
    value: str = ""


@dataclass
class InterpolatedString(Node):
    """A string with `{expr}` segments; parts are str or expression nodes."""
    parts: List[Any] = field(default_factory=list)


@dataclass
class BooleanLiteral(Node):
    value: bool = False


@dataclass
class NullLiteral(Node):
    pass


@dataclass
class RegexLiteral(Node):
    pattern: str = ""
    flags: str = ""


@dataclass
class DatetimeLiteral(Node):
    value: str = ""


@dataclass
class DurationLiteral(Node):
    value: str = ""


@dataclass
class PathLiteral(Node):
    value: str = ""


@dataclass
class UrlLiteral(Node):
    value: str = ""


@dataclass
class TemplateAtLiteral(Node):
    """`@(...)`: the rendered template decides which @-literal it becomes."""
    template: InterpolatedString = None


@dataclass
class MarkupLiteral(Node):
    """`<!DOCTYPE ...>`, `<?...?>` and CDATA sections, kept verbatim."""
    value: str = ""


# -----------------------------------------------------------------
# Compound expressions
# -----------------------------------------------------------------

@dataclass
class ArrayLiteral(Node):
    elements: List[Node] = field(default_factory=list)


@dataclass
class DictionaryLiteral(Node):
    """Pairs of (key expression, value expression). Plain keys are StringLiterals."""
    pairs: List[Tuple[Node, Node]] = field(default_factory=list)


@dataclass
class FunctionLiteral(Node):
    params: List[Node] = field(default_factory=list)
    body: BlockStatement = None
    name: Optional[str] = None


@dataclass
class CallExpression(Node):
    function: Node = None
    arguments: List[Node] = field(default_factory=list)


@dataclass
class IndexExpression(Node):
    left: Node = None
    index: Node = None


@dataclass
class SliceExpression(Node):
    left: Node = None
    start: Optional[Node] = None
    end: Optional[Node] = None


@dataclass
class DotExpression(Node):
    left: Node = None
    key: str = ""


@dataclass
class PrefixExpression(Node):
    operator: str = ""
    right: Node = None


@dataclass
class InfixExpression(Node):
    left: Node = None
    operator: str = ""
    right: Node = None


@dataclass
class IfExpression(Node):
    condition: Node = None
    consequence: Node = None
    alternative: Optional[Node] = None


@dataclass
class ForExpression(Node):
    """`for (x in seq) body`, `for (i, x in seq) body` and `for (seq) fn`.

    `key` is the index/key binding of the two-name form. In the mapping
    form `for (seq) fn` there is no variable and `body` is the function.
    """
    variable: Optional[Node] = None
    key: Optional['Identifier'] = None
    iterable: Node = None
    body: Node = None


@dataclass
class TagAttribute:
    name: str
    value: Optional[Node]  # None for a bare attribute
    spread: bool = False


@dataclass
class TagLiteral(Node):
    """Singleton, paired and fragment tags. Uppercase names call a component."""
    name: str = ""
    attributes: List[TagAttribute] = field(default_factory=list)
    contents: List[Node] = field(default_factory=list)
    singleton: bool = False

    @property
    def is_component(self) -> bool:
        return bool(self.name) and self.name[0].isupper()


# -----------------------------------------------------------------
# Destructuring patterns
# -----------------------------------------------------------------

@dataclass
class ArrayPattern(Node):
    """Positional names; the last one collects any remaining values."""
    elements: List[Node] = field(default_factory=list)


@dataclass
class DictPatternKey:
    key: str
    alias: Optional[str] = None
    nested: Optional[Node] = None


@dataclass
class DictPattern(Node):
    keys: List[DictPatternKey] = field(default_factory=list)
    rest: Optional[str] = None

    def names(self) -> List[str]:
        return [k.key for k in self.keys]
