import pytest

from parsley.parsley_parser import parse
from parsley.parsley_ast import (
    ExpressionStatement, LetStatement, AssignmentStatement, ExportStatement, ReturnStatement,
    ReadStatement, WriteStatement, DeleteStatement, Identifier, IntegerLiteral, StringLiteral,
    InterpolatedString, InfixExpression, PrefixExpression, ArrayLiteral, DictionaryLiteral,
    FunctionLiteral, CallExpression, IndexExpression, SliceExpression, DotExpression,
    IfExpression, ForExpression, TagLiteral, ArrayPattern, DictPattern, RegexLiteral,
)


def parse_ok(src):
    program, diagnostics = parse(src)
    assert diagnostics == [], [str(d) for d in diagnostics]
    return program


def first_expr(src):
    stmt = parse_ok(src).statements[0]
    assert isinstance(stmt, ExpressionStatement)
    return stmt.expression


def test_operator_precedence():
    expr = first_expr("1 + 2 * 3")
    assert isinstance(expr, InfixExpression)
    assert expr.operator == "+"
    assert isinstance(expr.right, InfixExpression)
    assert expr.right.operator == "*"


def test_word_operators_are_canonicalised():
    expr = first_expr("a and b or not c")
    assert expr.operator == "|"
    assert expr.left.operator == "&"
    assert isinstance(expr.right, PrefixExpression)
    assert expr.right.operator == "!"


def test_concat_binds_tighter_than_sum():
    expr = first_expr("a + b ++ c")
    assert expr.operator == "+"
    assert expr.right.operator == "++"


def test_bare_comma_list_is_an_array():
    expr = first_expr("1, 2, 3")
    assert isinstance(expr, ArrayLiteral)
    assert [e.value for e in expr.elements] == [1, 2, 3]


def test_long_comma_list_does_not_recurse():
    src = ", ".join(str(i) for i in range(5000))
    expr = first_expr(src)
    assert len(expr.elements) == 5000


def test_nested_bracket_arrays():
    expr = first_expr("[[1, 2], [3, 4]]")
    assert len(expr.elements) == 2
    assert all(isinstance(e, ArrayLiteral) for e in expr.elements)


def test_let_and_assignment_statements():
    program = parse_ok("let x = 1\nx = 2")
    let, assign = program.statements
    assert isinstance(let, LetStatement)
    assert let.target.value == "x"
    assert isinstance(assign, AssignmentStatement)
    assert not assign.export


def test_let_with_array_and_dict_patterns():
    program = parse_ok("let a, b = 1, 2\nlet [c, d] = [3, 4]\nlet {e, f as g, ...rest} = h")
    s1, s2, s3 = program.statements
    assert isinstance(s1.target, ArrayPattern)
    assert [n.value for n in s1.target.elements] == ["a", "b"]
    assert isinstance(s2.target, ArrayPattern)
    assert isinstance(s3.target, DictPattern)
    assert s3.target.names() == ["e", "f"]
    assert s3.target.keys[1].alias == "g"
    assert s3.target.rest == "rest"


def test_statement_level_dict_pattern_assignment():
    stmt = parse_ok("{a, b} = d").statements[0]
    assert isinstance(stmt, AssignmentStatement)
    assert isinstance(stmt.target, DictPattern)


def test_statement_level_dictionary_is_not_a_pattern():
    expr = first_expr("{a: 1, b: 2}")
    assert isinstance(expr, DictionaryLiteral)
    assert [k.value for k, _ in expr.pairs] == ["a", "b"]


def test_export_forms():
    program = parse_ok("let x = 1\nexport y = 2\nexport x\nexport let z = 3")
    assert isinstance(program.statements[1], AssignmentStatement)
    assert program.statements[1].export
    assert isinstance(program.statements[2], ExportStatement)
    assert isinstance(program.statements[3], LetStatement)


def test_function_literal_takes_its_binding_name():
    stmt = parse_ok("let add = fn(a, b) { a + b }").statements[0]
    fn = stmt.value
    assert isinstance(fn, FunctionLiteral)
    assert fn.name == "add"
    assert [p.value for p in fn.params] == ["a", "b"]


def test_function_destructuring_params():
    fn = first_expr("fn({name, age}, [x, y]) { name }")
    assert isinstance(fn.params[0], DictPattern)
    assert isinstance(fn.params[1], ArrayPattern)


def test_call_index_slice_and_dot():
    expr = first_expr("f(1)[0].name")
    assert isinstance(expr, DotExpression)
    assert expr.key == "name"
    assert isinstance(expr.left, IndexExpression)
    assert isinstance(expr.left.left, CallExpression)
    sl = first_expr("xs[1:]")
    assert isinstance(sl, SliceExpression)
    assert sl.start.value == 1 and sl.end is None
    assert first_expr("xs[:]").start is None


def test_if_else_expression():
    expr = first_expr("if (x > 1) { 'big' } else { 'small' }")
    assert isinstance(expr, IfExpression)
    assert expr.alternative is not None


def test_if_branch_without_braces():
    expr = first_expr("if (ok) 1 else 2")
    assert isinstance(expr, IfExpression)


def test_for_forms():
    plain = first_expr("for (x in xs) { x }")
    assert isinstance(plain, ForExpression)
    assert plain.variable.value == "x" and plain.key is None
    indexed = first_expr("for (i, x in xs) { x }")
    assert indexed.key.value == "i"
    mapping = first_expr("for (xs) double")
    assert mapping.variable is None
    assert isinstance(mapping.body, Identifier)
    pattern = first_expr("for ({name} in people) { name }")
    assert isinstance(pattern.variable, DictPattern)


def test_return_and_delete():
    fn = first_expr("fn() { return 1 }")
    assert isinstance(fn.body.statements[0], ReturnStatement)
    stmt = parse_ok("delete d.key").statements[0]
    assert isinstance(stmt, DeleteStatement)


def test_read_and_write_statements():
    program = parse_ok("let data <== file(@./a.json)\n{data, error} <== f\nx ==> out\nx ==>> log")
    r1, r2, w1, w2 = program.statements
    assert isinstance(r1, ReadStatement) and r1.is_let
    assert isinstance(r2, ReadStatement) and isinstance(r2.target, DictPattern)
    assert isinstance(w1, WriteStatement) and not w1.append
    assert isinstance(w2, WriteStatement) and w2.append


def test_interpolated_string_parts():
    expr = first_expr('"Hello, {name}!"')
    assert isinstance(expr, InterpolatedString)
    assert expr.parts[0] == "Hello, "
    assert isinstance(expr.parts[1], Identifier)
    assert expr.parts[2] == "!"


def test_raw_string_does_not_interpolate():
    expr = first_expr("'a {b}'")
    assert isinstance(expr, StringLiteral)
    assert expr.value == "a {b}"


def test_regex_literal():
    expr = first_expr("/a+b/i")
    assert isinstance(expr, RegexLiteral)
    assert (expr.pattern, expr.flags) == ("a+b", "i")


def test_tag_literal_with_attributes_and_contents():
    expr = first_expr('<a href="/x" hidden data={n}>Go {name}</a>')
    assert isinstance(expr, TagLiteral)
    assert expr.name == "a"
    names = [a.name for a in expr.attributes]
    assert names == ["href", "hidden", "data"]
    assert expr.attributes[1].value is None
    assert isinstance(expr.contents[0], StringLiteral)
    assert isinstance(expr.contents[1], Identifier)


def test_component_tag_and_spread():
    expr = first_expr("<Card {...props} title='x'/>")
    assert expr.singleton and expr.is_component
    assert expr.attributes[0].spread


def test_nested_tags():
    expr = first_expr("<ul><li>a</li><li>b</li></ul>")
    assert [c.name for c in expr.contents] == ["li", "li"]


def test_mismatched_tags_are_diagnosed():
    _, diagnostics = parse("<div>x</span>")
    assert any("mismatched tags" in d.message for d in diagnostics)


def test_assignment_in_if_condition_is_rejected():
    _, diagnostics = parse("if (x = 1) { x }")
    assert diagnostics
    assert "assignment is not allowed inside if condition" in diagnostics[0].message


def test_multiple_errors_are_reported():
    _, diagnostics = parse("let = 1\nlet y = 2\nlet = 3")
    assert len(diagnostics) == 2
    assert diagnostics[0].line == 1
    assert diagnostics[1].line == 3


def test_diagnostic_string_has_position():
    _, diagnostics = parse("let x = )")
    assert str(diagnostics[0]).startswith("line 1, column 9:")


@pytest.mark.parametrize("src", ["let x = 1;", "let x = 1; let y = 2;", "f(1, 2,)"])
def test_semicolons_and_trailing_commas(src):
    parse_ok(src)


def test_deep_nesting_is_a_diagnostic():
    depth = 20000
    program, diagnostics = parse("(" * depth + "1" + ")" * depth)
    assert program.statements == []
    assert [d.message for d in diagnostics] == ["maximum nesting depth exceeded"]
