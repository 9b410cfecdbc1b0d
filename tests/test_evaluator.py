import pytest

from parsley.parsley_runtime import ScriptRunner


def run_pars(src, **kwargs):
    """Helper to run a Parsley script and return the ExecutionResult."""
    runner = ScriptRunner(**kwargs)
    return runner.handle_script(src)


def assert_ok(res, expected=None):
    assert res.status == 'success', res.format_error()
    if expected is not None:
        assert res.value == expected


def assert_error(res, contains):
    assert res.status == 'error', f"expected an error, got {res.value!r}"
    assert contains in res.error_message


# --- Arithmetic and operators ---

@pytest.mark.parametrize("src, expected", [
    ("1 + 2 * 3", 7),
    ("(1 + 2) * 3", 9),
    ("7 / 2", 3),
    ("-7 / 2", -3),
    ("7 % 3", 1),
    ("-7 % 3", -1),
    ("7.0 / 2", 3.5),
    ("2 - 5", -3),
])
def test_arithmetic(src, expected):
    assert_ok(run_pars(src), expected)


def test_division_by_zero_is_an_error():
    assert_error(run_pars("1 / 0"), "division by zero")
    assert_error(run_pars("5 % 0"), "modulo by zero")


def test_string_operators():
    assert_ok(run_pars('"a" + 1'), "a1")
    assert_ok(run_pars('"ab" * 3'), "ababab")
    assert_ok(run_pars('"abc" < "abd"'), True)


def test_concat_operator():
    assert_ok(run_pars("[1, 2] ++ [3]"), [1, 2, 3])
    assert_ok(run_pars("1 ++ 2"), [1, 2])
    assert_ok(run_pars('"ab" ++ "cd"'), "abcd")


def test_range_operator_counts_both_ways():
    assert_ok(run_pars("1..3"), [1, 2, 3])
    assert_ok(run_pars("3..1"), [3, 2, 1])


def test_nullish_coalescing_also_catches_errors():
    assert_ok(run_pars("null ?? 5"), 5)
    assert_ok(run_pars("missing ?? 5"), 5)
    assert_ok(run_pars("0 ?? 5"), 0)


def test_logical_operators_short_circuit():
    assert_ok(run_pars("false and missing"), False)
    assert_ok(run_pars("true or missing"), True)
    assert_ok(run_pars("not 0"), True)
    assert_ok(run_pars('1 and "x"'), True)


def test_equality():
    assert_ok(run_pars("1 == 1.0"), True)
    assert_ok(run_pars('"1" == 1'), False)
    assert_ok(run_pars("[1, [2]] == [1, [2]]"), True)
    assert_ok(run_pars("{a: 1} == {a: 1}"), False)
    assert_ok(run_pars("let d = {a: 1}\nd == d"), True)
    assert_ok(run_pars("null == null"), True)


def test_comparison_type_mismatch():
    assert_error(run_pars('1 < "a"'), "type mismatch: INTEGER < STRING")


def test_array_set_operations_and_chunking():
    assert_ok(run_pars("[1, 2, 3] && [2, 3, 4]"), [2, 3])
    assert_ok(run_pars("[1, 2] || [2, 3]"), [1, 2, 3])
    assert_ok(run_pars("[1, 2, 3] - [2]"), [1, 3])
    assert_ok(run_pars("[1, 2, 3, 4, 5] / 2"), [[1, 2], [3, 4], [5]])


def test_regex_match_operators():
    assert_ok(run_pars(r'"abc123" ~ /(\d)(\d+)/'), ["123", "1", "23"])
    assert_ok(run_pars(r'"abc" ~ /\d/'), None)
    assert_ok(run_pars(r'"abc" !~ /\d/'), True)


# --- Bindings and scope ---

def test_let_returns_the_bound_value():
    assert_ok(run_pars("let x = 5"), 5)


def test_underscore_is_not_bound():
    assert_error(run_pars("let _ = 5\n_"), "identifier not found: _")


def test_undefined_identifier():
    res = run_pars("y")
    assert_error(res, "identifier not found: y")
    assert res.error_token == {'line': 1, 'col': 1}
    assert res.format_error().startswith("Error on line 1, col 1: NameError: identifier not found: y")


def test_assignment_rebinds_enclosing_variable():
    assert_ok(run_pars("let x = 1\nlet f = fn() { x = 2 }\nf()\nx"), 2)


def test_let_inside_function_shadows():
    assert_ok(run_pars("let x = 1\nlet f = fn() { let x = 2\n x }\nf()\nx"), 1)


def test_bindings_persist_across_runs():
    runner = ScriptRunner()
    assert_ok(runner.handle_script("let x = 41"))
    assert_ok(runner.handle_script("x + 1"), 42)


# --- Functions ---

def test_closures_capture_their_scope():
    src = "let make = fn(n) { fn(x) { x + n } }\nlet add2 = make(2)\nadd2(3)"
    assert_ok(run_pars(src), 5)


def test_recursion():
    src = "let fact = fn(n) { if (n <= 1) { 1 } else { n * fact(n - 1) } }\nfact(10)"
    assert_ok(run_pars(src), 3628800)


def test_runaway_recursion_is_an_error():
    res = run_pars("let f = fn(n) { f(n + 1) }\nf(0)", max_depth=50)
    assert_error(res, "maximum recursion depth exceeded")


def test_early_return():
    src = 'let f = fn(x) { if (x > 0) { return "pos" }\n "neg" }\n'
    assert_ok(run_pars(src + "f(1)"), "pos")
    assert_ok(run_pars(src + "f(-1)"), "neg")


def test_missing_arguments_are_null():
    assert_ok(run_pars("let f = fn(a, b) { b }\nf(1)"), None)


def test_calling_a_non_function():
    assert_error(run_pars("let x = 1\nx()"), "not a function: INTEGER")


def test_errors_propagate_out_of_calls():
    res = run_pars('let f = fn() { 1 / 0 }\nlet y = f()\n"unreachable"')
    assert_error(res, "division by zero")


# --- Control flow ---

def test_if_is_an_expression():
    assert_ok(run_pars('let x = if (2 > 1) "yes" else "no"\nx'), "yes")
    assert_ok(run_pars("if (false) { 1 }"), None)


def test_for_collects_non_null_results():
    assert_ok(run_pars("for (x in [1, 2, 3]) { x * 2 }"), [2, 4, 6])
    assert_ok(run_pars("for (x in [1, 2, 3, 4]) { if (x % 2 == 0) { x } }"), [2, 4])


def test_for_over_string_and_with_index():
    assert_ok(run_pars('for (c in "ab") { c ++ "!" }'), ["a!", "b!"])
    assert_ok(run_pars('for (i, c in ["a", "b"]) { i }'), [0, 1])


def test_for_over_dictionary():
    assert_ok(run_pars('for (k, v in {a: 1, b: 2}) { k + "=" + v }'), ["a=1", "b=2"])
    assert_error(run_pars("for (v in {a: 1}) { v }"), "requires exactly 2 parameters")


def test_for_with_function_form():
    assert_ok(run_pars("let double = fn(x) { x * 2 }\nlet xs = [1, 2]\nfor (xs) double"), [2, 4])


def test_return_inside_for_leaves_the_function():
    src = "let first = fn(xs) { for (x in xs) { if (x > 1) { return x } } }\nfirst([1, 5, 9])"
    assert_ok(run_pars(src), 5)


# --- Indexing ---

def test_indexing_and_slicing():
    assert_ok(run_pars("[1, 2, 3][-1]"), 3)
    assert_ok(run_pars('"hello"[1:3]'), "el")
    assert_ok(run_pars("[1, 2, 3][1:]"), [2, 3])
    assert_error(run_pars("[1][5]"), "index out of range: 5")


# --- Dictionaries ---

def test_dictionary_access():
    src = 'let d = {a: 1, b: {c: 2}}\n'
    assert_ok(run_pars(src + "d.b.c"), 2)
    assert_ok(run_pars(src + 'd["a"]'), 1)
    assert_ok(run_pars(src + 'd.zzz ?? "none"'), "none")


def test_dictionary_fields_see_this():
    src = 'let p = {first: "A", last: "B", full: this.first + " " + this.last}\np.full'
    assert_ok(run_pars(src), "A B")


def test_self_referencing_field_is_reported():
    assert_error(run_pars("let d = {a: this.a}\nd.a"), "circular reference evaluating dictionary field 'a'")


def test_member_and_index_assignment():
    assert_ok(run_pars("let d = {a: 1}\nd.a = 5\nd.a"), 5)
    assert_ok(run_pars("let xs = [1, 2]\nxs[0] = 9\nxs"), [9, 2])


def test_delete_removes_a_key():
    assert_ok(run_pars("let d = {a: 1, b: 2}\ndelete d.a\nd.keys()"), ["b"])


def test_dictionary_merge():
    assert_ok(run_pars("let d = {a: 1} ++ {b: 2}\nd.keys()"), ["a", "b"])


def test_dictionary_stored_function_is_callable():
    assert_ok(run_pars("let o = {greet: fn(n) { \"hi \" + n }}\no.greet(\"bob\")"), "hi bob")


# --- Strings and methods ---

def test_string_interpolation():
    assert_ok(run_pars('let name = "World"\n"Hello, {name}!"'), "Hello, World!")


def test_type_methods():
    assert_ok(run_pars('"abc".upper()'), "ABC")
    assert_ok(run_pars("[3, 1, 2].sort()"), [1, 2, 3])
    assert_ok(run_pars("[1, 2, 3].map(fn(x) { x * 10 })"), [10, 20, 30])
    assert_ok(run_pars("let n = 1234567\nn.format()"), "1,234,567")
    assert_ok(run_pars('["a", "b", "c"].format()'), "a, b, and c")
    assert_ok(run_pars('["a", "b", "c"].format("or")'), "a, b, or c")


def test_unknown_method():
    assert_error(run_pars('"x".nope()'), "unknown method 'nope' for string")


# --- Properties carried over from the language description ---

def test_bare_comma_list_equals_bracket_array():
    assert_ok(run_pars("let a = 1, 2, 3\nlet b = [1, 2, 3]\na == b"), True)
    assert_ok(run_pars("len([[1, 2], [3, 4]])"), 2)


def test_slices_clamp_and_copy():
    assert_ok(run_pars("[1, 2, 3][1:10]"), [2, 3])
    assert_ok(run_pars("let a = [1, 2]\nlet b = a[:]\nb[0] = 9\na[0]"), 1)


def test_closure_counter():
    src = "let make = fn() { let n = 0\n fn() { n = n + 1\n n } }\nlet c = make()\n[c(), c()]"
    assert_ok(run_pars(src), [1, 2])


def test_missing_dictionary_keys_bind_null():
    assert_ok(run_pars("let {a, b, c} = {b: 2}\n[a, b, c]"), [None, 2, None])


def test_error_capture_from_any_expression():
    src = 'let {data, error} <== 1 / 0\n[data ?? "x", error]'
    assert_ok(run_pars(src), ["x", "division by zero"])


def test_natural_sort():
    assert_ok(run_pars('sort(["z11", "z1", "z2"])'), ["z1", "z2", "z11"])


def test_deeply_nested_source_is_reported():
    depth = 20000
    res = run_pars("(" * depth + "1" + ")" * depth)
    assert_error(res, "maximum nesting depth exceeded")
    assert res.error_message.startswith("ParseError:")
