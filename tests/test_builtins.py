import math

import pytest

from parsley.parsley_runtime import ScriptRunner, StdLib, builtin_name


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


def test_builtin_names_are_camel_case():
    assert builtin_name("_sort_by") == "sortBy"
    assert builtin_name("_to_upper") == "toUpper"
    assert builtin_name("_JSON") == "JSON"


def test_builtin_table():
    names = set(StdLib(None).builtins())
    for expected in ("len", "toUpper", "sortBy", "toArray", "JSON", "YAML", "CSV", "import", "logLine"):
        assert expected in names
    assert "emit" not in names and "template" not in names


@pytest.mark.parametrize("src, expected", [
    ('len("abc")', 3),
    ("len([1, 2])", 2),
    ('toUpper("a")', "A"),
    ('toLower("A")', "a"),
    ('trim("  x ")', "x"),
    ('split("a,b", ",")', ["a", "b"]),
    ('split("ab", "")', ["a", "b"]),
    ('join(["a", 1], "-")', "a-1"),
    ('join(["a", "b"])', "ab"),
    ('replace("aaa", "a", "b")', "bbb"),
    ('reverse("abc")', "cba"),
    ("reverse([1, 2])", [2, 1]),
])
def test_string_builtins(src, expected):
    assert_ok(run_pars(src), expected)


@pytest.mark.parametrize("src, expected", [
    ('toInt(" 42 ")', 42),
    ("toInt(3.9)", 3),
    ('toFloat("1.5")', 1.5),
    ('toNumber("7")', 7),
    ('toNumber("7.5")', 7.5),
    ('toString(1, "a", [2, 3], null)', "1a23"),
    ('toDebug("a", [1])', '"a", [1]'),
    ("toDebug({a: 1})", "{a: 1}"),
])
def test_conversions(src, expected):
    assert_ok(run_pars(src), expected)


def test_conversion_failures():
    assert_error(run_pars('toInt("x")'), "cannot convert 'x' to integer")
    assert_error(run_pars('toFloat("x")'), "cannot convert 'x' to float")
    assert_error(run_pars("toInt(null)"), "argument to `toInt` must be a string, got NULL")


@pytest.mark.parametrize("src, expected", [
    ("typeOf(1)", "INTEGER"),
    ("typeOf(1.5)", "FLOAT"),
    ('typeOf("")', "STRING"),
    ("typeOf(null)", "NULL"),
    ("typeOf(true)", "BOOLEAN"),
    ("typeOf([])", "ARRAY"),
    ("typeOf({a: 1})", "DICTIONARY"),
    ("typeOf(fn() { 1 })", "FUNCTION"),
    ("typeOf(len)", "BUILTIN"),
])
def test_type_of(src, expected):
    assert_ok(run_pars(src), expected)


def test_wrong_argument_count():
    assert_error(run_pars("len()"), "wrong number of arguments to `len`. got=0, want=1")
    assert_error(run_pars("range()"), "want=1 to 3")
    assert_error(run_pars("map(len)"), "want=at least 2")


def test_error_builtin_creates_an_error():
    res = run_pars('error("boom")')
    assert_error(res, "Error: boom")
    assert_ok(run_pars('error("boom") ?? "recovered"'), "recovered")


# --- Arrays and dictionaries ---

def test_sorting():
    assert_ok(run_pars('sort(["b10", "b9", "a"])'), ["a", "b9", "b10"])
    assert_ok(run_pars('sort([3, "a", 1])'), [1, 3, "a"])
    assert_ok(run_pars('sortBy(["ccc", "a", "bb"], fn(s) { len(s) })'), ["a", "bb", "ccc"])
    assert_ok(run_pars("sortBy([1, 3, 2], fn(a, b) { a > b })"), [3, 2, 1])
    assert_ok(run_pars("sortBy([1, 3, 2], fn(a, b) { b - a })"), [3, 2, 1])


def test_sort_by_rejects_bad_comparators():
    assert_error(run_pars('sortBy([1, 2], fn(a, b) { "x" })'), "must return a number or boolean")
    assert_error(run_pars("sortBy([1, 2], 5)"), "second argument to `sortBy` must be a function")


def test_map_and_filter():
    assert_ok(run_pars("map(fn(x) { x * 2 }, [1, 2])"), [2, 4])
    assert_ok(run_pars("map(fn(x) { x * 2 }, 1, 2, 3)"), [2, 4, 6])
    assert_ok(run_pars("map(fn(x) { if (x > 1) { x } }, [1, 2, 3])"), [2, 3])
    assert_ok(run_pars("filter(fn(x) { x % 2 }, [1, 2, 3])"), [1, 3])
    assert_error(run_pars("map(fn(a, b) { a }, [1])"), "must take exactly 1 parameter")


def test_dictionary_builtins():
    src = "let d = {a: 1, b: 2}\n"
    assert_ok(run_pars(src + "keys(d)"), ["a", "b"])
    assert_ok(run_pars(src + "values(d)"), [1, 2])
    assert_ok(run_pars(src + 'has(d, "a")'), True)
    assert_ok(run_pars(src + "toArray(d)"), [["a", 1], ["b", 2]])
    assert_ok(run_pars('let d = toDict([["x", 1], ["y", 2]])\nd.y'), 2)
    assert_error(run_pars("toDict([1])"), "expects an array of [key, value] pairs")


def test_to_array_calls_zero_argument_functions():
    src = "let d = {a: 1, twice: fn() { this.a * 2 }, add: fn(x) { x }}\ntoArray(d)"
    res = run_pars(src)
    assert_ok(res)
    assert [pair[0] for pair in res.value] == ["a", "twice"]


def test_range():
    assert_ok(run_pars("range(3)"), [0, 1, 2])
    assert_ok(run_pars("range(1, 4)"), [1, 2, 3])
    assert_ok(run_pars("range(10, 0, -5)"), [10, 5])
    assert_error(run_pars("range(1, 2, 0)"), "step must not be zero")


# --- Math ---

@pytest.mark.parametrize("src, expected", [
    ("round(2.5)", 3),
    ("round(-2.5)", -3),
    ("round(2.4)", 2),
    ("round(7)", 7),
    ("floor(2.7)", 2),
    ("ceil(2.1)", 3),
    ("abs(-3)", 3),
    ("pow(2, 10)", 1024.0),
    ("sqrt(16)", 4.0),
    ("min(3, 1, 2)", 1),
    ("max([3, 1, 2])", 3),
    ("sum([1, 2, 3])", 6),
    ("sum([])", 0),
])
def test_math(src, expected):
    assert_ok(run_pars(src), expected)


def test_math_domain_errors_are_nan():
    res = run_pars("sqrt(-1)")
    assert_ok(res)
    assert math.isnan(res.value)


def test_pi_and_trig():
    assert_ok(run_pars("pi()"), math.pi)
    assert_ok(run_pars("sin(0)"), 0.0)


def test_math_type_errors():
    assert_error(run_pars('abs("x")'), "argument to `abs` not supported, got STRING")
    assert_error(run_pars('sum([1, "x"])'), "arguments to `sum` must be numbers")


def test_min_of_nothing_is_null():
    assert_ok(run_pars("min([]) == null"), True)


# --- Logging ---

def test_log_emits_side_effects():
    res = run_pars('log("total:", 3, [1])\nlog(1, "a")')
    assert_ok(res)
    messages = [e["message"] for e in res.side_effects if e["topics"] == ["stdout"]]
    assert messages == ['total: 3, [1]', '1, "a"']


def test_log_line_includes_position():
    runner = ScriptRunner()
    runner.filename = "page.pars"
    res = runner.handle_script('let x = 1\nlogLine("here")')
    assert_ok(res)
    assert res.side_effects[-1]["message"] == "page.pars:2: here"


def test_log_line_without_a_file():
    res = run_pars('logLine("x")')
    assert res.side_effects[-1]["message"] == "<unknown>:1: x"
