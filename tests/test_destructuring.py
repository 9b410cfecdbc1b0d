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


def test_array_patterns():
    assert_ok(run_pars("let [a, b] = [1, 2]\na + b"), 3)
    assert_ok(run_pars("let a, b = 1, 2\nb - a"), 1)


def test_last_name_collects_the_rest():
    assert_ok(run_pars("let a, b = [1, 2, 3]\nb"), [2, 3])


def test_missing_positions_are_null():
    assert_ok(run_pars("let [x, y] = [1]\ny == null"), True)


def test_dictionary_pattern():
    assert_ok(run_pars('let {name, age} = {name: "A", age: 3}\nage'), 3)
    assert_ok(run_pars("let {zz} = {a: 1}\nzz == null"), True)


def test_alias_and_rest():
    assert_ok(run_pars('let {name as n} = {name: "A"}\nn'), "A")
    assert_ok(run_pars("let {a, ...rest} = {a: 1, b: 2, c: 3}\nrest.keys()"), ["b", "c"])


def test_nested_pattern():
    assert_ok(run_pars("let {a: {b}} = {a: {b: 5}}\nb"), 5)
    assert_ok(run_pars("let {p: [x, y]} = {p: [1, 2]}\ny"), 2)


def test_dictionary_pattern_requires_a_dictionary():
    res = run_pars("let {a} = 5")
    assert_error(res, "dictionary destructuring requires a dictionary value, got INTEGER")


def test_statement_level_pattern_assignment():
    assert_ok(run_pars("let a = 0\n{a} = {a: 7}\na"), 7)


def test_function_parameter_patterns():
    src = 'let f = fn({name}, [x, y]) { name + x + y }\nf({name: "n"}, [1, 2])'
    assert_ok(run_pars(src), "n12")


def test_for_loop_pattern():
    src = 'for ({name} in [{name: "a"}, {name: "b"}]) { name }'
    assert_ok(run_pars(src), ["a", "b"])


def test_pattern_fields_are_evaluated_lazily_with_this():
    src = 'let {full} = {first: "A", full: this.first + "!"}\nfull'
    assert_ok(run_pars(src), "A!")
