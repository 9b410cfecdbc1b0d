import pytest

from parsley.parsley_runtime import ScriptRunner
from parsley.parsley_security import SecurityPolicy


class MemorySources:
    """In-memory module provider that counts reads."""

    def __init__(self, files):
        self.files = files
        self.reads = []

    def __call__(self, path):
        self.reads.append(path)
        if path not in self.files:
            raise FileNotFoundError(2, "No such file or directory", path)
        return self.files[path]


LIB = (
    "let add = fn(a, b) { a + b }\n"
    "hidden = 1\n"
    "export shown = 2\n"
    "let shout = fn(s) { toUpper(s) }\n"
)


@pytest.fixture
def sources():
    return MemorySources({
        "/virtual/lib.pars": LIB,
        "/virtual/a.pars": "let b = import(@./b.pars)\nlet x = 1",
        "/virtual/b.pars": "let a = import(@./a.pars)\nlet y = 2",
        "/virtual/broken.pars": "let = 1",
        "/virtual/bad.pars": "let x = 1 / 0",
        "/virtual/sub/outer.pars": "let inner = import(@./inner.pars)\nlet value = inner.value",
        "/virtual/sub/inner.pars": "let value = 42",
        "/virtual/deep.pars": "(" * 20000 + "1" + ")" * 20000,
    })


def run_pars(src, sources, policy=None):
    """Helper to run a script as /virtual/main.pars against in-memory modules."""
    runner = ScriptRunner(policy=policy or SecurityPolicy.permissive(), read_source=sources)
    runner.filename = "/virtual/main.pars"
    return runner.handle_script(src)


def assert_ok(res, expected=None):
    assert res.status == 'success', res.format_error()
    if expected is not None:
        assert res.value == expected


def assert_error(res, contains):
    assert res.status == 'error', f"expected an error, got {res.value!r}"
    assert contains in res.error_message


def test_import_exposes_exported_bindings(sources):
    assert_ok(run_pars("let lib = import(@./lib.pars)\nlib.add(2, 3)", sources), 5)
    assert_ok(run_pars("let lib = import(@./lib.pars)\nlib.shown", sources), 2)


def test_plain_assignments_are_private(sources):
    assert_ok(run_pars("let lib = import(@./lib.pars)\nlib.hidden == null", sources), True)


def test_modules_see_builtins(sources):
    assert_ok(run_pars('let lib = import(@./lib.pars)\nlib.shout("hi")', sources), "HI")


def test_destructuring_an_import(sources):
    assert_ok(run_pars("let {add} = import(@./lib.pars)\nadd(1, 1)", sources), 2)


def test_import_accepts_a_string(sources):
    assert_ok(run_pars('let lib = import("./lib.pars")\nlib.shown', sources), 2)


def test_modules_are_cached(sources):
    src = "let a = import(@./lib.pars)\nlet b = import(@./lib.pars)\na == b"
    assert_ok(run_pars(src, sources), True)
    assert sources.reads.count("/virtual/lib.pars") == 1


def test_nested_imports_resolve_against_the_importing_file(sources):
    assert_ok(run_pars("import(@./sub/outer.pars).value", sources), 42)
    assert "/virtual/sub/inner.pars" in sources.reads


def test_circular_import_is_reported(sources):
    assert_error(run_pars("import(@./a.pars)", sources), "circular import")


def test_module_parse_errors(sources):
    assert_error(run_pars("import(@./broken.pars)", sources), "parse errors in module /virtual/broken.pars")


def test_deeply_nested_module_is_a_parse_error(sources):
    assert_error(run_pars("import(@./deep.pars)", sources), "maximum nesting depth exceeded")


def test_missing_module(sources):
    assert_error(run_pars("import(@./nope.pars)", sources), "failed to read module /virtual/nope.pars")


def test_runtime_error_names_the_module(sources):
    res = run_pars("import(@./bad.pars)", sources)
    assert_error(res, "division by zero")
    assert "(in /virtual/bad.pars, line 1" in res.error_message


def test_default_policy_denies_imports(sources):
    res = run_pars("import(@./lib.pars)", sources, policy=SecurityPolicy())
    assert_error(res, "script execution not allowed")
    assert sources.reads == []


def test_allow_listed_directory_permits_imports(sources):
    policy = SecurityPolicy(allow_execute=["/virtual"])
    assert_ok(run_pars("import(@./lib.pars).shown", sources, policy=policy), 2)


def test_import_rejects_other_values(sources):
    assert_error(run_pars("import(1)", sources), "import expects a path or string")
