"""
Module loading for `import(@./lib.pars)`.

A module is evaluated once per process, in a fresh environment whose parent
is the builtins scope, and its exported bindings (`let` and `export`) are
collected into a dictionary. Later imports of the same canonical path get
the same dictionary back.
"""
import logging
import os
import threading
from typing import Any, Callable, Dict, Optional, Set

from parsley.parsley_datatypes import Environment, ParsleyDict, new_error, is_error
from parsley.parsley_file import resolve_path
from parsley.parsley_security import canonical

log = logging.getLogger(__name__)


def read_file_source(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


class ModuleLoader:
    """Resolves, caches and evaluates imported modules.

    `read_source(path)` supplies module text and raises OSError when it
    cannot; tests substitute an in-memory provider.
    """

    def __init__(self, read_source: Optional[Callable[[str], str]] = None):
        self.read_source = read_source or read_file_source
        self.cache: Dict[str, ParsleyDict] = {}
        self.in_flight: Set[str] = set()
        self._lock = threading.RLock()

    def clear(self):
        with self._lock:
            self.cache.clear()
            self.in_flight.clear()

    def resolve(self, path: str, importing_file: Optional[str]) -> str:
        base = os.path.dirname(importing_file) if importing_file else None
        return canonical(resolve_path(path, base))

    def load(self, path: str, importing_file: Optional[str], evaluator) -> Any:
        """Returns the module's export dictionary, or an error value."""
        full = self.resolve(path, importing_file)
        with self._lock:
            if full in self.in_flight:
                log.debug("rejecting circular import of %s", full)
                return new_error("circular import: %s", full, kind="CircularImport")
            cached = self.cache.get(full)
            if cached is not None:
                log.debug("module cache hit: %s", full)
                return cached
            self.in_flight.add(full)
            try:
                module = self._load_uncached(full, evaluator)
            finally:
                self.in_flight.discard(full)
            if not is_error(module):
                self.cache[full] = module
            return module

    def _load_uncached(self, full: str, evaluator) -> Any:
        denied = evaluator.policy.check_access(full, "execute")
        if denied is not None:
            return denied
        try:
            source = self.read_source(full)
        except OSError as e:
            return new_error("failed to read module %s: %s", full, e.strerror or str(e), kind="ImportError")

        from parsley.parsley_parser import parse
        program, diagnostics = parse(source)
        if diagnostics:
            listing = "\n".join(f"  {d}" for d in diagnostics)
            return new_error("parse errors in module %s:\n%s", full, listing, kind="ParseError")

        log.debug("loading module %s", full)
        env = Environment(parent=evaluator.globals, filename=full)
        result = evaluator.eval(program, env)
        if is_error(result):
            if result.source is None:
                result.source = full
            return result

        exports = ParsleyDict()
        for name, value in env.exports():
            exports[name] = value
        return exports
