"""
Defines the core data types for the Parsley language runtime.

Scalars and arrays are plain Python values (int, float, str, bool, None,
list). This module provides the classes for everything else the evaluator
works with: environments, lazily evaluated dictionaries, user functions,
native builtins, error values and the early-return control value.
"""

from typing import List, Dict, Any, Optional, Callable, Iterator, Tuple
import collections.abc


# =================================================================
# Errors as Values
# =================================================================

class ParsleyError:
    """A runtime error value.

    Errors never unwind the host stack. Evaluation rules check for them and
    hand them upward unchanged until a capture pattern or the top level
    consumes them.
    """
    __slots__ = ("kind", "message", "line", "column", "source")

    def __init__(self, message: str, kind: str = "Error", line: Optional[int] = None,
                 column: Optional[int] = None, source: Optional[str] = None):
        self.kind = kind
        self.message = message
        self.line = line
        self.column = column
        self.source = source

    def at(self, token) -> 'ParsleyError':
        """Attaches a position from a token if the error does not have one yet."""
        if self.line is None and token is not None:
            self.line = token.line
            self.column = token.column
        return self

    def inspect(self) -> str:
        if self.line is not None:
            return f"line {self.line}, column {self.column}: {self.message}"
        return self.message

    def __repr__(self) -> str:
        return f"ParsleyError({self.kind}: {self.inspect()})"

    def __eq__(self, other):
        if not isinstance(other, ParsleyError):
            return NotImplemented
        return self.kind == other.kind and self.message == other.message


def new_error(fmt: str, *args, kind: str = "Error", token=None) -> ParsleyError:
    """Builds an error value with an optional position taken from a token."""
    err = ParsleyError(fmt % args if args else fmt, kind=kind)
    if token is not None:
        err.at(token)
    return err


def is_error(obj: Any) -> bool:
    return isinstance(obj, ParsleyError)


class ReturnValue:
    """Control value produced by `return`; unwrapped at the call boundary."""
    __slots__ = ("value",)

    def __init__(self, value: Any):
        self.value = value

    def __repr__(self) -> str:
        return f"ReturnValue({self.value!r})"


def unwrap_return(x):
    return x.value if isinstance(x, ReturnValue) else x


# =================================================================
# Environments
# =================================================================

class Environment:
    """A lexical scope: identifier bindings plus a parent link.

    The outermost environment holds the builtins and has no parent. Each
    binding remembers whether it was introduced with an exporting form
    (`let` or `export`); the module loader reads that flag when it builds a
    module's export dictionary.
    """
    def __init__(self, parent: Optional['Environment'] = None, filename: Optional[str] = None):
        self.bindings: Dict[str, Any] = {}
        self.exported: set = set()
        self.parent = parent
        # Source file of the module this scope belongs to; inherited by children.
        self.filename = filename if filename is not None else (parent.filename if parent else None)

    def find_owner(self, key: str) -> Optional['Environment']:
        """Finds the environment in the chain that binds key."""
        env = self
        while env is not None:
            if key in env.bindings:
                return env
            env = env.parent
        return None

    def get(self, key: str, default: Any = None) -> Any:
        owner = self.find_owner(key)
        if owner is None:
            return default
        return owner.bindings[key]

    def __contains__(self, key: str) -> bool:
        return self.find_owner(key) is not None

    def __getitem__(self, key: str) -> Any:
        owner = self.find_owner(key)
        if owner is None:
            raise KeyError(key)
        return owner.bindings[key]

    def __setitem__(self, key: str, value: Any):
        self.bindings[key] = value

    def set_local(self, key: str, value: Any, export: bool = False):
        """Binds in this environment; `let` and `export` use this."""
        self.bindings[key] = value
        if export:
            self.exported.add(key)

    def update(self, key: str, value: Any):
        """Plain assignment: rebinds where the name lives, else binds locally."""
        owner = self.find_owner(key)
        if owner is None or owner.parent is None:
            # Never write through to the builtins scope.
            owner = self
        owner.bindings[key] = value

    def mark_exported(self, key: str) -> bool:
        if key not in self.bindings:
            return False
        self.exported.add(key)
        return True

    def exports(self) -> Iterator[Tuple[str, Any]]:
        for key, value in self.bindings.items():
            if key in self.exported:
                yield key, value

    def __repr__(self) -> str:
        keys = ', '.join(self.bindings.keys())
        parent_id = f", parent=#{id(self.parent)}" if self.parent else ""
        return f"<Environment bindings=[{keys}]{parent_id}>"


# =================================================================
# Dictionaries
# =================================================================

class _Pending:
    """An unevaluated dictionary field."""
    __slots__ = ("expr",)

    def __init__(self, expr):
        self.expr = expr


class _InProgress:
    __slots__ = ()

    def __repr__(self) -> str:
        return "<in progress>"


IN_PROGRESS = _InProgress()


class ParsleyDict(collections.abc.MutableMapping):
    """An insertion-ordered Parsley dictionary.

    Each entry holds either a value or a pending expression. Pending entries
    are forced by the evaluator with `this` bound to the dictionary and the
    result is memoised. While a field is being forced it holds IN_PROGRESS so
    that a field whose expression reads itself is reported instead of
    recursing forever.

    Dictionaries compare by identity.
    """
    def __init__(self, pairs: Optional[Dict[str, Any]] = None, env: Optional[Environment] = None):
        self._entries: Dict[str, Any] = {}
        self.env = env
        if pairs:
            for k, v in pairs.items():
                self._entries[k] = v

    @classmethod
    def lazy(cls, pending: List[Tuple[str, Any]], env: Environment) -> 'ParsleyDict':
        d = cls(env=env)
        for key, expr in pending:
            d._entries[key] = _Pending(expr)
        return d

    # --- raw entry access used by the evaluator ---
    def raw(self, key: str) -> Any:
        return self._entries[key]

    def is_pending(self, key: str) -> bool:
        return isinstance(self._entries.get(key), _Pending)

    def pending_expr(self, key: str):
        entry = self._entries.get(key)
        return entry.expr if isinstance(entry, _Pending) else None

    def is_in_progress(self, key: str) -> bool:
        return self._entries.get(key) is IN_PROGRESS

    def begin_force(self, key: str):
        self._entries[key] = IN_PROGRESS

    def set_pending(self, key: str, expr):
        self._entries[key] = _Pending(expr)

    def copy_entry(self, other: 'ParsleyDict', key: str):
        """Copies an entry, pending or not, from another dictionary."""
        self._entries[key] = other._entries[key]

    # --- MutableMapping ---
    def __getitem__(self, key: str) -> Any:
        entry = self._entries[key]
        if isinstance(entry, _Pending):
            raise LookupError(f"field {key!r} has not been evaluated")
        return entry

    def __setitem__(self, key: str, value: Any):
        self._entries[key] = value

    def __delitem__(self, key: str):
        del self._entries[key]

    def __iter__(self):
        return iter(list(self._entries.keys()))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key) -> bool:
        return key in self._entries

    def __hash__(self):
        return id(self)

    def __eq__(self, other):
        return self is other

    @property
    def type_name(self) -> Optional[str]:
        """The pseudo-type discriminator, if this dictionary carries one."""
        t = self._entries.get("__type")
        return t if isinstance(t, str) else None

    def __repr__(self) -> str:
        from parsley.parsley_printer import Printer
        return Printer().debug(self)


# =================================================================
# Callables
# =================================================================

class ParsleyCallable:
    """Base class for values that can be called from Parsley."""
    pass


class ParsleyFunction(ParsleyCallable):
    """A function defined in Parsley with `fn`.

    This is a closure, bundling the parameter list, the body block and the
    environment in which the function literal was evaluated.
    """
    def __init__(self, params: List[Any], body: Any, closure: Environment, name: Optional[str] = None):
        self.params = params
        self.body = body
        self.closure = closure
        self.name = name

    @property
    def arity(self) -> int:
        return len(self.params)

    def __repr__(self) -> str:
        from parsley.parsley_printer import Printer
        return Printer().debug(self)


class Builtin(ParsleyCallable):
    """A native function exposed to Parsley.

    `arity` is either an int, a (min, max) tuple with max None for variadic,
    or None for no checking. Builtins flagged `wants_env` receive the calling
    environment as the `env` keyword argument.
    """
    def __init__(self, name: str, fn: Callable, arity=None, wants_env: bool = False):
        self.name = name
        self.fn = fn
        self.arity = arity
        self.wants_env = wants_env

    def check_arity(self, n: int) -> Optional[ParsleyError]:
        if self.arity is None:
            return None
        if isinstance(self.arity, int):
            lo, hi = self.arity, self.arity
        else:
            lo, hi = self.arity
        if n < lo or (hi is not None and n > hi):
            if lo == hi:
                want = str(lo)
            elif hi is None:
                want = f"at least {lo}"
            else:
                want = f"{lo} to {hi}"
            return new_error("wrong number of arguments to `%s`. got=%d, want=%s",
                             self.name, n, want, kind="TypeError")
        return None

    def __repr__(self) -> str:
        return f"<builtin {self.name}>"


# =================================================================
# Type names
# =================================================================

def type_name(value: Any) -> str:
    """Returns the Parsley type name of a value, as shown in error messages."""
    match value:
        case None:
            return "NULL"
        case bool():
            return "BOOLEAN"
        case int():
            return "INTEGER"
        case float():
            return "FLOAT"
        case str():
            return "STRING"
        case list():
            return "ARRAY"
        case ParsleyDict():
            return "DICTIONARY"
        case ParsleyFunction():
            return "FUNCTION"
        case Builtin():
            return "BUILTIN"
        case ParsleyError():
            return "ERROR"
    return type(value).__name__.upper()
