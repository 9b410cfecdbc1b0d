"""
The Parsley standard library and the script runner.

`StdLib` holds the Python implementations of the builtins. Every method
decorated with `@builtin` is exposed to scripts under the camelCase form of
its name (`_sort_by` becomes `sortBy`). `ScriptRunner` owns an Evaluator,
its module loader and the builtins scope, and turns a source string into an
`ExecutionResult`.
"""
import datetime
import inspect
import logging
import math
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from parsley.parsley_datatypes import (
    Environment, ParsleyDict, ParsleyFunction, ParsleyCallable, Builtin,
    ParsleyError, new_error, is_error, type_name
)
from parsley.parsley_interpreter import Evaluator, DEFAULT_MAX_DEPTH
from parsley.parsley_modules import ModuleLoader
from parsley.parsley_parser import parse
from parsley import parsley_pseudotypes as pseudo
from parsley import parsley_methods as methods
from parsley import parsley_file

log = logging.getLogger(__name__)


def builtin(arity=None, env: bool = False):
    """Marks a StdLib method as a Parsley builtin."""
    def mark(func):
        func._parsley_arity = arity
        func._parsley_env = env
        return func
    return mark


def builtin_name(method_name: str) -> str:
    """`_sort_by` -> `sortBy`; names without underscores (`_JSON`) are kept."""
    head, *rest = method_name[1:].split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _base_dir(env: Optional[Environment]) -> Optional[str]:
    if env is None or not env.filename:
        return None
    return os.path.dirname(env.filename) or None


# ===================================================================
# 1. Standard Library
# ===================================================================

class StdLib:
    """Contains Python implementations for all Parsley builtins."""

    def __init__(self, evaluator: Evaluator):
        self.evaluator = evaluator

    def builtins(self) -> Dict[str, Builtin]:
        """Collects the decorated methods as named Builtin values."""
        table = {}
        for name, member in inspect.getmembers(self):
            if name.startswith('_') and not name.startswith('__') and hasattr(member, '_parsley_arity'):
                parsley_name = builtin_name(name)
                table[parsley_name] = Builtin(parsley_name, member, member._parsley_arity, member._parsley_env)
        return table

    def _emit(self, topic_or_topics, *message_parts):
        """Generates a side-effect event for the host application."""
        topics = topic_or_topics if isinstance(topic_or_topics, list) else [topic_or_topics]
        message = " ".join(map(str, message_parts))
        event = {"topics": topics, "message": message}
        if self.evaluator:
            self.evaluator.side_effects.append(event)
        return None

    def _template(self, value) -> str:
        return self.evaluator.printer.template(value)

    def _debug(self, value) -> str:
        return self.evaluator.printer.debug(value)

    # --- Modules ---
    @builtin(arity=1, env=True)
    def _import(self, target, *, env):
        return self.evaluator.import_module(target, env)

    # --- Strings ---
    @builtin(arity=1)
    def _len(self, value):
        if isinstance(value, (str, list)):
            return len(value)
        return new_error("argument to `len` not supported, got %s", type_name(value), kind="TypeError")

    @builtin(arity=1)
    def _to_upper(self, s):
        if not isinstance(s, str):
            return new_error("argument to `toUpper` must be a string, got %s", type_name(s), kind="TypeError")
        return s.upper()

    @builtin(arity=1)
    def _to_lower(self, s):
        if not isinstance(s, str):
            return new_error("argument to `toLower` must be a string, got %s", type_name(s), kind="TypeError")
        return s.lower()

    @builtin(arity=1)
    def _trim(self, s):
        if not isinstance(s, str):
            return new_error("argument to `trim` must be a string, got %s", type_name(s), kind="TypeError")
        return s.strip()

    @builtin(arity=2)
    def _split(self, s, separator):
        if not isinstance(s, str):
            return new_error("first argument to `split` must be a string, got %s", type_name(s), kind="TypeError")
        if isinstance(separator, str):
            return methods.split_string(s, separator)
        if pseudo.is_pseudo(separator, pseudo.REGEX):
            rx = self._compile(separator)
            return rx if is_error(rx) else rx.split(s)
        return new_error("second argument to `split` must be a string or regex, got %s",
                         type_name(separator), kind="TypeError")

    @builtin(arity=(1, 2))
    def _join(self, items, separator=""):
        if not isinstance(items, list):
            return new_error("first argument to `join` must be an array, got %s", type_name(items), kind="TypeError")
        if not isinstance(separator, str):
            return new_error("second argument to `join` must be a string, got %s", type_name(separator),
                             kind="TypeError")
        return separator.join(self._template(item) for item in items)

    @builtin(arity=3)
    def _replace(self, s, pattern, replacement):
        if not isinstance(s, str):
            return new_error("first argument to `replace` must be a string, got %s", type_name(s), kind="TypeError")
        if not isinstance(replacement, str):
            return new_error("third argument to `replace` must be a string, got %s", type_name(replacement),
                             kind="TypeError")
        if isinstance(pattern, str):
            return s.replace(pattern, replacement)
        if pseudo.is_pseudo(pattern, pseudo.REGEX):
            return pseudo.call_method(pattern, "replace", [s, replacement])
        return new_error("second argument to `replace` must be a string or regex, got %s",
                         type_name(pattern), kind="TypeError")

    def _compile(self, regex: ParsleyDict):
        try:
            return pseudo.compile_regex(regex.get("pattern") or "", regex.get("flags") or "")
        except Exception as e:
            return new_error("invalid regex: %s", e, kind="ValueError")

    # --- Conversion ---
    @builtin(arity=1)
    def _to_int(self, value):
        if _is_number(value):
            return int(value)
        if not isinstance(value, str):
            return new_error("argument to `toInt` must be a string, got %s", type_name(value), kind="TypeError")
        try:
            return int(value.strip())
        except ValueError:
            return new_error("cannot convert '%s' to integer", value, kind="ValueError")

    @builtin(arity=1)
    def _to_float(self, value):
        if _is_number(value):
            return float(value)
        if not isinstance(value, str):
            return new_error("argument to `toFloat` must be a string, got %s", type_name(value), kind="TypeError")
        try:
            return float(value.strip())
        except ValueError:
            return new_error("cannot convert '%s' to float", value, kind="ValueError")

    @builtin(arity=1)
    def _to_number(self, value):
        if _is_number(value):
            return value
        if not isinstance(value, str):
            return new_error("argument to `toNumber` must be a string, got %s", type_name(value), kind="TypeError")
        text = value.strip()
        try:
            return float(text) if "." in text or "e" in text.lower() else int(text)
        except ValueError:
            return new_error("cannot convert '%s' to number", value, kind="ValueError")

    @builtin()
    def _to_string(self, *args):
        return "".join(self._template(a) for a in args)

    @builtin()
    def _to_debug(self, *args):
        return ", ".join(self._debug(a) for a in args)

    @builtin(arity=1)
    def _type_of(self, value):
        if isinstance(value, ParsleyDict) and value.type_name:
            return value.type_name.upper()
        return type_name(value)

    @builtin(arity=1)
    def _error(self, message):
        return ParsleyError(self._template(message), kind="Error")

    # --- Logging ---
    def _log_text(self, args) -> str:
        if not args:
            return ""
        first = args[0]
        head = first if isinstance(first, str) else self._debug(first)
        if len(args) == 1:
            return head
        rest = ", ".join(self._debug(a) for a in args[1:])
        return f"{head} {rest}" if isinstance(first, str) else f"{head}, {rest}"

    @builtin()
    def _log(self, *args):
        self._emit("stdout", self._log_text(args))
        return None

    @builtin(env=True)
    def _log_line(self, *args, env):
        filename = env.filename if env is not None and env.filename else "<unknown>"
        token = self.evaluator.current_token
        line = token.line if token is not None else 0
        self._emit("stdout", f"{filename}:{line}: {self._log_text(args)}")
        return None

    # --- Arrays and dictionaries ---
    def _want_array(self, name, value, position="argument"):
        if isinstance(value, list):
            return None
        return new_error("%s to `%s` must be an array, got %s", position, name, type_name(value), kind="TypeError")

    def _want_dict(self, name, value, position="argument"):
        if isinstance(value, ParsleyDict):
            return None
        return new_error("%s to `%s` must be a dictionary, got %s", position, name, type_name(value),
                         kind="TypeError")

    @builtin(arity=1)
    def _sort(self, items):
        return self._want_array("sort", items) or methods.natural_sort(items)

    @builtin(arity=2, env=True)
    def _sort_by(self, items, fn, *, env):
        err = self._want_array("sortBy", items, "first argument")
        if err:
            return err
        if not isinstance(fn, ParsleyCallable):
            return new_error("second argument to `sortBy` must be a function, got %s", type_name(fn),
                             kind="TypeError")
        return methods.sort_by(self.evaluator, items, fn, env, self.evaluator.current_token)

    @builtin(arity=1)
    def _reverse(self, items):
        if isinstance(items, str):
            return items[::-1]
        return self._want_array("reverse", items) or list(reversed(items))

    @builtin(arity=1)
    def _keys(self, d):
        return self._want_dict("keys", d) or methods.dict_method(self.evaluator, d, "keys", [])

    @builtin(arity=1)
    def _values(self, d):
        return self._want_dict("values", d) or methods.dict_method(self.evaluator, d, "values", [])

    @builtin(arity=2)
    def _has(self, d, key):
        err = self._want_dict("has", d, "first argument")
        if err:
            return err
        if not isinstance(key, str):
            return new_error("second argument to `has` must be a string, got %s", type_name(key), kind="TypeError")
        return key in d

    @builtin(arity=1)
    def _to_array(self, d):
        """[[key, value], ...]; functions with parameters are skipped, zero-argument ones are called."""
        err = self._want_dict("toArray", d)
        if err:
            return err
        pairs = []
        for key in d:
            if key.startswith("__"):
                continue
            value = self.evaluator.field(d, key)
            if is_error(value):
                return value
            if isinstance(value, ParsleyFunction):
                if value.arity != 0:
                    continue
                value = self.evaluator.apply(value, [], None, self.evaluator.current_token)
                if is_error(value):
                    return value
            pairs.append([key, value])
        return pairs

    @builtin(arity=1)
    def _to_dict(self, pairs):
        err = self._want_array("toDict", pairs)
        if err:
            return err
        d = ParsleyDict()
        for pair in pairs:
            if not isinstance(pair, list) or len(pair) != 2:
                return new_error("`toDict` expects an array of [key, value] pairs, got %s", self._debug(pair),
                                 kind="TypeError")
            key, value = pair
            d[key if isinstance(key, str) else self._template(key)] = value
        return d

    @builtin(arity=(2, None), env=True)
    def _map(self, fn, *items, env):
        if not isinstance(fn, ParsleyCallable):
            return new_error("first argument to `map` must be a function, got %s", type_name(fn), kind="TypeError")
        sequence = items[0] if len(items) == 1 and isinstance(items[0], list) else list(items)
        return methods.map_array(self.evaluator, sequence, fn, env, self.evaluator.current_token)

    @builtin(arity=2, env=True)
    def _filter(self, fn, items, *, env):
        if not isinstance(fn, ParsleyCallable):
            return new_error("first argument to `filter` must be a function, got %s", type_name(fn),
                             kind="TypeError")
        err = self._want_array("filter", items, "second argument")
        return err or methods.filter_array(self.evaluator, items, fn, env, self.evaluator.current_token)

    @builtin(arity=(1, 3))
    def _range(self, *args):
        """range(end), range(start, end) or range(start, end, step); end is exclusive."""
        for a in args:
            if not _is_int(a):
                return new_error("arguments to `range` must be integers, got %s", type_name(a), kind="TypeError")
        if len(args) == 3 and args[2] == 0:
            return new_error("`range` step must not be zero", kind="ValueError")
        return list(range(*args))

    # --- Math ---
    def _float_fn(self, name, fn, x):
        if not _is_number(x):
            return new_error("argument to `%s` not supported, got %s", name, type_name(x), kind="TypeError")
        try:
            return fn(x)
        except ValueError:
            return math.nan

    @builtin(arity=1)
    def _sin(self, x): return self._float_fn("sin", math.sin, x)
    @builtin(arity=1)
    def _cos(self, x): return self._float_fn("cos", math.cos, x)
    @builtin(arity=1)
    def _tan(self, x): return self._float_fn("tan", math.tan, x)
    @builtin(arity=1)
    def _asin(self, x): return self._float_fn("asin", math.asin, x)
    @builtin(arity=1)
    def _acos(self, x): return self._float_fn("acos", math.acos, x)
    @builtin(arity=1)
    def _atan(self, x): return self._float_fn("atan", math.atan, x)
    @builtin(arity=1)
    def _sqrt(self, x): return self._float_fn("sqrt", math.sqrt, x)
    @builtin(arity=0)
    def _pi(self): return math.pi

    @builtin(arity=1)
    def _round(self, x):
        if _is_int(x):
            return x
        if not _is_number(x):
            return new_error("argument to `round` not supported, got %s", type_name(x), kind="TypeError")
        # Halves round away from zero.
        return int(math.copysign(math.floor(abs(x) + 0.5), x))

    @builtin(arity=1)
    def _floor(self, x):
        if not _is_number(x):
            return new_error("argument to `floor` not supported, got %s", type_name(x), kind="TypeError")
        return math.floor(x)

    @builtin(arity=1)
    def _ceil(self, x):
        if not _is_number(x):
            return new_error("argument to `ceil` not supported, got %s", type_name(x), kind="TypeError")
        return math.ceil(x)

    @builtin(arity=1)
    def _abs(self, x):
        if not _is_number(x):
            return new_error("argument to `abs` not supported, got %s", type_name(x), kind="TypeError")
        return abs(x)

    @builtin(arity=2)
    def _pow(self, base, exponent):
        if not _is_number(base):
            return new_error("first argument to `pow` not supported, got %s", type_name(base), kind="TypeError")
        if not _is_number(exponent):
            return new_error("second argument to `pow` not supported, got %s", type_name(exponent),
                             kind="TypeError")
        try:
            return math.pow(base, exponent)
        except (ValueError, OverflowError):
            return math.nan

    def _numbers(self, name, args):
        values = args[0] if len(args) == 1 and isinstance(args[0], list) else list(args)
        for v in values:
            if not _is_number(v):
                return new_error("arguments to `%s` must be numbers, got %s", name, type_name(v), kind="TypeError")
        return values

    @builtin(arity=(1, None))
    def _min(self, *args):
        values = self._numbers("min", args)
        if is_error(values):
            return values
        return min(values) if values else None

    @builtin(arity=(1, None))
    def _max(self, *args):
        values = self._numbers("max", args)
        if is_error(values):
            return values
        return max(values) if values else None

    @builtin(arity=(1, None))
    def _sum(self, *args):
        values = self._numbers("sum", args)
        if is_error(values):
            return values
        return sum(values)

    # --- Dates, durations, paths, urls, regexes ---
    @builtin(arity=0)
    def _now(self):
        return pseudo.datetime_to_dict(datetime.datetime.now(datetime.timezone.utc))

    @builtin(arity=(1, 2))
    def _time(self, value, delta=None):
        moment = pseudo.datetime_from_value(value)
        if is_error(moment):
            return moment
        if delta is not None:
            if not isinstance(delta, ParsleyDict):
                return new_error("second argument to `time` must be DICTIONARY, got %s", type_name(delta),
                                 kind="TypeError")
            moment = pseudo.apply_delta(moment, delta)
        return pseudo.datetime_to_dict(moment)

    @builtin(arity=1)
    def _duration(self, value):
        return pseudo.duration_from_value(value)

    @builtin(arity=1)
    def _path(self, text):
        if not isinstance(text, str):
            return new_error("argument to `path` must be a string, got %s", type_name(text), kind="TypeError")
        return pseudo.make_path(text)

    @builtin(arity=1)
    def _url(self, text):
        if not isinstance(text, str):
            return new_error("argument to `url` must be a string, got %s", type_name(text), kind="TypeError")
        try:
            return pseudo.parse_url(text)
        except ValueError as e:
            return new_error("invalid URL: %s", e, kind="ValueError")

    @builtin(arity=(1, 2))
    def _regex(self, pattern, flags=""):
        if not isinstance(pattern, str):
            return new_error("first argument to `regex` must be a string, got %s", type_name(pattern),
                             kind="TypeError")
        if not isinstance(flags, str):
            return new_error("second argument to `regex` must be a string, got %s", type_name(flags),
                             kind="TypeError")
        return pseudo.regex_to_dict(pattern, flags)

    # --- File handles ---
    def _handle(self, factory, fmt, target, options, env):
        return parsley_file.make_file_handle(target, fmt, options, _base_dir(env), factory=factory)

    @builtin(arity=(1, 2), env=True)
    def _file(self, target, options=None, *, env):
        return self._handle("file", None, target, options, env)

    @builtin(arity=(1, 2), env=True)
    def _JSON(self, target, options=None, *, env):
        return self._handle("JSON", "json", target, options, env)

    @builtin(arity=(1, 2), env=True)
    def _YAML(self, target, options=None, *, env):
        return self._handle("YAML", "yaml", target, options, env)

    @builtin(arity=(1, 2), env=True)
    def _CSV(self, target, options=None, *, env):
        return self._handle("CSV", "csv", target, options, env)

    @builtin(arity=(1, 2), env=True)
    def _lines(self, target, options=None, *, env):
        return self._handle("lines", "lines", target, options, env)

    @builtin(arity=(1, 2), env=True)
    def _text(self, target, options=None, *, env):
        return self._handle("text", "text", target, options, env)

    @builtin(arity=(1, 2), env=True)
    def _bytes(self, target, options=None, *, env):
        return self._handle("bytes", "bytes", target, options, env)

    @builtin(arity=1, env=True)
    def _dir(self, target, *, env):
        return parsley_file.make_dir_handle(target, _base_dir(env))


# ===================================================================
# 2. Script Execution
# ===================================================================

Token = Dict[str, Any]


@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error_token: Optional[Token] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_token and self.error_token.get('line') is not None:
            line = self.error_token.get('line')
            col = self.error_token.get('col')
            if not msg.startswith("Error on line "):
                col_info = f", col {col}" if col is not None else ""
                return f"Error on line {line}{col_info}: {msg}"
        return msg


class ScriptRunner:
    """Parses and executes Parsley source.

    Top-level bindings persist across `handle_script` calls on the same
    runner, which is what the REPL relies on.
    """

    def __init__(self, policy=None, read_source=None, max_depth: int = DEFAULT_MAX_DEPTH):
        self.loader = ModuleLoader(read_source)
        self.evaluator = Evaluator(policy=policy, max_depth=max_depth, loader=self.loader)
        self.source_dir: Optional[str] = None  # import base when no filename is known
        self.filename: Optional[str] = None

        self.root_scope = Environment()
        for name, fn in StdLib(self.evaluator).builtins().items():
            self.root_scope[name] = fn
        self.evaluator.globals = self.root_scope
        self.scope = Environment(parent=self.root_scope)

    def _script_filename(self) -> Optional[str]:
        if self.filename:
            return self.filename
        if self.source_dir:
            return os.path.join(self.source_dir, "<input>")
        return None

    def _format_parse_error(self, diagnostics, source: str) -> str:
        lines = [f"ParseError: {d}" for d in diagnostics]
        first = diagnostics[0]
        context = self._source_context(source, first.line, first.column)
        if context:
            lines.append(context)
        return "\n".join(lines)

    def _format_runtime_error(self, err: ParsleyError, source: str) -> str:
        msg = f"{err.kind}: {err.message}"
        if err.source and err.source != self.filename:
            # Raised inside an imported module; its source is not at hand.
            if err.line is not None:
                return f"{msg} (in {err.source}, line {err.line}, col {err.column})"
            return f"{msg} (in {err.source})"
        if err.line is not None:
            context = self._source_context(source, err.line, err.column)
            if context:
                msg = f"{msg}\n{context}"
        return msg

    def _source_context(self, source: str, line: int, col: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            ln = str(i).rjust(width)
            content = lines[i - 1]
            out.append(f"{prefix} {ln} | {content}")
            if i == line and col is not None:
                caret = " " * max(col - 1, 0)
                out.append(f"  {' ' * width} | {caret}^")
        return "\n".join(out)

    def _error_result(self, msg: str, token: Optional[Token]) -> ExecutionResult:
        self.evaluator.side_effects.append({'topics': ['stderr'], 'message': msg})
        return ExecutionResult(
            status='error',
            error_message=msg,
            error_token=token,
            side_effects=self.evaluator.side_effects
        )

    def handle_script(self, source_code: str) -> ExecutionResult:
        """The main entry point to execute a script."""
        self.evaluator.side_effects = []
        self.evaluator.call_stack.clear()
        self.evaluator.depth = 0
        self.scope.filename = self._script_filename()

        # 1. Parse
        program, diagnostics = parse(source_code)
        if diagnostics:
            log.debug("parse failed with %d diagnostics", len(diagnostics))
            first = diagnostics[0]
            msg = self._format_parse_error(diagnostics, source_code)
            return self._error_result(msg, {'line': first.line, 'col': first.column})

        # 2. Evaluate
        result = self.evaluator.eval(program, self.scope)
        if is_error(result):
            log.debug("script failed: %r", result)
            token = {'line': result.line, 'col': result.column} if result.line is not None else None
            return self._error_result(self._format_runtime_error(result, source_code), token)

        return ExecutionResult(
            status='success',
            value=result,
            side_effects=self.evaluator.side_effects
        )

    def render(self, value) -> str:
        """Template rendering of a result value, as the CLI prints it."""
        return self.evaluator.printer.template(value)
