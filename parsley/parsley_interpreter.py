"""
The core Parsley interpreter: a tree-walking Evaluator.

Runtime failures are ParsleyError values, never host exceptions. Every rule
that evaluates a sub-expression checks for an error and hands it upward
unchanged. `return` produces a ReturnValue that statement sequencing and
loops pass along untouched until a function call (or the top level)
unwraps it.
"""
import logging
import math
import os
import sys
from typing import Any, List, Optional, Callable

from parsley.parsley_ast import (
    Program, BlockStatement, ExpressionStatement, LetStatement,
    AssignmentStatement, ExportStatement, ReturnStatement, DeleteStatement,
    ReadStatement, WriteStatement, Identifier, IntegerLiteral, FloatLiteral,
    StringLiteral, InterpolatedString, BooleanLiteral, NullLiteral,
    RegexLiteral, DatetimeLiteral, DurationLiteral, PathLiteral, UrlLiteral,
    TemplateAtLiteral, MarkupLiteral, ArrayLiteral, DictionaryLiteral,
    FunctionLiteral, CallExpression, IndexExpression, SliceExpression,
    DotExpression, PrefixExpression, InfixExpression, IfExpression,
    ForExpression, TagLiteral, ArrayPattern, DictPattern,
)
from parsley.parsley_datatypes import (
    Environment, ParsleyDict, ParsleyFunction, ParsleyCallable, Builtin,
    ParsleyError, ReturnValue, new_error, is_error, unwrap_return, type_name
)
from parsley.parsley_printer import Printer
from parsley.parsley_security import SecurityPolicy
from parsley import parsley_pseudotypes as pseudo
from parsley import parsley_methods as methods
from parsley import parsley_file

log = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 256
# Each Parsley call costs a dozen or so Python frames.
_HOST_RECURSION_LIMIT = 10000


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _int_div(a: int, b: int) -> int:
    """Integer division truncating toward zero."""
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q


class Evaluator:
    """The Parsley execution engine."""

    def __init__(self, policy: Optional[SecurityPolicy] = None, max_depth: int = DEFAULT_MAX_DEPTH,
                 loader=None):
        self.policy = policy if policy is not None else SecurityPolicy()
        self.max_depth = max_depth
        self.loader = loader
        # Builtins scope; modules are evaluated in children of it.
        self.globals: Optional[Environment] = None
        self.side_effects: List[Any] = []
        self.depth = 0
        self.call_stack: List[str] = []
        self.current_node = None
        self.current_token = None
        self.printer = Printer(resolve=self.field)
        if sys.getrecursionlimit() < _HOST_RECURSION_LIMIT:
            sys.setrecursionlimit(_HOST_RECURSION_LIMIT)

    def _dbg(self, *parts):
        if os.environ.get("PARSLEY_DEBUG"):
            log.debug(" ".join(str(p) for p in parts))

    # =================================================================
    # Entry points
    # =================================================================

    def eval(self, node: Any, env: Environment) -> Any:
        """Public entry point for evaluation. Unwraps `return` control values."""
        try:
            result = self._eval(node, env)
        except RecursionError:
            self.depth = 0
            self.call_stack.clear()
            return new_error("maximum recursion depth exceeded (%d)", self.max_depth,
                             kind="RecursionError", token=getattr(self.current_node, "token", None))
        return unwrap_return(result)

    def _eval(self, node: Any, env: Environment) -> Any:
        """Recursive dispatcher for evaluating any AST node."""
        self.current_node = node
        match node:
            case Program() | BlockStatement():
                return self._eval_statements(node.statements, env)
            case ExpressionStatement():
                return self._eval(node.expression, env)
            case LetStatement():
                return self._eval_binding(node.target, node.value, env, declare=True, export=True)
            case AssignmentStatement():
                return self._eval_binding(node.target, node.value, env, declare=node.export,
                                          export=node.export)
            case ExportStatement():
                if not env.mark_exported(node.name.value):
                    return new_error("identifier not found: %s", node.name.value, kind="NameError",
                                     token=node.token)
                return None
            case ReturnStatement():
                value = self._eval(node.value, env) if node.value is not None else None
                if is_error(value):
                    return value
                return ReturnValue(value)
            case DeleteStatement():
                return self._eval_delete(node, env)
            case ReadStatement():
                return self._eval_read(node, env)
            case WriteStatement():
                return self._eval_write(node, env)

            case Identifier():
                owner = env.find_owner(node.value)
                if owner is None:
                    return new_error("identifier not found: %s", node.value, kind="NameError",
                                     token=node.token)
                return owner.bindings[node.value]
            case IntegerLiteral() | FloatLiteral() | StringLiteral() | BooleanLiteral() | MarkupLiteral():
                return node.value
            case NullLiteral():
                return None
            case InterpolatedString():
                return self._eval_interpolation(node, env)
            case RegexLiteral():
                return pseudo.regex_to_dict(node.pattern, node.flags, node.token)
            case DatetimeLiteral():
                return pseudo.datetime_literal(node.value, node.token)
            case DurationLiteral():
                return pseudo.duration_literal(node.value, node.token)
            case PathLiteral():
                return pseudo.make_path(node.value)
            case UrlLiteral():
                return pseudo.url_literal(node.value, node.token)
            case TemplateAtLiteral():
                text = self._eval(node.template, env)
                if is_error(text):
                    return text
                return pseudo.at_literal(text, node.token)

            case ArrayLiteral():
                elements = []
                for expr in node.elements:
                    value = self._eval(expr, env)
                    if is_error(value):
                        return value
                    elements.append(value)
                return elements
            case DictionaryLiteral():
                return self._eval_dictionary(node, env)
            case FunctionLiteral():
                return ParsleyFunction(node.params, node.body, env, node.name)

            case CallExpression():
                return self._eval_call(node, env)
            case DotExpression():
                obj = self._eval(node.left, env)
                if is_error(obj):
                    return obj
                return self.get_member(obj, node.key, node.token)
            case IndexExpression():
                return self._eval_index(node, env)
            case SliceExpression():
                return self._eval_slice(node, env)
            case PrefixExpression():
                return self._eval_prefix(node, env)
            case InfixExpression():
                return self._eval_infix(node, env)
            case IfExpression():
                condition = self._eval(node.condition, env)
                if is_error(condition):
                    return condition
                if self.is_truthy(condition):
                    return self._eval(node.consequence, env)
                if node.alternative is not None:
                    return self._eval(node.alternative, env)
                return None
            case ForExpression():
                return self._eval_for(node, env)
            case TagLiteral():
                return self._eval_tag(node, env)
        return new_error("cannot evaluate %s", type(node).__name__, token=getattr(node, "token", None))

    def _eval_statements(self, statements, env: Environment) -> Any:
        result = None
        for stmt in statements:
            result = self._eval(stmt, env)
            if isinstance(result, (ReturnValue, ParsleyError)):
                return result
        return result

    # =================================================================
    # Values
    # =================================================================

    def is_truthy(self, value: Any) -> bool:
        if value is None or value is False:
            return False
        if value is True:
            return True
        if _is_number(value):
            return value != 0
        if isinstance(value, (str, list, ParsleyDict)):
            return len(value) > 0
        if isinstance(value, ParsleyError):
            return False
        return True

    def field(self, d: ParsleyDict, key: str) -> Any:
        """Reads a dictionary entry, forcing and memoising a pending one."""
        if key not in d:
            return None
        if d.is_in_progress(key):
            return new_error("circular reference evaluating dictionary field '%s'", key, kind="CycleError")
        expr = d.pending_expr(key)
        if expr is None:
            return d.raw(key)
        d.begin_force(key)
        scope = Environment(parent=d.env)
        scope["this"] = d
        value = unwrap_return(self._eval(expr, scope))
        if is_error(value):
            d.set_pending(key, expr)
            return value
        d[key] = value
        return value

    def force_all(self, d: ParsleyDict) -> Optional[ParsleyError]:
        for key in d:
            if d.is_pending(key) or d.is_in_progress(key):
                value = self.field(d, key)
                if is_error(value):
                    return value
        return None

    def force_args(self, args: List[Any]) -> Optional[ParsleyError]:
        """Forces dictionary arguments so native code can read them with plain `.get`."""
        for arg in args:
            if isinstance(arg, ParsleyDict):
                err = self.force_all(arg)
                if err is not None:
                    return err
        return None

    def _forced_copy(self, d: ParsleyDict, keep: Optional[Callable[[str], bool]] = None):
        out = ParsleyDict()
        for key in d:
            if keep is not None and not keep(key):
                continue
            value = self.field(d, key)
            if is_error(value):
                return value
            out[key] = value
        return out

    def _eval_interpolation(self, node: InterpolatedString, env: Environment) -> Any:
        parts = []
        for part in node.parts:
            if isinstance(part, str):
                parts.append(part)
                continue
            value = self._eval(part, env)
            if is_error(value):
                return value
            parts.append(self.printer.template(value))
        return "".join(parts)

    def _eval_dictionary(self, node: DictionaryLiteral, env: Environment) -> Any:
        pending = []
        for key_node, value_node in node.pairs:
            if isinstance(key_node, StringLiteral):
                key = key_node.value
            else:
                key = self._eval(key_node, env)
                if is_error(key):
                    return key
                if not isinstance(key, str):
                    key = self.printer.template(key)
            pending.append((key, value_node))
        return ParsleyDict.lazy(pending, env)

    # =================================================================
    # Calls
    # =================================================================

    def _eval_arguments(self, nodes, env: Environment):
        args = []
        for expr in nodes:
            value = self._eval(expr, env)
            if is_error(value):
                return value
            args.append(value)
        return args

    def _eval_call(self, node: CallExpression, env: Environment) -> Any:
        if isinstance(node.function, DotExpression):
            receiver = self._eval(node.function.left, env)
            if is_error(receiver):
                return receiver
            args = self._eval_arguments(node.arguments, env)
            if is_error(args):
                return args
            self.current_token = node.token
            return self.call_method(receiver, node.function.key, args, env, node.token)

        fn = self._eval(node.function, env)
        if is_error(fn):
            return fn
        args = self._eval_arguments(node.arguments, env)
        if is_error(args):
            return args
        self.current_token = node.token
        return self.apply(fn, args, env, node.token)

    def apply(self, fn: Any, args: List[Any], env: Optional[Environment] = None, token=None) -> Any:
        """Calls a Parsley function or builtin with evaluated arguments."""
        match fn:
            case ParsleyFunction():
                if self.depth >= self.max_depth:
                    return new_error("maximum recursion depth exceeded (%d)", self.max_depth,
                                     kind="RecursionError", token=token)
                call_env = Environment(parent=fn.closure)
                for i, param in enumerate(fn.params):
                    value = args[i] if i < len(args) else None
                    err = self.bind_pattern(param, value, call_env.set_local)
                    if err is not None:
                        return err.at(token)
                self.depth += 1
                self.call_stack.append(fn.name or "<anonymous>")
                try:
                    result = self._eval(fn.body, call_env)
                finally:
                    self.depth -= 1
                    self.call_stack.pop()
                result = unwrap_return(result)
                if is_error(result):
                    return result.at(token)
                return result
            case Builtin():
                err = fn.check_arity(len(args))
                if err is not None:
                    return err.at(token)
                err = self.force_args(args)
                if err is not None:
                    return err.at(token)
                kwargs = {"env": env} if fn.wants_env else {}
                self._dbg("builtin", fn.name, "argc", len(args))
                try:
                    result = fn.fn(*args, **kwargs)
                except RecursionError:
                    raise
                except Exception as e:
                    log.debug("builtin %s raised", fn.name, exc_info=True)
                    return new_error("%s: %s", fn.name, e, kind="InternalError", token=token)
                if is_error(result):
                    return result.at(token)
                return result
        return new_error("not a function: %s", type_name(fn), kind="TypeError", token=token)

    def call_method(self, receiver: Any, name: str, args: List[Any], env: Environment, token=None) -> Any:
        """`receiver.name(args)`: type methods first, then functions stored in dictionaries."""
        result = pseudo.MISSING
        match receiver:
            case str():
                result = methods.string_method(receiver, name, args)
            case list():
                result = methods.array_method(self, receiver, name, args, env, token)
            case bool():
                pass
            case int() | float():
                result = methods.number_method(receiver, name, args)
            case ParsleyDict():
                return self._call_dict_method(receiver, name, args, env, token)
            case None:
                return new_error("cannot call method '%s' on null", name, kind="TypeError", token=token)
        if result is pseudo.MISSING:
            return new_error("unknown method '%s' for %s", name, type_name(receiver).lower(),
                             kind="TypeError", token=token)
        if is_error(result):
            return result.at(token)
        return result

    def _call_dict_method(self, d: ParsleyDict, name: str, args: List[Any], env: Environment, token):
        kind = d.type_name
        if kind:
            err = self.force_all(d)
            if err is not None:
                return err
            err = self.force_args(args)
            if err is not None:
                return err.at(token)
            result = self._guard_pseudo(pseudo.call_method, d, name, args, self.policy)
            if result is not pseudo.MISSING:
                return result.at(token) if is_error(result) else result
        if name in d:
            fn = self.field(d, name)
            if is_error(fn):
                return fn
            if not isinstance(fn, ParsleyCallable):
                return new_error("'%s' is not a function, got %s", name, type_name(fn),
                                 kind="TypeError", token=token)
            return self.apply(fn, args, env, token)
        result = methods.dict_method(self, d, name, args)
        if result is pseudo.MISSING:
            return new_error("unknown method '%s' for %s", name, kind or "dictionary",
                             kind="TypeError", token=token)
        return result.at(token) if is_error(result) else result

    def _guard_pseudo(self, fn, *args):
        """Runs a pseudo-type helper, turning malformed-field exceptions into error values."""
        try:
            return fn(*args)
        except (KeyError, TypeError, ValueError) as e:
            return new_error("invalid %s: %s", args[0].type_name if isinstance(args[0], ParsleyDict) else "value",
                             e, kind="ValueError")

    def import_module(self, target: Any, env: Environment) -> Any:
        path = pseudo.path_string_of(target) if not isinstance(target, str) else target
        if path is None:
            return new_error("import expects a path or string, got %s", type_name(target), kind="TypeError")
        if self.loader is None:
            from parsley.parsley_modules import ModuleLoader
            self.loader = ModuleLoader()
        return self.loader.load(path, env.filename if env is not None else None, self)

    # =================================================================
    # Member access
    # =================================================================

    def get_member(self, obj: Any, key: str, token=None) -> Any:
        """Dot access and string indexing on dictionaries are the same operation."""
        if not isinstance(obj, ParsleyDict):
            return new_error("dot notation can only be used on dictionaries, got %s", type_name(obj),
                             kind="TypeError", token=token)
        if obj.type_name:
            err = self.force_all(obj)
            if err is not None:
                return err
            value = self._guard_pseudo(pseudo.get_property, obj, key, self.policy)
            if value is not pseudo.MISSING:
                return value.at(token) if is_error(value) else value
        value = self.field(obj, key)
        return value.at(token) if is_error(value) else value

    def _eval_index(self, node: IndexExpression, env: Environment) -> Any:
        left = self._eval(node.left, env)
        if is_error(left):
            return left
        index = self._eval(node.index, env)
        if is_error(index):
            return index
        if isinstance(left, ParsleyDict) and isinstance(index, str):
            return self.get_member(left, index, node.token)
        if isinstance(left, (list, str)) and _is_int(index):
            i = index + len(left) if index < 0 else index
            if i < 0 or i >= len(left):
                return new_error("index out of range: %d", index, kind="IndexError", token=node.token)
            return left[i]
        return new_error("index operator not supported: %s[%s]", type_name(left), type_name(index),
                         kind="TypeError", token=node.token)

    def _eval_slice(self, node: SliceExpression, env: Environment) -> Any:
        left = self._eval(node.left, env)
        if is_error(left):
            return left
        if not isinstance(left, (list, str)):
            return new_error("slice operator not supported: %s", type_name(left), kind="TypeError",
                             token=node.token)
        bounds = []
        for bound, label in ((node.start, "start"), (node.end, "end")):
            if bound is None:
                bounds.append(None)
                continue
            value = self._eval(bound, env)
            if is_error(value):
                return value
            if value is not None and not _is_int(value):
                return new_error("slice %s index must be an integer, got %s", label, type_name(value),
                                 kind="TypeError", token=node.token)
            bounds.append(value)
        # Python slices already clamp and count negatives from the end.
        return left[bounds[0]:bounds[1]]

    # =================================================================
    # Bindings
    # =================================================================

    def _eval_binding(self, target, value_node, env: Environment, declare: bool, export: bool) -> Any:
        value = self._eval(value_node, env)
        if is_error(value):
            return value
        if isinstance(target, DotExpression):
            obj = self._eval(target.left, env)
            if is_error(obj):
                return obj
            err = self._assign_member(obj, target.key, value, target.token)
            return err if err is not None else value
        if isinstance(target, IndexExpression):
            err = self._eval_index_assignment(target, value, env)
            return err if err is not None else value
        err = self.bind_pattern(target, value, self._binder(env, declare, export))
        if err is not None:
            return err.at(target.token)
        return value

    def _binder(self, env: Environment, declare: bool, export: bool):
        if declare:
            return lambda name, value: env.set_local(name, value, export=export)
        return env.update

    def _assign_member(self, obj, key: str, value, token):
        if not isinstance(obj, ParsleyDict):
            return new_error("cannot assign property '%s' on %s", key, type_name(obj), kind="TypeError",
                             token=token)
        obj[key] = value
        return None

    def _eval_index_assignment(self, target: IndexExpression, value, env: Environment):
        obj = self._eval(target.left, env)
        if is_error(obj):
            return obj
        index = self._eval(target.index, env)
        if is_error(index):
            return index
        if isinstance(obj, ParsleyDict) and isinstance(index, str):
            return self._assign_member(obj, index, value, target.token)
        if isinstance(obj, list) and _is_int(index):
            i = index + len(obj) if index < 0 else index
            if i < 0 or i >= len(obj):
                return new_error("index out of range: %d", index, kind="IndexError", token=target.token)
            obj[i] = value
            return None
        return new_error("index assignment not supported: %s[%s]", type_name(obj), type_name(index),
                         kind="TypeError", token=target.token)

    def bind_pattern(self, pattern, value, bind: Callable[[str, Any], None]) -> Optional[ParsleyError]:
        """Binds a name or destructuring pattern, calling bind(name, value) per name."""
        match pattern:
            case Identifier():
                if pattern.value != "_":
                    bind(pattern.value, value)
                return None
            case ArrayPattern():
                items = value if isinstance(value, list) else [value]
                names = pattern.elements
                for i, element in enumerate(names):
                    if i == len(names) - 1 and len(items) > len(names):
                        part = items[i:]
                    else:
                        part = items[i] if i < len(items) else None
                    err = self.bind_pattern(element, part, bind)
                    if err is not None:
                        return err
                return None
            case DictPattern():
                if not isinstance(value, ParsleyDict):
                    return new_error("dictionary destructuring requires a dictionary value, got %s",
                                     type_name(value), kind="TypeError")
                for key in pattern.keys:
                    item = self.field(value, key.key)
                    if is_error(item):
                        return item
                    if key.nested is not None:
                        err = self.bind_pattern(key.nested, item, bind)
                        if err is not None:
                            return err
                    else:
                        bind(key.alias or key.key, item)
                if pattern.rest is not None:
                    named = set(pattern.names())
                    rest = self._forced_copy(value, lambda k: k not in named and not k.startswith("__"))
                    if is_error(rest):
                        return rest
                    bind(pattern.rest, rest)
                return None
        return new_error("invalid binding target", kind="TypeError")

    def _eval_delete(self, node: DeleteStatement, env: Environment) -> Any:
        target = node.target
        obj = self._eval(target.left, env)
        if is_error(obj):
            return obj
        if isinstance(target, DotExpression):
            key = target.key
        else:
            key = self._eval(target.index, env)
            if is_error(key):
                return key
        if not isinstance(obj, ParsleyDict) or not isinstance(key, str):
            return new_error("delete requires a dictionary key, got %s[%s]", type_name(obj), type_name(key),
                             kind="TypeError", token=node.token)
        if key in obj:
            del obj[key]
        return None

    # =================================================================
    # Read, write and error capture
    # =================================================================

    def _eval_read(self, node: ReadStatement, env: Environment) -> Any:
        source = self._eval(node.source, env)
        capture = isinstance(node.target, DictPattern) and "error" in node.target.names()
        is_handle = pseudo.is_pseudo(source, parsley_file.FILE) or pseudo.is_pseudo(source, parsley_file.DIR)
        if not is_error(source) and (is_handle or not capture):
            source = parsley_file.read_handle(source, self.policy)
        if capture:
            wrapped = ParsleyDict()
            if is_error(source):
                self._dbg("captured error", source.kind, source.message)
                wrapped["data"] = None
                wrapped["error"] = source.message
            else:
                wrapped["data"] = source
                wrapped["error"] = None
            source = wrapped
        if is_error(source):
            return source.at(node.token)
        bind = self._binder(env, declare=node.is_let, export=node.is_let)
        err = self.bind_pattern(node.target, source, bind)
        if err is not None:
            return err.at(node.token)
        return None

    def _eval_write(self, node: WriteStatement, env: Environment) -> Any:
        value = self._eval(node.value, env)
        if is_error(value):
            return value
        handle = self._eval(node.handle, env)
        if is_error(handle):
            return handle
        err = parsley_file.write_handle(handle, value, node.append, self.policy,
                                        template=self.printer.template, field=self.field,
                                        render=pseudo.to_string)
        if err is not None:
            return err.at(node.token)
        return None

    # =================================================================
    # Operators
    # =================================================================

    def _eval_prefix(self, node: PrefixExpression, env: Environment) -> Any:
        right = self._eval(node.right, env)
        if is_error(right):
            return right
        if node.operator == "!":
            return not self.is_truthy(right)
        if node.operator == "-":
            if _is_number(right):
                return -right
            if pseudo.is_pseudo(right, pseudo.DURATION):
                months, seconds = pseudo.duration_components(right)
                return pseudo.duration_to_dict(-months, -seconds)
        return new_error("unknown operator: %s%s", node.operator, type_name(right), kind="TypeError",
                         token=node.token)

    def _eval_infix(self, node: InfixExpression, env: Environment) -> Any:
        op = node.operator
        left = self._eval(node.left, env)
        if op == "??":
            if left is None or is_error(left):
                return self._eval(node.right, env)
            return left
        if is_error(left):
            return left
        if op == "&" and not self.is_truthy(left):
            return False
        if op == "|" and self.is_truthy(left):
            return True
        right = self._eval(node.right, env)
        if is_error(right):
            return right
        if op in ("&", "|"):
            return self.is_truthy(right)
        result = self.infix(op, left, right)
        if is_error(result):
            return result.at(node.token)
        return result

    def infix(self, op: str, left: Any, right: Any) -> Any:
        """Applies a binary operator to two evaluated operands."""
        if op == "++":
            return self._concat(left, right)
        if pseudo.is_pseudo(left) or pseudo.is_pseudo(right):
            for side in (left, right):
                if isinstance(side, ParsleyDict):
                    err = self.force_all(side)
                    if err is not None:
                        return err
            result = self._guard_pseudo(pseudo.infix, op, left, right)
            if result is not NotImplemented:
                return result
        if op == "+" and (isinstance(left, str) or isinstance(right, str)):
            return self.printer.template(left) + self.printer.template(right)
        if op in ("~", "!~"):
            return self._match(op, left, right)
        if _is_number(left) and _is_number(right):
            return self._numeric_infix(op, left, right)
        if isinstance(left, str) and isinstance(right, str):
            return self._string_infix(op, left, right)
        if isinstance(left, (str, list)) and op == "*" and _is_int(right):
            return left * max(right, 0)
        if isinstance(left, list) and isinstance(right, list) and op in ("&&", "||", "-"):
            return self._set_operation(op, left, right)
        if isinstance(left, list) and op == "/" and _is_int(right):
            if right <= 0:
                return new_error("chunk size must be a positive integer, got %d", right, kind="ValueError")
            return [left[i:i + right] for i in range(0, len(left), right)]
        if isinstance(left, ParsleyDict) and isinstance(right, ParsleyDict) and op in ("&&", "-"):
            if op == "&&":
                return self._forced_copy(left, lambda k: k in right)
            return self._forced_copy(left, lambda k: k not in right)
        if op == "&&":
            return self.is_truthy(left) and self.is_truthy(right)
        if op == "||":
            return self.is_truthy(left) or self.is_truthy(right)
        if op == "==":
            return self.values_equal(left, right)
        if op == "!=":
            return not self.values_equal(left, right)
        if type_name(left) != type_name(right):
            return new_error("type mismatch: %s %s %s", type_name(left), op, type_name(right),
                             kind="TypeError")
        return new_error("unknown operator: %s %s %s", type_name(left), op, type_name(right),
                         kind="TypeError")

    def _numeric_infix(self, op: str, a, b) -> Any:
        both_int = _is_int(a) and _is_int(b)
        match op:
            case "+":
                return a + b
            case "-":
                return a - b
            case "*":
                return a * b
            case "/":
                if b == 0:
                    return new_error("division by zero", kind="ZeroDivisionError")
                return _int_div(a, b) if both_int else a / b
            case "%":
                if b == 0:
                    return new_error("modulo by zero", kind="ZeroDivisionError")
                return a - b * _int_div(a, b) if both_int else math.fmod(a, b)
            case "<":
                return a < b
            case ">":
                return a > b
            case "<=":
                return a <= b
            case ">=":
                return a >= b
            case "==":
                return a == b
            case "!=":
                return a != b
            case "..":
                if not both_int:
                    return new_error("range operator requires integers, got %s..%s", type_name(a),
                                     type_name(b), kind="TypeError")
                step = 1 if a <= b else -1
                return list(range(a, b + step, step))
            case "&&":
                return a != 0 and b != 0
            case "||":
                return a != 0 or b != 0
        return new_error("unknown operator: %s %s %s", type_name(a), op, type_name(b), kind="TypeError")

    def _string_infix(self, op: str, a: str, b: str) -> Any:
        match op:
            case "==":
                return a == b
            case "!=":
                return a != b
            case "<":
                return a < b
            case ">":
                return a > b
            case "<=":
                return a <= b
            case ">=":
                return a >= b
        return new_error("unknown operator: STRING %s STRING", op, kind="TypeError")

    def _match(self, op: str, left, right) -> Any:
        if not isinstance(left, str):
            return new_error("left operand of %s must be a string, got %s", op, type_name(left),
                             kind="TypeError")
        if not pseudo.is_pseudo(right, pseudo.REGEX):
            return new_error("right operand of %s must be a regex, got %s", op, type_name(right),
                             kind="TypeError")
        found = self._guard_pseudo(pseudo.match, left, right)
        if is_error(found):
            return found
        if op == "!~":
            return found is None
        return found

    def _concat(self, left, right) -> Any:
        if isinstance(left, ParsleyDict) and isinstance(right, ParsleyDict):
            merged = self._forced_copy(left)
            if is_error(merged):
                return merged
            extra = self._forced_copy(right)
            if is_error(extra):
                return extra
            merged.update(extra)
            return merged
        if isinstance(left, str) and isinstance(right, str):
            return left + right
        head = left if isinstance(left, list) else [left]
        tail = right if isinstance(right, list) else [right]
        return head + tail

    def _set_operation(self, op: str, left: list, right: list) -> list:
        """Array intersection, union and difference by rendered value, first occurrence kept."""
        key = self.printer.debug
        right_keys = {key(x) for x in right}
        seen = set()
        out = []
        candidates = left + right if op == "||" else left
        for item in candidates:
            k = key(item)
            if k in seen:
                continue
            if op == "&&" and k not in right_keys:
                continue
            if op == "-" and k in right_keys:
                continue
            seen.add(k)
            out.append(item)
        return out

    def values_equal(self, a, b) -> bool:
        if isinstance(a, bool) or isinstance(b, bool):
            return isinstance(a, bool) and isinstance(b, bool) and a == b
        if isinstance(a, list) and isinstance(b, list):
            return len(a) == len(b) and all(self.values_equal(x, y) for x, y in zip(a, b))
        if isinstance(a, (ParsleyDict, ParsleyCallable)) or isinstance(b, (ParsleyDict, ParsleyCallable)):
            return a is b
        if _is_number(a) and _is_number(b):
            return a == b
        return type(a) is type(b) and a == b

    # =================================================================
    # Loops
    # =================================================================

    def _eval_for(self, node: ForExpression, env: Environment) -> Any:
        iterable = self._eval(node.iterable, env)
        if is_error(iterable):
            return iterable

        if isinstance(iterable, ParsleyDict):
            if node.variable is None or node.key is None:
                return new_error("for loop over dictionary requires exactly 2 parameters (key, value)",
                                 kind="TypeError", token=node.token)
            pairs = []
            for key in iterable:
                if key.startswith("__"):
                    continue
                value = self.field(iterable, key)
                if is_error(value):
                    return value
                pairs.append((key, value))
        elif isinstance(iterable, (list, str)):
            pairs = list(enumerate(iterable))
        else:
            return new_error("for expects an array, string, or dictionary, got %s", type_name(iterable),
                             kind="TypeError", token=node.token)

        if node.variable is None:
            fn = self._eval(node.body, env)
            if is_error(fn):
                return fn
            if not isinstance(fn, ParsleyCallable):
                return new_error("for expects a function or builtin, got %s", type_name(fn),
                                 kind="TypeError", token=node.token)
            if isinstance(fn, ParsleyFunction) and fn.arity != 1:
                return new_error("function passed to for must take exactly 1 parameter, got %d", fn.arity,
                                 kind="TypeError", token=node.token)

        results = []
        for key, item in pairs:
            if node.variable is None:
                value = self.apply(fn, [item], env, node.token)
            else:
                scope = Environment(parent=env)
                if node.key is not None:
                    scope.set_local(node.key.value, key)
                err = self.bind_pattern(node.variable, item, scope.set_local)
                if err is not None:
                    return err.at(node.token)
                value = self._eval(node.body, scope)
            if isinstance(value, (ReturnValue, ParsleyError)):
                return value
            if value is not None:
                results.append(value)
        return results

    # =================================================================
    # Tags
    # =================================================================

    def _eval_attributes(self, node: TagLiteral, env: Environment):
        """Evaluates tag attributes to (name, value) pairs; spreads expand in place."""
        pairs = []
        for attr in node.attributes:
            if attr.value is None:
                pairs.append((attr.name, True))
                continue
            value = self._eval(attr.value, env)
            if is_error(value):
                return value
            if attr.spread:
                if not isinstance(value, ParsleyDict):
                    return new_error("attribute spread requires a dictionary, got %s", type_name(value),
                                     kind="TypeError", token=node.token)
                for key in value:
                    if key.startswith("__"):
                        continue
                    item = self.field(value, key)
                    if is_error(item):
                        return item
                    pairs.append((key, item))
                continue
            pairs.append((attr.name, value))
        return pairs

    def _eval_contents(self, node: TagLiteral, env: Environment):
        parts = []
        for child in node.contents:
            value = self._eval(child, env)
            if is_error(value):
                return value
            parts.append(self.printer.template(value))
        return parts

    def _render_attribute(self, name: str, value) -> str:
        if value is None or value is False:
            return ""
        if value is True:
            return f" {name}"
        text = self.printer.template(value).replace('"', "&quot;")
        return f' {name}="{text}"'

    def _eval_tag(self, node: TagLiteral, env: Environment) -> Any:
        if node.is_component:
            return self._eval_component(node, env)
        contents = self._eval_contents(node, env)
        if is_error(contents):
            return contents
        if not node.name:
            return "".join(contents)
        pairs = self._eval_attributes(node, env)
        if is_error(pairs):
            return pairs
        attrs = "".join(self._render_attribute(name, value) for name, value in pairs)
        if node.singleton:
            return f"<{node.name}{attrs} />"
        return f"<{node.name}{attrs}>{''.join(contents)}</{node.name}>"

    def _eval_component(self, node: TagLiteral, env: Environment) -> Any:
        owner = env.find_owner(node.name)
        if owner is None:
            return new_error("undefined component: %s", node.name, kind="NameError", token=node.token)
        fn = owner.bindings[node.name]
        pairs = self._eval_attributes(node, env)
        if is_error(pairs):
            return pairs
        props = ParsleyDict()
        for name, value in pairs:
            props[name] = value
        if not node.singleton:
            contents = self._eval_contents(node, env)
            if is_error(contents):
                return contents
            if not contents:
                props["contents"] = None
            elif len(contents) == 1:
                props["contents"] = contents[0]
            else:
                props["contents"] = contents
        self._dbg("component", node.name, "props", list(props.keys()))
        return self.apply(fn, [props], env, node.token)
