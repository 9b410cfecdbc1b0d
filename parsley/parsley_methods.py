"""
Per-type methods: `"abc".upper()`, `[3, 1, 2].sort()`, `d.keys()`, `n.format()`.

Each `*_method` function returns the result, an error value, or MISSING
when the type has no method of that name. The evaluator turns MISSING into
an "unknown method" error, except for dictionaries, where a function stored
under the method name is called instead.

Natural ordering (`natural_key`, `compare_objects`) lives here too; `sort`,
`sortBy` and the array methods share it.
"""
import functools
import re
from typing import Any, List

from parsley.parsley_datatypes import (
    ParsleyDict, ParsleyFunction, ParsleyCallable, new_error, is_error, type_name
)
from parsley.parsley_pseudotypes import MISSING

_DIGITS = re.compile(r"(\d+)")


# =================================================================
# Ordering
# =================================================================

def _type_order(value) -> int:
    if isinstance(value, bool):
        return 2
    if isinstance(value, (int, float)):
        return 0
    if isinstance(value, str):
        return 1
    return 2


def natural_string_compare(a: str, b: str) -> int:
    """Compares strings with digit runs taken as numbers: z2 < z11."""
    i = j = 0
    while i < len(a) and j < len(b):
        if a[i].isdigit() and b[j].isdigit():
            ma, mb = _DIGITS.match(a, i), _DIGITS.match(b, j)
            na, nb = int(ma.group(1)), int(mb.group(1))
            if na != nb:
                return -1 if na < nb else 1
            i, j = ma.end(), mb.end()
            continue
        if a[i] != b[j]:
            return -1 if a[i] < b[j] else 1
        i += 1
        j += 1
    return (len(a) > len(b)) - (len(a) < len(b))


def natural_compare(a, b) -> int:
    """Numbers sort before strings, strings before everything else."""
    ta, tb = _type_order(a), _type_order(b)
    if ta != tb:
        return -1 if ta < tb else 1
    if ta == 0:
        return (a > b) - (a < b)
    if ta == 1:
        return natural_string_compare(a, b)
    return compare_objects(a, b)


def compare_objects(a, b) -> int:
    """Total order used for sort keys: null first, then by value, then by rendering."""
    if a is None or b is None:
        return (a is not None) - (b is not None)
    if isinstance(a, bool) and isinstance(b, bool):
        return int(a) - int(b)
    numeric = (int, float)
    if isinstance(a, numeric) and isinstance(b, numeric) and not isinstance(a, bool) \
            and not isinstance(b, bool):
        return (a > b) - (a < b)
    if isinstance(a, str) and isinstance(b, str):
        return natural_string_compare(a, b)
    from parsley.parsley_printer import Printer
    printer = Printer()
    sa, sb = printer.debug(a), printer.debug(b)
    return (sa > sb) - (sa < sb)


def natural_sort(items: List[Any]) -> List[Any]:
    return sorted(items, key=functools.cmp_to_key(natural_compare))


def sort_by(evaluator, items: List[Any], fn, env, token, name="sortBy"):
    """Sorts by a key function (one parameter) or a comparator (two parameters).

    A comparator may return a number (negative means a < b) or a boolean
    (true means a < b).
    """
    arity = fn.arity if isinstance(fn, ParsleyFunction) else 1
    if arity == 2:
        failure = []

        def cmp(a, b):
            if failure:
                return 0
            result = evaluator.apply(fn, [a, b], env, token)
            if is_error(result):
                failure.append(result)
                return 0
            if isinstance(result, bool):
                if result:
                    return -1
                flipped = evaluator.apply(fn, [b, a], env, token)
                return 1 if flipped is True else 0
            if isinstance(result, (int, float)):
                return (result > 0) - (result < 0)
            failure.append(new_error("comparison function passed to `%s` must return a number or boolean, got %s",
                                     name, type_name(result), kind="TypeError"))
            return 0
        ordered = sorted(items, key=functools.cmp_to_key(cmp))
        return failure[0] if failure else ordered
    if arity != 1:
        return new_error("function passed to `%s` must take 1 or 2 parameters, got %d", name, arity,
                         kind="TypeError")
    keys = []
    for item in items:
        key = evaluator.apply(fn, [item], env, token)
        if is_error(key):
            return key
        keys.append(key)
    order = sorted(range(len(items)), key=functools.cmp_to_key(lambda i, j: compare_objects(keys[i], keys[j])))
    return [items[i] for i in order]


def map_array(evaluator, items: List[Any], fn, env, token, name="map"):
    """Applies fn to each element, dropping null results."""
    if isinstance(fn, ParsleyFunction) and fn.arity != 1:
        return new_error("function passed to `%s` must take exactly 1 parameter, got %d", name, fn.arity,
                         kind="TypeError")
    result = []
    for item in items:
        value = evaluator.apply(fn, [item], env, token)
        if is_error(value):
            return value
        if value is not None:
            result.append(value)
    return result


def filter_array(evaluator, items: List[Any], fn, env, token):
    result = []
    for item in items:
        keep = evaluator.apply(fn, [item], env, token)
        if is_error(keep):
            return keep
        if evaluator.is_truthy(keep):
            result.append(item)
    return result


# =================================================================
# List formatting
# =================================================================

_LIST_STYLES = {"and": " and ", "or": " or ", "unit": ", "}


def format_list(items: List[str], style: str = "and") -> str:
    """English list formatting with an Oxford comma: `a, b, and c`."""
    if not items:
        return ""
    if len(items) == 1:
        return items[0]
    if len(items) == 2:
        return items[0] + _LIST_STYLES[style] + items[1]
    last = ", " if style == "unit" else f", {style} "
    return ", ".join(items[:-1]) + last + items[-1]


def format_number(value, decimals=None) -> str:
    """Grouped number text: 1234567 -> 1,234,567; floats keep up to three decimals."""
    if isinstance(value, int):
        return f"{value:,}"
    text = f"{value:,.{3 if decimals is None else decimals}f}"
    if decimals is None and "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


_CURRENCY_SYMBOLS = {"USD": ("$", 2), "EUR": ("€", 2), "GBP": ("£", 2), "JPY": ("¥", 0)}


def format_currency(value, code: str) -> str:
    symbol, places = _CURRENCY_SYMBOLS.get(code.upper(), (code.upper() + " ", 2))
    sign = "-" if value < 0 else ""
    return f"{sign}{symbol}{format_number(abs(value), places)}"


# =================================================================
# Methods by receiver type
# =================================================================

def _arity(name: str, args: List[Any], lo: int, hi: int = None):
    hi = lo if hi is None else hi
    if lo <= len(args) <= hi:
        return None
    want = str(lo) if lo == hi else f"{lo}-{hi}"
    return new_error("wrong number of arguments for '%s'. got=%d, want=%s", name, len(args), want,
                     kind="TypeError")


def _want(name: str, value, kinds, label: str, position: str = ""):
    if isinstance(value, kinds) and not (isinstance(value, bool) and bool not in kinds):
        return None
    prefix = f"{position} argument" if position else "argument"
    return new_error("%s to '%s' must be %s, got %s", prefix, name, label, type_name(value),
                     kind="TypeError")


def string_method(s: str, name: str, args: List[Any]):
    match name:
        case "upper":
            return _arity(name, args, 0) or s.upper()
        case "lower":
            return _arity(name, args, 0) or s.lower()
        case "trim":
            return _arity(name, args, 0) or s.strip()
        case "length":
            return _arity(name, args, 0) or len(s)
        case "split":
            err = _arity(name, args, 1) or _want(name, args[0], (str,), "STRING")
            return err or split_string(s, args[0])
        case "replace":
            err = _arity(name, args, 2) or _want(name, args[0], (str,), "STRING", "first") \
                or _want(name, args[1], (str,), "STRING", "second")
            return err or s.replace(args[0], args[1])
    return MISSING


def split_string(s: str, sep: str) -> List[str]:
    if sep == "":
        return list(s)
    return s.split(sep)


def array_method(evaluator, items: list, name: str, args: List[Any], env, token):
    match name:
        case "length":
            return _arity(name, args, 0) or len(items)
        case "reverse":
            return _arity(name, args, 0) or list(reversed(items))
        case "sort":
            return _arity(name, args, 0) or natural_sort(items)
        case "sortBy" | "map" | "filter":
            err = _arity(name, args, 1) or _want(name, args[0], (ParsleyCallable,), "a function")
            if err:
                return err
            if name == "sortBy":
                return sort_by(evaluator, items, args[0], env, token)
            if name == "map":
                return map_array(evaluator, items, args[0], env, token)
            return filter_array(evaluator, items, args[0], env, token)
        case "join":
            err = _arity(name, args, 0, 1)
            if err:
                return err
            sep = args[0] if args else ""
            err = _want(name, sep, (str,), "a STRING")
            if err:
                return err
            return sep.join(evaluator.printer.template(e) for e in items)
        case "format":
            err = _arity(name, args, 0, 1)
            if err:
                return err
            style = args[0] if args else "and"
            if style not in _LIST_STYLES:
                return new_error("invalid style \"%s\" for 'format', use 'and', 'or', or 'unit'",
                                 evaluator.printer.template(style), kind="ValueError")
            return format_list([evaluator.printer.template(e) for e in items], style)
    return MISSING


def dict_method(evaluator, d: ParsleyDict, name: str, args: List[Any]):
    match name:
        case "keys":
            return _arity(name, args, 0) or [k for k in d if not k.startswith("__")]
        case "values":
            return _arity(name, args, 0) or [evaluator.field(d, k) for k in d if not k.startswith("__")]
        case "has":
            err = _arity(name, args, 1) or _want(name, args[0], (str,), "STRING")
            return err or args[0] in d
    return MISSING


def number_method(n, name: str, args: List[Any]):
    match name:
        case "format":
            return _arity(name, args, 0) or format_number(n)
        case "currency":
            err = _arity(name, args, 1) or _want(name, args[0], (str,), "STRING")
            return err or format_currency(n, args[0])
        case "percent":
            return _arity(name, args, 0) or f"{format_number(round(n * 100))}%"
    return MISSING
