"""
Renders Parsley values as text.

There are two renderings. The template rendering is what string
interpolation, tag contents and `toString` produce: strings appear as-is,
arrays are concatenated without separators and null is empty. The debug
rendering is what `toDebug`, `log` and the REPL show: strings are quoted,
arrays are bracketed and comma separated, and dictionaries show their keys.
"""
import collections.abc
import decimal
import math

from parsley.parsley_datatypes import (
    ParsleyDict, ParsleyFunction, Builtin, ParsleyError
)


def format_float(value: float) -> str:
    """Shortest round-trip formatting in the style of C's %g.

    Exponent notation is used when the decimal exponent is below -4 or at
    least 6, otherwise plain decimal; trailing zeros are dropped.
    """
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value == 0:
        return "-0" if math.copysign(1.0, value) < 0 else "0"
    sign, digits, exponent = decimal.Decimal(repr(value)).normalize().as_tuple()
    digits = "".join(str(d) for d in digits)
    nd = len(digits)
    dp = nd + exponent  # position of the decimal point within digits
    exp = dp - 1
    prefix = "-" if sign else ""
    if exp < -4 or exp >= 6:
        mantissa = digits[0] + ("." + digits[1:] if nd > 1 else "")
        return f"{prefix}{mantissa}e{'-' if exp < 0 else '+'}{abs(exp):02d}"
    if dp <= 0:
        return f"{prefix}0.{'0' * -dp}{digits}"
    if dp >= nd:
        return f"{prefix}{digits}{'0' * (dp - nd)}"
    return f"{prefix}{digits[:dp]}.{digits[dp:]}"


class Printer:
    """Formats Parsley values for templates and for debugging.

    `resolve(d, key)` is used to force pending dictionary fields; without it
    pending fields are shown as `...`.
    """

    def __init__(self, resolve=None):
        self.resolve = resolve
        self._handlers = self._create_handlers()

    def template(self, obj) -> str:
        return self._get_handler(obj)(obj, False)

    def debug(self, obj) -> str:
        return self._get_handler(obj)(obj, True)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, collections.abc.Mapping):
            return self._pformat_dict
        if isinstance(obj, list):
            return self._pformat_list
        return lambda o, debug: str(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: lambda o, debug: str(o),
            float: lambda o, debug: format_float(o),
            bool: lambda o, debug: "true" if o else "false",
            type(None): lambda o, debug: "null" if debug else "",
            list: self._pformat_list,
            ParsleyDict: self._pformat_dict,
            ParsleyFunction: self._pformat_function,
            Builtin: lambda o, debug: "builtin function",
            ParsleyError: lambda o, debug: o.inspect(),
        }

    def _pformat_str(self, obj, debug):
        if not debug:
            return obj
        escaped = obj.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
        return f'"{escaped}"'

    def _pformat_list(self, obj, debug):
        if debug:
            return "[" + ", ".join(self.debug(e) for e in obj) + "]"
        return "".join(self.template(e) for e in obj)

    def _pformat_dict(self, obj, debug):
        from parsley.parsley_pseudotypes import to_string, literal_form
        if isinstance(obj, ParsleyDict) and obj.type_name:
            text = literal_form(obj) if debug else to_string(obj)
            if text is not None:
                return text
        parts = []
        for key in obj:
            if key.startswith("__"):
                continue
            parts.append(f"{key}: {self._field(obj, key)}")
        return "{" + ", ".join(parts) + "}"

    def _field(self, d, key):
        if isinstance(d, ParsleyDict) and (d.is_pending(key) or d.is_in_progress(key)):
            if self.resolve is None:
                return "..."
            return self.debug(self.resolve(d, key))
        return self.debug(d[key])

    def _pformat_function(self, obj, debug):
        from parsley.parsley_ast import Identifier
        names = []
        for p in obj.params:
            names.append(p.value if isinstance(p, Identifier) else "pattern")
        return f"fn({', '.join(names)})"
