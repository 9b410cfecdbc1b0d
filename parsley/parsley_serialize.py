"""
Format codecs used by file handles: text <-> Parsley values.

Supported formats: 'json', 'yaml', 'csv' (header row, rows become
dictionaries), 'csv-noheader' (rows become arrays), 'lines', 'text' and
'bytes' (an array of integers 0..255).
"""
from __future__ import annotations

import csv
import datetime
import io
import json
from typing import Any, Callable, Optional

import yaml

from parsley.parsley_datatypes import ParsleyDict

FORMATS = ("json", "yaml", "csv", "csv-noheader", "lines", "text", "bytes")

_EXTENSIONS = {
    "json": "json",
    "yaml": "yaml",
    "yml": "yaml",
    "csv": "csv",
    "log": "lines",
}


class CodecError(ValueError):
    """Raised when data cannot be decoded or encoded in the requested format."""
    pass


def detect_format(path: str) -> str:
    """Infers a format from a file extension; anything unknown is text."""
    name = path.rsplit("/", 1)[-1]
    if "." not in name.lstrip("."):
        return "text"
    ext = name.rsplit(".", 1)[-1].lower()
    return _EXTENSIONS.get(ext, "text")


# --------------------------
# Helpers
# --------------------------

def from_native(obj: Any) -> Any:
    """Converts decoded Python structures to Parsley values."""
    if isinstance(obj, dict):
        d = ParsleyDict()
        for k, v in obj.items():
            d[str(k)] = from_native(v)
        return d
    if isinstance(obj, (list, tuple)):
        return [from_native(x) for x in obj]
    if isinstance(obj, datetime.datetime):
        from parsley.parsley_pseudotypes import datetime_to_dict
        return datetime_to_dict(obj)
    if isinstance(obj, datetime.date):
        from parsley.parsley_pseudotypes import datetime_to_dict
        return datetime_to_dict(datetime.datetime(obj.year, obj.month, obj.day))
    return obj


def to_native(value: Any, field: Optional[Callable] = None, render: Optional[Callable] = None) -> Any:
    """Converts Parsley values to plain Python structures.

    `field(d, key)` reads (and forces) a dictionary entry; `render(d)` turns a
    pseudo-type into text. Both default to plain access.
    """
    if isinstance(value, ParsleyDict):
        if value.type_name and render is not None:
            text = render(value)
            if text is not None:
                return text
        out = {}
        for key in value:
            if key.startswith("__"):
                continue
            item = field(value, key) if field else value[key]
            out[key] = to_native(item, field, render)
        return out
    if isinstance(value, list):
        return [to_native(x, field, render) for x in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# --------------------------
# Public API
# --------------------------

def decode(data: str | bytes, fmt: str) -> Any:
    """Converts file contents to a Parsley value; raises CodecError."""
    if fmt == "bytes":
        raw = data.encode("utf-8") if isinstance(data, str) else data
        return list(raw)
    text = data.decode("utf-8", errors="replace") if isinstance(data, (bytes, bytearray)) else data
    if fmt == "json":
        try:
            return from_native(json.loads(text))
        except json.JSONDecodeError as e:
            raise CodecError(f"invalid JSON: {e}") from e
    if fmt == "yaml":
        try:
            return from_native(yaml.safe_load(text))
        except yaml.YAMLError as e:
            raise CodecError(f"invalid YAML: {e}") from e
    if fmt == "csv":
        reader = csv.DictReader(io.StringIO(text))
        return [from_native({k: v for k, v in row.items() if k is not None}) for row in reader]
    if fmt == "csv-noheader":
        return [list(row) for row in csv.reader(io.StringIO(text))]
    if fmt == "lines":
        lines = text.split("\n")
        if lines and lines[-1] == "":
            lines.pop()
        return lines
    if fmt == "text":
        return text
    raise CodecError(f"unknown format '{fmt}'")


def encode(value: Any, fmt: str, *, template: Optional[Callable] = None,
           field: Optional[Callable] = None, render: Optional[Callable] = None) -> str | bytes:
    """Converts a Parsley value to file contents; raises CodecError.

    `template(v)` renders values for text-like formats.
    """
    template = template or str
    if fmt == "json":
        return json.dumps(to_native(value, field, render), indent=2, ensure_ascii=False)
    if fmt == "yaml":
        return yaml.safe_dump(to_native(value, field, render), sort_keys=False, allow_unicode=True)
    if fmt in ("csv", "csv-noheader"):
        if not isinstance(value, list):
            raise CodecError("CSV data requires an array of arrays or dictionaries")
        rows = [to_native(r, field, render) for r in value]
        out = io.StringIO()
        writer = csv.writer(out, lineterminator="\n")
        if rows and all(isinstance(r, dict) for r in rows):
            header = list(rows[0].keys())
            for r in rows[1:]:
                header.extend(k for k in r if k not in header)
            if fmt == "csv":
                writer.writerow(header)
            for r in rows:
                writer.writerow([_cell(r.get(k)) for k in header])
        else:
            for r in rows:
                if not isinstance(r, list):
                    raise CodecError("CSV data requires an array of arrays or dictionaries")
                writer.writerow([_cell(c) for c in r])
        return out.getvalue()
    if fmt == "lines":
        if isinstance(value, list):
            return "\n".join(template(v) for v in value) + ("\n" if value else "")
        return template(value) + "\n"
    if fmt == "text":
        return template(value)
    if fmt == "bytes":
        if not isinstance(value, list):
            raise CodecError("bytes format requires an array of integers")
        try:
            return bytes(value)
        except (TypeError, ValueError) as e:
            raise CodecError(f"bytes format requires integers 0-255: {e}") from e
    raise CodecError(f"unknown format '{fmt}'")
