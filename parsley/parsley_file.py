"""
File and directory handles.

`file(@./data.json)` does not touch the disk: it builds a handle, a
dictionary tagged `__type: "file"` carrying the path and a format. Reading
(`let x <== handle`) and writing (`value ==> handle`, `==>>` to append) go
through the handle's codec after a security check. Directory handles
(`dir(@./src)`) list their entries as file handles.
"""
from __future__ import annotations

import datetime
import os
import shutil
import sys
from typing import Any, Dict, List, Optional

from parsley.parsley_datatypes import ParsleyDict, new_error, is_error, type_name
from parsley.parsley_pseudotypes import (
    MISSING, PATH, is_pseudo, make_path, path_to_string, datetime_to_dict
)
from parsley.parsley_serialize import FORMATS, CodecError, decode, encode, detect_format

FILE = "file"
DIR = "dir"

_STDIO = ("-", "stdin", "stdout", "stderr")


def resolve_path(path: str, base_dir: Optional[str]) -> str:
    """Makes a script path absolute: `~` is home, relative paths hang off base_dir (or the CWD)."""
    if path in _STDIO:
        return path
    if path.startswith("~"):
        return os.path.normpath(os.path.expanduser(path))
    if os.path.isabs(path):
        return os.path.normpath(path)
    base = base_dir or os.getcwd()
    return os.path.normpath(os.path.join(base, path))


def _path_text(value) -> Optional[str]:
    if isinstance(value, str):
        return value
    if is_pseudo(value, PATH):
        return path_to_string(value)
    return None


def make_file_handle(target, fmt: Optional[str] = None, options=None, base_dir: Optional[str] = None,
                     factory: str = "file"):
    """Builds a file handle from a path dictionary or a string."""
    text = _path_text(target)
    if text is None:
        return new_error("argument to `%s` must be a path or string, got %s", factory, type_name(target),
                         kind="TypeError")
    if options is not None and not isinstance(options, ParsleyDict):
        return new_error("second argument to `%s` must be a dictionary, got %s", factory, type_name(options),
                         kind="TypeError")
    if fmt is None:
        fmt = detect_format(text)
    if fmt == "csv" and options is not None and options.get("header") is False:
        fmt = "csv-noheader"
    handle = ParsleyDict()
    handle["__type"] = FILE
    handle["path"] = make_path(text)
    handle["format"] = fmt
    handle["options"] = options if options is not None else ParsleyDict()
    handle["__resolved"] = resolve_path(text, base_dir)
    return handle


def make_dir_handle(target, base_dir: Optional[str] = None):
    text = _path_text(target)
    if text is None:
        return new_error("argument to `dir` must be a path or string, got %s", type_name(target),
                         kind="TypeError")
    handle = ParsleyDict()
    handle["__type"] = DIR
    handle["path"] = make_path(text)
    handle["__resolved"] = resolve_path(text, base_dir)
    return handle


def _resolved(handle: ParsleyDict) -> str:
    resolved = handle.get("__resolved")
    if isinstance(resolved, str):
        return resolved
    return resolve_path(path_to_string(handle.get("path") or ParsleyDict()), None)


def _entry_handle(full: str) -> ParsleyDict:
    if os.path.isdir(full):
        return make_dir_handle(full)
    return make_file_handle(full)


def _entries(handle: ParsleyDict, policy) -> Any:
    path = _resolved(handle)
    if policy is not None:
        denied = policy.check_access(path, "read")
        if denied:
            return denied
    try:
        names = sorted(os.listdir(path))
    except OSError as e:
        return new_error("failed to read directory %s: %s", path, e.strerror or str(e), kind="IOError")
    return [_entry_handle(os.path.join(path, name)) for name in names]


# =================================================================
# Properties and methods
# =================================================================

def handle_property(handle: ParsleyDict, key: str, policy=None):
    path = _resolved(handle)
    match key:
        case "exists":
            return os.path.exists(path)
        case "isFile":
            return os.path.isfile(path)
        case "isDir":
            return os.path.isdir(path)
        case "basename" | "name":
            return os.path.basename(path)
        case "ext" | "extension":
            stem, ext = os.path.splitext(os.path.basename(path))
            return ext[1:]
        case "stem":
            return os.path.splitext(os.path.basename(path))[0]
        case "size":
            return os.path.getsize(path) if os.path.exists(path) else None
        case "modified":
            if not os.path.exists(path):
                return None
            stamp = int(os.path.getmtime(path))
            return datetime_to_dict(datetime.datetime.fromtimestamp(stamp, tz=datetime.timezone.utc))
        case "files" if handle.type_name == DIR:
            return _entries(handle, policy)
        case "count" if handle.type_name == DIR:
            entries = _entries(handle, policy)
            return entries if is_error(entries) else len(entries)
    return MISSING


def handle_method(handle: ParsleyDict, name: str, args: List[Any], policy=None):
    kind = handle.type_name
    match name:
        case "toDict":
            if args:
                return new_error("wrong number of arguments for 'toDict'. got=%d, want=0", len(args),
                                 kind="TypeError")
            return handle
        case "remove" if kind == FILE:
            return _guarded(handle, policy, lambda p: os.remove(p), "failed to remove file")
        case "mkdir":
            parents = _flag(args, "parents")
            make = (lambda p: os.makedirs(p, exist_ok=True)) if parents else os.mkdir
            return _guarded(handle, policy, make, "failed to create directory")
        case "rmdir":
            recursive = _flag(args, "recursive")
            return _guarded(handle, policy, shutil.rmtree if recursive else os.rmdir,
                            "failed to remove directory")
    return MISSING


def _flag(args: List[Any], key: str) -> bool:
    return bool(args) and isinstance(args[0], ParsleyDict) and args[0].get(key) is True


def _guarded(handle: ParsleyDict, policy, action, failure: str):
    path = _resolved(handle)
    if policy is not None:
        denied = policy.check_access(path, "write")
        if denied:
            return denied
    try:
        action(path)
    except OSError as e:
        return new_error("%s: %s", failure, e.strerror or str(e), kind="IOError")
    return None


# =================================================================
# Read and write
# =================================================================

def read_handle(handle, policy=None):
    """Reads a file or directory handle through its codec."""
    if not is_pseudo(handle) or handle.type_name not in (FILE, DIR):
        return new_error("read operator requires a file handle, got %s", type_name(handle), kind="TypeError")
    if handle.type_name == DIR:
        return _entries(handle, policy)
    fmt = handle.get("format")
    if fmt not in FORMATS:
        return new_error("unknown file format '%s'", fmt, kind="ValueError")
    path = _resolved(handle)
    if path in ("-", "stdin"):
        data = sys.stdin.buffer.read() if fmt == "bytes" else sys.stdin.read()
    else:
        if policy is not None:
            denied = policy.check_access(path, "read")
            if denied:
                return denied
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            return new_error("failed to read file '%s': %s", path, e.strerror or str(e), kind="IOError")
    try:
        return decode(data, fmt)
    except CodecError as e:
        return new_error("failed to read file '%s': %s", path, str(e), kind="ValueError")


def write_handle(handle, value, append: bool = False, policy=None, **codec_hooks):
    """Writes value through the handle's codec; `==>>` appends, creating the file if needed."""
    if not is_pseudo(handle, FILE):
        return new_error("write operator requires a file handle, got %s", type_name(handle), kind="TypeError")
    fmt = handle.get("format")
    if fmt not in FORMATS:
        return new_error("unknown file format '%s'", fmt, kind="ValueError")
    path = _resolved(handle)
    try:
        payload = encode(value, fmt, **codec_hooks)
    except CodecError as e:
        return new_error("cannot write %s: %s", fmt, str(e), kind="TypeError")
    if path in ("stdout", "stderr", "-"):
        stream = sys.stderr if path == "stderr" else sys.stdout
        stream.write(payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload)
        return None
    if policy is not None:
        denied = policy.check_access(path, "write")
        if denied:
            return denied
    data = payload if isinstance(payload, bytes) else payload.encode("utf-8")
    try:
        with open(path, "ab" if append else "wb") as f:
            f.write(data)
    except OSError as e:
        return new_error("failed to write file '%s': %s", path, e.strerror or str(e), kind="IOError")
    return None
