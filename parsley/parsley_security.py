"""
Filesystem access policy for scripts.

Reading is allowed unless switched off or restricted to exclude a directory;
writing and executing (importing modules) are denied unless a directory is
allow-listed or the corresponding `*_all` switch is on.
"""
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

from parsley.parsley_datatypes import ParsleyError

log = logging.getLogger(__name__)

READ, WRITE, EXECUTE = "read", "write", "execute"


def canonical(path: str) -> str:
    return os.path.normpath(os.path.abspath(os.path.expanduser(path)))


def _within(path: str, roots: List[str]) -> bool:
    for root in roots:
        root = canonical(root)
        if path == root or path.startswith(root.rstrip(os.sep) + os.sep):
            return True
    return False


@dataclass
class SecurityPolicy:
    allow_write: List[str] = field(default_factory=list)
    allow_execute: List[str] = field(default_factory=list)
    restrict_read: List[str] = field(default_factory=list)
    allow_write_all: bool = False
    allow_execute_all: bool = False
    no_read: bool = False

    @classmethod
    def permissive(cls) -> 'SecurityPolicy':
        """Everything allowed; used by embedders and tests that own the filesystem."""
        return cls(allow_write_all=True, allow_execute_all=True)

    def check_access(self, path: str, op: str) -> Optional[ParsleyError]:
        """Returns None when `op` on `path` is allowed, else a PermissionError value."""
        target = canonical(path)
        denial = None
        if op == READ:
            if self.no_read:
                denial = f"file read access denied: {target}"
            elif _within(target, self.restrict_read):
                denial = f"file read restricted: {target}"
        elif op == WRITE:
            if not (self.allow_write_all or _within(target, self.allow_write)):
                denial = f"file write not allowed: {target}"
        elif op == EXECUTE:
            if not (self.allow_execute_all or _within(target, self.allow_execute)):
                denial = f"script execution not allowed: {target}"
        else:
            denial = f"unknown access operation '{op}'"
        if denial is None:
            return None
        log.debug("denied %s access to %s", op, target)
        return ParsleyError(denial, kind="PermissionError")
