"""
pars - run a Parsley script, or start a REPL when no file is given.

Usage:
    pars script.pars
    pars -w --allow-execute ./lib page.pars
    pars -e 'let x = 2; x * 21'
    pars
"""
import argparse
import logging
import sys
from pathlib import Path

from parsley.parsley_runtime import ScriptRunner
from parsley.parsley_security import SecurityPolicy

VERSION = "0.1.0"


def _paths(values):
    """Flattens repeated and comma-separated directory options."""
    out = []
    for value in values or []:
        out.extend(p for p in value.split(",") if p)
    return out


def build_policy(args) -> SecurityPolicy:
    return SecurityPolicy(
        allow_write=_paths(args.allow_write),
        allow_execute=_paths(args.allow_execute),
        restrict_read=_paths(args.restrict_read),
        allow_write_all=args.allow_write_all,
        allow_execute_all=args.allow_execute_all,
        no_read=args.no_read,
    )


def print_effects(result):
    # Print side effects (from `log` and `logLine`)
    for effect in result.side_effects:
        if effect.get('topics') == ['stdout']:
            print(effect.get('message', ''))


def run_source(runner: ScriptRunner, source: str) -> int:
    result = runner.handle_script(source)
    print_effects(result)
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        return 1
    if result.value is not None:
        print(runner.render(result.value))
    return 0


def run_script_file(runner: ScriptRunner, file_path: str) -> int:
    """Run a Parsley script file non-interactively; returns the exit status."""
    p = Path(file_path)
    try:
        source = p.read_text(encoding="utf-8")
    except OSError as e:
        print(f"Error reading file '{file_path}': {e.strerror or e}", file=sys.stderr)
        return 1
    runner.filename = file_path
    runner.source_dir = str(p.parent.resolve())
    return run_source(runner, source)


def repl(runner: ScriptRunner):
    print(f"Parsley REPL v{VERSION}")
    print("Type 'exit' or press Ctrl+D to quit.")
    runner.source_dir = str(Path.cwd())
    printer = runner.evaluator.printer
    while True:
        try:
            line = input(">> ").strip()
        except EOFError:
            print("\nExiting.")
            break
        if not line:
            continue
        if line == "exit":
            break
        result = runner.handle_script(line)
        print_effects(result)
        if result.status == 'error':
            print(result.format_error(), file=sys.stderr)
            continue
        if result.value is not None:
            print(printer.debug(result.value))


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="pars",
        description="Parsley language interpreter",
    )
    parser.add_argument("file", nargs="?", help="Parsley script to run; omit for a REPL")
    parser.add_argument("-e", "--eval", dest="source", help="Evaluate SRC instead of a file")
    parser.add_argument("-V", "--version", action="version", version=f"pars version {VERSION}")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Log interpreter activity to stderr (repeat for debug)")
    parser.add_argument("--allow-write", action="append", metavar="DIR",
                        help="Allow writing under DIR (repeatable, or comma separated)")
    parser.add_argument("--allow-execute", action="append", metavar="DIR",
                        help="Allow importing scripts from under DIR")
    parser.add_argument("--restrict-read", action="append", metavar="DIR",
                        help="Deny reading from under DIR")
    parser.add_argument("-w", "--allow-write-all", action="store_true", help="Allow unrestricted writes")
    parser.add_argument("-x", "--allow-execute-all", action="store_true",
                        help="Allow unrestricted script imports")
    parser.add_argument("--no-read", action="store_true", help="Deny all file reads")

    args = parser.parse_args(argv)

    level = {0: logging.WARNING, 1: logging.INFO}.get(args.verbose, logging.DEBUG)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    runner = ScriptRunner(policy=build_policy(args))
    if args.source is not None:
        runner.source_dir = str(Path.cwd())
        raise SystemExit(run_source(runner, args.source))
    if args.file:
        raise SystemExit(run_script_file(runner, args.file))
    try:
        repl(runner)
    except KeyboardInterrupt:
        print("\nExiting.")


if __name__ == "__main__":
    main()
