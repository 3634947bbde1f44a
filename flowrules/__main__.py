"""
Command-line entry point for the flow-rule compiler.

Usage
-----
    python -m flowrules <command> [options]

Commands
--------
    compile     Compile rule DSL to the controller's JSON triple
    check       Report diagnostics for rule DSL without emitting JSON
    decompile   Render controller JSON back into rule DSL
    default     Print the default rule set for new networks

Exit status is 0 on success, 1 when the input has errors and 2 when the
input cannot be read or exceeds the configured size limit.
"""

import argparse
import json
import sys
import textwrap
from pathlib import Path
from typing import List, Optional, Sequence

from flowrules import __version__
from flowrules.config.logging import get_logger, setup_logging
from flowrules.config.settings import Settings, get_settings
from flowrules.core.dsl import (
    DEFAULT_RULES_SOURCE,
    Diagnostic,
    PolicyInputError,
    check_rules,
    compile_rules,
    decompile_rules,
    default_policy,
)

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_ERRORS = 1
EXIT_BAD_INPUT = 2


class InputError(Exception):
    """Input could not be read or is too large."""


def read_input(path: str, settings: Settings) -> str:
    """Read a UTF-8 file (or stdin for '-') no larger than ``max_source_bytes``."""
    limit = settings.max_source_bytes
    if path == "-":
        stream = getattr(sys.stdin, "buffer", None)
        data = stream.read(limit + 1) if stream is not None else sys.stdin.read().encode("utf-8")
        name = "<stdin>"
    else:
        file_path = Path(path)
        try:
            if file_path.stat().st_size > limit:
                raise InputError(f"{path}: input exceeds {limit} bytes")
            data = file_path.read_bytes()
        except OSError as e:
            raise InputError(f"{path}: cannot read input ({e.strerror or e})")
        name = path

    if len(data) > limit:
        raise InputError(f"{name}: input exceeds {limit} bytes")
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InputError(f"{name}: input is not valid UTF-8 ({e.reason})")


def _report(diagnostics: List[Diagnostic], stream) -> None:
    for diagnostic in diagnostics:
        stream.write(diagnostic.format() + "\n")


def cmd_compile(args: argparse.Namespace, settings: Settings) -> int:
    result = compile_rules(read_input(args.input, settings))
    _report(result.diagnostics, sys.stderr)
    if result.bundle is None:
        return EXIT_ERRORS
    indent = settings.json_indent if args.indent is None else args.indent
    sys.stdout.write(result.bundle.to_json(indent=indent or None) + "\n")
    return EXIT_OK


def cmd_check(args: argparse.Namespace, settings: Settings) -> int:
    diagnostics = check_rules(read_input(args.input, settings))
    _report(diagnostics, sys.stdout)
    return EXIT_ERRORS if any(d.is_error for d in diagnostics) else EXIT_OK


def cmd_decompile(args: argparse.Namespace, settings: Settings) -> int:
    text = read_input(args.input, settings)
    try:
        result = decompile_rules(json.loads(text))
    except json.JSONDecodeError as e:
        sys.stderr.write(f"{args.input}:{e.lineno}:{e.colno}: invalid JSON: {e.msg}\n")
        return EXIT_ERRORS
    except PolicyInputError as e:
        logger.error("Decompile input rejected", error=str(e))
        sys.stderr.write(f"{args.input}: {e}\n")
        return EXIT_ERRORS
    _report(result.diagnostics, sys.stderr)
    sys.stdout.write(result.source)
    return EXIT_OK


def cmd_default(args: argparse.Namespace, settings: Settings) -> int:
    if args.compiled:
        indent = settings.json_indent or None
        sys.stdout.write(default_policy().to_json(indent=indent) + "\n")
    else:
        sys.stdout.write(DEFAULT_RULES_SOURCE)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the flowrules CLI."""
    parser = argparse.ArgumentParser(
        prog="flowrules",
        description="Compile and decompile network controller flow rules",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              %(prog)s compile rules.txt
              %(prog)s check - < rules.txt
              %(prog)s decompile network-rules.json
              %(prog)s default --compiled
        """),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(
        dest="command", title="commands", metavar="<command>"
    )

    p_compile = subparsers.add_parser("compile", help="Compile rule DSL to controller JSON")
    p_compile.add_argument("input", help="Rule DSL file (use '-' for stdin)")
    p_compile.add_argument(
        "--indent",
        type=int,
        default=None,
        help="JSON indentation (default: the json_indent setting; 0 for compact)",
    )
    p_compile.set_defaults(func=cmd_compile)

    p_check = subparsers.add_parser(
        "check",
        help="Report diagnostics without emitting JSON",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            rule syntax:
              ACTION [operands] [not] FIELD operands [and|or [not] FIELD operands]... ;
              'or' sets the or flag on the clause after it; the controller folds
              clauses left to right, so 'a or b and c' means '(a or b) and c'.
              ';' ends a rule. raw '<json>' as the first word is a verbatim action.
        """),
    )
    p_check.add_argument("input", help="Rule DSL file (use '-' for stdin)")
    p_check.set_defaults(func=cmd_check)

    p_decompile = subparsers.add_parser("decompile", help="Render controller JSON as rule DSL")
    p_decompile.add_argument(
        "input", help="JSON file holding {rules, capabilities, tags} or a rules array (use '-' for stdin)"
    )
    p_decompile.set_defaults(func=cmd_decompile)

    p_default = subparsers.add_parser("default", help="Print the default rule set")
    p_default.add_argument(
        "--compiled", action="store_true", default=False, help="Print the compiled JSON instead"
    )
    p_default.set_defaults(func=cmd_default)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the CLI and return its exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return EXIT_OK

    settings = get_settings()
    setup_logging(settings)
    try:
        return args.func(args, settings)
    except InputError as e:
        logger.error("Input rejected", command=args.command, error=str(e))
        sys.stderr.write(f"error: {e}\n")
        return EXIT_BAD_INPUT
    except KeyboardInterrupt:
        sys.stderr.write("\nInterrupted.\n")
        return 130


if __name__ == "__main__":
    sys.exit(main())
