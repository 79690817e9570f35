"""Liquid command line entry point."""
from __future__ import annotations
import argparse
import json
import os
import sys
from typing import Any, Dict, List, Optional

import yaml

from extensions import ExtensionError, load_runtime_services
from filesystem import BlankFileSystem, LocalFileSystem
from filters import Filters
from interpreter import Interpreter, RenderOptions, TracebackFormatter, parse_template
from lexer import LiquidError, LiquidSyntaxError


def load_environment(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as handle:
        if path.lower().endswith((".yaml", ".yml")):
            data = yaml.safe_load(handle)
        else:
            data = json.load(handle)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: environment must be a mapping, got {type(data).__name__}")
    return data


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Render a Liquid template")
    parser.add_argument("template", nargs="?", help="Template file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat template argument as literal source text")
    parser.add_argument("--env", dest="env_file", help="JSON or YAML file with the render environment")
    parser.add_argument("--partials", dest="partials_dir", help="Directory holding _name.liquid partials")
    parser.add_argument("--lax", action="store_true", help="Ignore unknown filters instead of failing")
    parser.add_argument("--render-errors", action="store_true", help="Render errors inline and keep going")
    parser.add_argument("--strict-variables", action="store_true", help="Fail on undefined variables")
    parser.add_argument("--timeout", type=float, default=None, help="Render deadline in seconds")
    parser.add_argument("--ext", dest="extensions", action="append", default=[], help="Extension module or .lqx pointer file (repeatable)")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit scope snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--list-filters", action="store_true", help="List available filters, including extension filters, and exit")
    args = parser.parse_args(argv)

    if args.list_filters:
        try:
            filters = Filters.with_extensions(load_runtime_services(args.extensions))
        except ExtensionError as error:
            print(f"ExtensionError: {error.message}", file=sys.stderr)
            return 1
        for name in sorted(filters.table):
            function = filters.table[name]
            line = name if function.source == "builtin" else f"{name} [{function.source}]"
            print(f"{line}  {function.doc}" if function.doc else line)
        return 0

    if args.template is None:
        if args.source_mode:
            print("-source requires a template string", file=sys.stderr)
            return 1
        source_text = sys.stdin.read()
        filename = "<stdin>"
    elif args.source_mode:
        source_text = args.template
        filename = "<string>"
    else:
        filename = args.template
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    environment: Dict[str, Any] = {}
    if args.env_file:
        try:
            environment = load_environment(args.env_file)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            print(f"Failed to load environment {args.env_file}: {exc}", file=sys.stderr)
            return 1

    try:
        services = load_runtime_services(args.extensions)
    except ExtensionError as error:
        print(f"ExtensionError: {error.message}", file=sys.stderr)
        return 1

    if args.partials_dir:
        file_system: Any = LocalFileSystem(args.partials_dir)
    elif filename not in ("<string>", "<stdin>"):
        file_system = LocalFileSystem(os.path.dirname(os.path.abspath(filename)))
    else:
        file_system = BlankFileSystem()

    options = RenderOptions(
        error_mode="lax" if args.lax else "strict",
        render_errors=args.render_errors,
        strict_variables=args.strict_variables,
        timeout=args.timeout,
        verbose=args.verbose,
    )

    try:
        template = parse_template(source_text, name=None if filename.startswith("<") else filename)
    except LiquidSyntaxError as error:
        print(str(error), file=sys.stderr)
        return 1

    interpreter = Interpreter(template, options=options, services=services, file_system=file_system)
    try:
        output = interpreter.render(environment)
    except LiquidError as error:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    sys.stdout.write(output)
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
