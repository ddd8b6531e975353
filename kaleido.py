"""Kaleidoscope entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from driver import Driver
from lexer import SourceReader
from session import KSExecutionError


PROMPT = "\x1b[38;2;153;221;255mready>\033[0m "  # light blue
CONTINUATION_PROMPT = "\x1b[38;2;153;221;255m...>\033[0m "


def run_repl(*, dump: bool, verbose: bool, log_json: bool) -> int:
    print("\x1b[38;2;153;221;255mKaleidoscope\033[0m REPL. End each form with ';', Ctrl-D to quit.")
    reader = SourceReader(line_provider=input, prompt=PROMPT, continuation_prompt=CONTINUATION_PROMPT)
    driver = Driver(filename="<stdin>", dump=dump, verbose=verbose)
    status = _run_driver(driver, reader, log_json=log_json)
    print()
    return status


def run_source(source_text: str, filename: str, *, dump: bool, verbose: bool, log_json: bool) -> int:
    driver = Driver(filename=filename, dump=dump, verbose=verbose)
    return _run_driver(driver, SourceReader(source_text), log_json=log_json)


def _run_driver(driver: Driver, reader: SourceReader, *, log_json: bool) -> int:
    status = 0
    try:
        driver.run(reader)
    except KSExecutionError as error:
        print(error.describe(), file=sys.stderr)
        status = 1
    if log_json:
        print(driver.logger.to_json(), file=sys.stderr)
    return status


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Kaleidoscope incremental compiler and REPL")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Record operator and prototype snapshots in the state log")
    parser.add_argument("-quiet", "--quiet", dest="quiet", action="store_true", help="Do not dump generated units")
    parser.add_argument("--log-json", action="store_true", help="Emit the state log as JSON on exit")
    args = parser.parse_args(argv)
    dump = not args.quiet

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        if sys.stdin.isatty():
            return run_repl(dump=dump, verbose=args.verbose, log_json=args.log_json)
        return run_source(sys.stdin.read(), "<stdin>", dump=dump, verbose=args.verbose, log_json=args.log_json)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except (OSError, UnicodeDecodeError) as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    return run_source(source_text, filename, dump=dump, verbose=args.verbose, log_json=args.log_json)


if __name__ == "__main__":
    raise SystemExit(run_cli())
