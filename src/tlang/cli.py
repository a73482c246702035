"""Command-line interface for the T language frontend."""

import sys
import logging
import argparse
from pathlib import Path

from .lexer import Lexer
from .types import UNKNOWN, describe
from .tokens import TokenType
from .compiler import Compiler, CompilerOptions
from .interner import StringInterner
from .location import LocationPool
from .token_provider import TokenProvider


def _read(path: Path) -> str | None:
  if not path.is_file():
    print(f"Error: Source file '{path}' not found", file=sys.stderr)
    return None
  return path.read_text()


def dump_tokens(path: Path) -> int:
  source = _read(path)
  if source is None:
    return 2
  interner = StringInterner()
  locations = LocationPool(source)
  provider = TokenProvider(Lexer(source, interner))
  while True:
    token = provider.advance()
    value = token.value
    if token.type in (TokenType.IDENT, TokenType.STRING):
      value = repr(interner.resolve(value))
    suffix = "" if value is None else f" {value}"
    print(f"{locations.locate(token.start)} {token.type.name}{suffix}")
    if token.type == TokenType.EOF:
      break
  for error in provider.errors:
    print(f"{path}:{error.location.line}:{error.location.column}: {error.message}", file=sys.stderr)
  return 1 if provider.errors else 0


def dump_ast(path: Path, options: CompilerOptions) -> int:
  source = _read(path)
  if source is None:
    return 2
  result = Compiler(options).check_source(source, path)
  program = result.program
  types = result.checked.expr_types if result.checked is not None else {}
  for ref in range(len(program.expressions)):
    expr_type = describe(types.get(ref, UNKNOWN), program.interner)
    print(f"{ref:5d}  {program.expressions.get(ref)}  : {expr_type}")
  if not result.success:
    print(result.format_errors(), file=sys.stderr)
    return 1
  return 0


def check(path: Path, options: CompilerOptions) -> int:
  source = _read(path)
  if source is None:
    return 2
  result = Compiler(options).check_source(source, path)
  if not result.success:
    print(result.format_errors(), file=sys.stderr)
    return 1
  checked = result.checked
  print(f"{path}: ok ({len(checked.expr_types)} expressions, {len(checked.instantiations)} instantiations)")
  return 0


def main(argv: list[str] | None = None) -> int:
  """Main entry point for the tlangc frontend."""
  parser = argparse.ArgumentParser(
    prog="tlangc",
    description="T language frontend - lexer, parser and type checker",
  )
  common = argparse.ArgumentParser(add_help=False)
  common.add_argument("--verbose", "-v", action="store_true", help="Log pipeline phases at debug level")
  commands = parser.add_subparsers(dest="command", required=True)

  check_parser = commands.add_parser(
    "check", parents=[common], help="Parse, resolve imports and type check a source file"
  )
  check_parser.add_argument("source", type=Path, help="Source file to check (.t)")
  check_parser.add_argument(
    "-I",
    "--include",
    dest="include",
    type=Path,
    action="append",
    default=[],
    help="Additional directory to search for imported modules",
  )
  check_parser.add_argument(
    "--max-recursion-depth",
    type=int,
    default=CompilerOptions.max_recursion_depth,
    help="Nesting limit for parsing and type inference",
  )

  tokens_parser = commands.add_parser("tokens", parents=[common], help="Dump the token stream of a source file")
  tokens_parser.add_argument("source", type=Path, help="Source file to tokenize (.t)")

  ast_parser = commands.add_parser("ast", parents=[common], help="Dump the expression pool with resolved types")
  ast_parser.add_argument("source", type=Path, help="Source file to dump (.t)")

  args = parser.parse_args(argv)

  logging.basicConfig(
    level=logging.DEBUG if args.verbose else logging.WARNING,
    format="%(levelname)s %(name)s: %(message)s",
  )

  match args.command:
    case "check":
      options = CompilerOptions(max_recursion_depth=args.max_recursion_depth, search_paths=args.include)
      return check(args.source, options)
    case "tokens":
      return dump_tokens(args.source)
    case "ast":
      return dump_ast(args.source, CompilerOptions())
  return 2


if __name__ == "__main__":
  sys.exit(main())
