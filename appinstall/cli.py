# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Build command.

Flags are order-sensitive (components are packaged in the order given), so the
command line is read with a `TokenCursor` rather than argparse: each flag that
takes a value asks the cursor for the next token and fails with
MissingArgument when there is none.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path

import appinstall
from appinstall.builder import BUILD_FLAGS, PackageBuilder
from appinstall.errors import AppInstallError, missing_argument, usage_error
from appinstall.logging_utils import log_failure, setup_logger
from appinstall.target import make_target_system

GLOBAL_VALUE_FLAGS = ("--target-root", "--sign-key")
GLOBAL_SWITCHES = ("-v", "-h", "--help", "--version")
KNOWN_FLAGS = frozenset((*BUILD_FLAGS, *GLOBAL_VALUE_FLAGS, *GLOBAL_SWITCHES))

BUILD_USAGE = """
Usage: appinstall -o <package_file> [options] [[component]...]

  <package_file> is the file name of the install package you are creating
    (.pyz file extension is preferred; run it with `python <package_file>`)

   Valid options include:
       -v                  : verbose mode
       --version           : print version information
       -h/--help           : print this help
       --sign-key <file>   : sign the package with an Ed25519 key (see appinstall-keygen)
       --target-root <dir> : read libraries from a directory-emulated system rooted at <dir>

  Multiple components can be specified. These identify components
  of the application for which you are creating an installer.
    Valid component values include:
        --qsys <library>   : a library in the QSYS.LIB file system
        --dir  <dir>       : a directory (contents are not included)
        --file <file/dir>  : a file or directory (if a directory, contents are included)
        --pre  <file>      : a pre-install script (only one can be specified)
        --post <file>      : a post-install script (only one can be specified)
        --lodrun <library> : a library with a QINSTALL program to run on install (only one)
        --spec <file>      : a specification file listing application components
"""


@dataclass(frozen=True)
class TokenCursor:
	tokens: tuple[str, ...]
	pos: int = 0

	def at_end(self) -> bool:
		return self.pos >= len(self.tokens)

	def next(self) -> tuple[str, TokenCursor]:
		if self.at_end():
			raise IndexError("no more tokens")
		return self.tokens[self.pos], TokenCursor(self.tokens, self.pos + 1)

	def expect_value(self, flag: str) -> tuple[str, TokenCursor]:
		"""
		Take the value following `flag`.

		A missing token, an empty token, or a token that is itself a known flag
		all count as a missing value.
		"""
		if self.at_end():
			raise missing_argument(flag)
		tok = self.tokens[self.pos]
		if not tok or tok.lower() in KNOWN_FLAGS:
			raise missing_argument(flag)
		return tok, TokenCursor(self.tokens, self.pos + 1)


@dataclass(frozen=True)
class BuildOptions:
	directives: tuple[tuple[str, str], ...] = ()
	verbose: bool = False
	show_help: bool = False
	show_version: bool = False
	target_root: Path | None = None
	sign_key: str | None = None


def parse_build_args(argv: list[str]) -> BuildOptions:
	directives: list[tuple[str, str]] = []
	verbose = show_help = show_version = False
	target_root: Path | None = None
	sign_key: str | None = None

	cursor = TokenCursor(tuple(argv))
	while not cursor.at_end():
		tok, cursor = cursor.next()
		flag = tok.lower()
		if flag == "-v":
			verbose = True
		elif flag in ("-h", "--help"):
			show_help = True
		elif flag == "--version":
			show_version = True
		elif flag == "--target-root":
			value, cursor = cursor.expect_value(tok)
			target_root = Path(value)
		elif flag == "--sign-key":
			sign_key, cursor = cursor.expect_value(tok)
		elif flag in BUILD_FLAGS:
			value, cursor = cursor.expect_value(tok)
			directives.append((flag, value))
		else:
			raise usage_error(f"Unrecognized argument: {tok}", flag=tok, reason_code="UNKNOWN_FLAG")

	return BuildOptions(
		directives=tuple(directives),
		verbose=verbose,
		show_help=show_help,
		show_version=show_version,
		target_root=target_root,
		sign_key=sign_key,
	)


def print_usage() -> None:
	print(BUILD_USAGE)


def main(argv: list[str] | None = None) -> int:
	args = list(sys.argv[1:] if argv is None else argv)
	try:
		opts = parse_build_args(args)
	except AppInstallError as err:
		logger = setup_logger("-v" in args)
		log_failure(logger, err, verbose="-v" in args)
		print_usage()
		return -1

	logger = setup_logger(opts.verbose)
	if opts.show_help:
		print_usage()
		return 0
	if opts.show_version:
		print(f"Version: {appinstall.__version__}")
		return 0
	if not opts.directives:
		print_usage()
		return -1

	builder = PackageBuilder(logger, make_target_system(logger, opts.target_root))
	try:
		if opts.sign_key is not None:
			builder.set_signing_key(opts.sign_key)
		for flag, value in opts.directives:
			builder.apply(flag, value)
		builder.build()
	except AppInstallError as err:
		log_failure(logger, err, verbose=opts.verbose)
		if err.is_usage:
			print_usage()
			return -1
		return 1
	except Exception as err:
		log_failure(logger, err, verbose=opts.verbose)
		return 1
	return 0
