# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Install command.

This is what a package runs when it is executed (`python <package>`); the
bootstrap passes the package path as `artifact`. `appinstall-install <package>`
is the same command for an artifact named on the command line.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import NoReturn

import appinstall
from appinstall.config import PackageConfiguration
from appinstall.crypto import decode_pubkey
from appinstall.errors import AppInstallError, usage_error
from appinstall.extraction import ExtractionTask
from appinstall.installation import ConfirmMode, InstallationTask, InstallOptions, Prompt, console_prompt
from appinstall.logging_utils import log_failure, setup_logger
from appinstall.target import make_target_system

INSTALL_USAGE = """
Usage: python <package_file> [options]
   or: appinstall-install [options] <package_file>

   Valid options include:
       -v                  : verbose mode
       -y                  : replace existing libraries without asking
       -c                  : continue, skipping libraries that would have to be deleted first
       -l/--lodrun         : run the QINSTALL program of the lodrun library, if packaged
       --rstlib <lib>      : restore libraries into <lib>
       --rstasp <num>      : restore libraries into ASP number <num>
       --rstaspdev <dev>   : restore libraries into ASP device <dev>
       --target-root <dir> : install into a directory-emulated system rooted at <dir>
       --staging-dir <dir> : stage the package in a subdirectory of <dir> instead of the temp directory
       --trust-key <key>   : require a valid signature by this base64 Ed25519 public key
                             (may be repeated)
       --version           : print version information
       -h/--help           : print this help
"""


class _UsageParser(argparse.ArgumentParser):
	def error(self, message: str) -> NoReturn:
		raise usage_error(message, reason_code="BAD_ARGUMENTS")


def _build_parser() -> argparse.ArgumentParser:
	p = _UsageParser(prog="appinstall-install", add_help=False, allow_abbrev=False)
	p.add_argument("package", nargs="?", type=Path)
	p.add_argument("-v", action="store_true", dest="verbose")
	confirm = p.add_mutually_exclusive_group()
	confirm.add_argument("-y", action="store_const", dest="confirm", const=ConfirmMode.YES_TO_ALL)
	confirm.add_argument("-c", action="store_const", dest="confirm", const=ConfirmMode.CONTINUE_IF_NOT_DELETE)
	p.add_argument("-l", "--lodrun", action="store_true", dest="run_lodrun")
	p.add_argument("--rstlib")
	p.add_argument("--rstasp")
	p.add_argument("--rstaspdev")
	p.add_argument("--target-root", type=Path)
	p.add_argument("--staging-dir", type=Path)
	p.add_argument("--trust-key", action="append", default=[])
	p.add_argument("-h", "--help", action="store_true", dest="show_help")
	p.add_argument("--version", action="store_true", dest="show_version")
	p.set_defaults(confirm=ConfirmMode.PROMPT_EACH)
	return p


def _options(args: argparse.Namespace) -> InstallOptions:
	return InstallOptions(
		confirm=args.confirm,
		run_lodrun=bool(args.run_lodrun),
		rstlib_target=args.rstlib,
		rstasp_target=args.rstasp,
		rstaspdev_target=args.rstaspdev,
	)


def _trusted_keys(values: list[str]) -> list[bytes]:
	keys: list[bytes] = []
	for v in values:
		try:
			keys.append(decode_pubkey(v))
		except ValueError as err:
			raise usage_error(f"invalid --trust-key: {err}", flag="--trust-key", reason_code="BAD_TRUST_KEY") from err
	return keys


def print_usage() -> None:
	print(INSTALL_USAGE)


def main(argv: list[str] | None = None, *, artifact: str | Path | None = None, prompt: Prompt = console_prompt) -> int:
	argv = list(sys.argv[1:] if argv is None else argv)
	verbose = "-v" in argv
	logger = setup_logger(verbose)
	try:
		args = _build_parser().parse_args(argv)
		package = Path(artifact) if artifact is not None else args.package
		if args.show_help:
			print_usage()
			return 0
		if args.show_version and package is None:
			print(f"Version: {appinstall.__version__}")
			return 0
		if package is None:
			raise usage_error("no install package given", reason_code="NO_PACKAGE")
		if artifact is not None and args.package is not None:
			raise usage_error(f"Unrecognized argument: {args.package}", reason_code="BAD_ARGUMENTS")
		trusted = _trusted_keys(args.trust_key)
	except AppInstallError as err:
		log_failure(logger, err, verbose=verbose)
		print_usage()
		return -1

	try:
		config = PackageConfiguration.load(package, logger=logger, trusted_keys=trusted)
		if args.show_version:
			print(f"Version: {appinstall.__version__}")
			print(f"Package built: {config.manifest.built_at} (appinstall {config.manifest.tool_version})")
			return 0
		layout = ExtractionTask(logger, config, args.staging_dir).run()
		task = InstallationTask(logger, config, layout, make_target_system(logger, args.target_root), prompt=prompt)
		report = task.run(_options(args))
	except AppInstallError as err:
		log_failure(logger, err, verbose=verbose)
		if err.is_usage:
			print_usage()
			return -1
		return 1
	except Exception as err:
		log_failure(logger, err, verbose=verbose)
		return 1

	if not report.ok:
		assert report.error is not None
		log_failure(logger, report.error, verbose=verbose)
		return 1
	if report.partial:
		names = ", ".join(s.name for s in report.skipped)
		logger.warning("Partial install: library(s) not restored: %s", names)
	return 0
