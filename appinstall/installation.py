# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Installation pipeline.

The pipeline runs a fixed sequence of steps over a staged package:

    NotStarted -> PreInstall -> RestoringLibraries -> MaterializingFiles
               -> RunningLodrun -> PostInstall -> Complete

Any step may end in Failed instead. A step whose component is absent is a
no-op. Nothing already applied to the target is undone on failure.

`run` does not raise for pipeline failures: the outcome, including the error
and the step it happened in, is returned as an `InstallReport`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable

from appinstall.components import BareDirectory, File, Library
from appinstall.config import PackageConfiguration
from appinstall.errors import AppInstallError, ErrorKind
from appinstall.extraction import StagedComponent, StagedLayout
from appinstall.target import RestoreRequest, TargetSystem, target_error


class ConfirmMode(str, Enum):
	PROMPT_EACH = "prompt-each"
	YES_TO_ALL = "yes-to-all"
	CONTINUE_IF_NOT_DELETE = "continue-if-not-delete"


@dataclass(frozen=True)
class InstallOptions:
	confirm: ConfirmMode = ConfirmMode.PROMPT_EACH
	run_lodrun: bool = False
	rstlib_target: str | None = None
	rstasp_target: str | None = None
	rstaspdev_target: str | None = None


class InstallState(str, Enum):
	NOT_STARTED = "NotStarted"
	PRE_INSTALL = "PreInstall"
	RESTORING_LIBRARIES = "RestoringLibraries"
	MATERIALIZING_FILES = "MaterializingFiles"
	RUNNING_LODRUN = "RunningLodrun"
	POST_INSTALL = "PostInstall"
	COMPLETE = "Complete"
	FAILED = "Failed"


PIPELINE_STEPS = (
	InstallState.PRE_INSTALL,
	InstallState.RESTORING_LIBRARIES,
	InstallState.MATERIALIZING_FILES,
	InstallState.RUNNING_LODRUN,
	InstallState.POST_INSTALL,
)


@dataclass(frozen=True)
class SkippedLibrary:
	name: str
	reason: str


@dataclass(frozen=True)
class InstallReport:
	state: InstallState
	restored: tuple[str, ...] = ()
	skipped: tuple[SkippedLibrary, ...] = ()
	materialized: tuple[str, ...] = ()
	failed_step: InstallState | None = None
	error: AppInstallError | None = None

	@property
	def ok(self) -> bool:
		return self.state is InstallState.COMPLETE

	@property
	def partial(self) -> bool:
		return self.ok and bool(self.skipped)

	def to_dict(self) -> dict[str, Any]:
		return {
			"ok": self.ok,
			"partial": self.partial,
			"state": self.state.value,
			"failed_step": self.failed_step.value if self.failed_step is not None else None,
			"restored": list(self.restored),
			"skipped": [{"name": s.name, "reason": s.reason} for s in self.skipped],
			"materialized": list(self.materialized),
			"error": self.error.to_dict() if self.error is not None else None,
		}


Prompt = Callable[[str], bool]


def console_prompt(question: str) -> bool:
	try:
		answer = input(f"{question} [y/N] ")
	except EOFError:
		return False
	return answer.strip().lower() in ("y", "yes")


class InstallationTask:
	def __init__(
		self,
		logger: logging.Logger,
		config: PackageConfiguration,
		layout: StagedLayout,
		target: TargetSystem,
		*,
		prompt: Prompt = console_prompt,
	) -> None:
		self.logger = logger
		self.config = config
		self.layout = layout
		self.target = target
		self.prompt = prompt
		self.state = InstallState.NOT_STARTED
		self._restored: list[str] = []
		self._skipped: list[SkippedLibrary] = []
		self._materialized: list[str] = []

	def _enter(self, state: InstallState) -> None:
		self.logger.debug("State: %s -> %s", self.state.value, state.value)
		self.state = state

	def _report(self, **kw: Any) -> InstallReport:
		return InstallReport(
			state=self.state,
			restored=tuple(self._restored),
			skipped=tuple(self._skipped),
			materialized=tuple(self._materialized),
			**kw,
		)

	def run(self, options: InstallOptions) -> InstallReport:
		if self.state is not InstallState.NOT_STARTED:
			raise RuntimeError("an installation task can only run once")
		steps: dict[InstallState, Callable[[InstallOptions], None]] = {
			InstallState.PRE_INSTALL: self._pre_install,
			InstallState.RESTORING_LIBRARIES: self._restore_libraries,
			InstallState.MATERIALIZING_FILES: self._materialize,
			InstallState.RUNNING_LODRUN: self._lodrun,
			InstallState.POST_INSTALL: self._post_install,
		}
		try:
			for step in PIPELINE_STEPS:
				self._enter(step)
				try:
					steps[step](options)
				except OSError as err:
					raise target_error(f"target I/O failed: {err}", reason_code="TARGET_IO_FAILED") from err
			self._enter(InstallState.COMPLETE)
		except AppInstallError as err:
			failed_step = self.state
			if err.step is None:
				err = replace(err, step=failed_step.value)
			self._enter(InstallState.FAILED)
			self.logger.error("Installation failed during %s: %s", failed_step.value, err.message)
			if self._restored or self._materialized:
				self.logger.error("Changes already applied to the target were left in place")
			return self._report(failed_step=failed_step, error=err)
		finally:
			self.layout.discard()

		report = self._report()
		for s in report.skipped:
			self.logger.warning("Library %s was not restored (%s)", s.name, s.reason)
		self.logger.info("Installation complete%s", " (partial: some libraries were skipped)" if report.partial else "")
		return report

	# -- steps -----------------------------------------------------------

	def _run_script(self, staged: StagedComponent) -> None:
		what = staged.component.describe()
		self.logger.info("Running %s", what)
		env = {
			"APPINSTALL_STAGING_DIR": str(self.layout.root),
			"APPINSTALL_PACKAGE": str(self.config.artifact),
		}
		try:
			cp = self.target.run_script(staged.location, env=env)
		except OSError as err:
			raise AppInstallError(kind=ErrorKind.SCRIPT, message=f"cannot start {what}: {err}", reason_code="SCRIPT_NOT_STARTED") from err
		for line in (cp.stdout or "").splitlines():
			self.logger.info("  %s", line)
		for line in (cp.stderr or "").splitlines():
			self.logger.warning("  %s", line)
		if cp.returncode != 0:
			raise AppInstallError(
				kind=ErrorKind.SCRIPT,
				message=f"{what} ended with status {cp.returncode}",
				reason_code="SCRIPT_FAILED",
			)

	def _pre_install(self, options: InstallOptions) -> None:
		if self.layout.pre is None:
			self.logger.debug("No pre-install script")
			return
		self._run_script(self.layout.pre)

	def _post_install(self, options: InstallOptions) -> None:
		if self.layout.post is None:
			self.logger.debug("No post-install script")
			return
		self._run_script(self.layout.post)

	def _skip(self, name: str, reason: str) -> None:
		self._skipped.append(SkippedLibrary(name=name, reason=reason))

	def _restore_libraries(self, options: InstallOptions) -> None:
		for staged in self.layout.components:
			lib = staged.component
			if not isinstance(lib, Library):
				continue
			request = RestoreRequest(
				library=lib.name,
				save_file=staged.location,
				rstlib=options.rstlib_target,
				rstasp=options.rstasp_target,
				rstaspdev=options.rstaspdev_target,
				replace=options.confirm is ConfirmMode.YES_TO_ALL,
			)
			target_name = request.target_name
			if options.confirm is ConfirmMode.PROMPT_EACH and self.target.library_exists(target_name):
				if not self.prompt(f"Library {target_name} already exists on the target. Delete and replace it?"):
					self.logger.info("Not restoring %s", lib.name)
					self._skip(lib.name, "declined")
					continue
				request = replace(request, replace=True)

			if target_name != lib.name:
				self.logger.info("Restoring library %s as %s", lib.name, target_name)
			else:
				self.logger.info("Restoring library %s", lib.name)
			try:
				self.target.restore_library(request)
			except AppInstallError as err:
				if options.confirm is ConfirmMode.CONTINUE_IF_NOT_DELETE and err.requires_delete:
					self.logger.warning("Skipping library %s: %s", lib.name, err.message)
					self._skip(lib.name, "requires delete")
					continue
				if err.library is None:
					raise replace(err, library=lib.name) from err
				raise
			self._restored.append(lib.name)

	def _materialize(self, options: InstallOptions) -> None:
		for staged in self.layout.components:
			c = staged.component
			if isinstance(c, BareDirectory):
				self.logger.info("Creating directory %s", c.path)
				self.target.create_directory(c.path)
			elif isinstance(c, File):
				self.logger.info("Installing %s", c.path)
				self.target.copy_in(staged.location, c.path)
			else:
				continue
			self._materialized.append(c.path)

	def _lodrun(self, options: InstallOptions) -> None:
		staged = self.layout.lodrun
		if staged is None:
			if options.run_lodrun:
				self.logger.warning("Lodrun requested but the package has no lodrun library")
			return
		if not options.run_lodrun:
			self.logger.info("Not running lodrun library %s (use -l to run it)", staged.component.path)
			return
		self.logger.info("Running lodrun library %s", staged.component.path)
		self.target.load_and_run(staged.component.path, staged.location)
