# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Target system access.

Everything the install pipeline does to the target goes through a
`TargetSystem`: library save/restore, load-and-run, script execution and
filesystem materialization. The builder uses the same interface on the source
system to capture library save data.

- `CommandTargetSystem` talks to IBM i through the PASE `system` utility.
- `DirectoryTargetSystem` emulates the target inside a local directory and
  journals every side effect. It backs the test suite and dry runs.
"""

from __future__ import annotations

import io
import logging
import os
import secrets
import shutil
import subprocess
import tempfile
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Mapping

from appinstall.container import stable_zipinfo
from appinstall.errors import AppInstallError, ErrorKind

LODRUN_ENTRY = "QINSTALL"


@dataclass(frozen=True)
class RestoreRequest:
	library: str
	save_file: Path
	rstlib: str | None = None
	rstasp: str | None = None
	rstaspdev: str | None = None
	replace: bool = False

	@property
	def target_name(self) -> str:
		return self.rstlib or self.library


@dataclass(frozen=True)
class TargetEvent:
	action: str
	subject: str
	detail: Mapping[str, Any] = field(default_factory=dict)


def target_error(message: str, *, reason_code: str, library: str | None = None, path: str | None = None, requires_delete: bool = False) -> AppInstallError:
	return AppInstallError(
		kind=ErrorKind.TARGET_SYSTEM,
		message=message,
		reason_code=reason_code,
		library=library,
		path=path,
		requires_delete=requires_delete,
	)


def library_exists_error(name: str) -> AppInstallError:
	return target_error(
		f"library {name} already exists on the target; a delete is required to restore it",
		reason_code="LIBRARY_EXISTS",
		library=name,
		requires_delete=True,
	)


class TargetSystem(ABC):
	"""Blocking access to the system a package is built from or installed onto."""

	def __init__(self, logger: logging.Logger) -> None:
		self.logger = logger

	@abstractmethod
	def library_exists(self, name: str) -> bool: ...

	@abstractmethod
	def save_library(self, name: str, dest: Path) -> None:
		"""Write save data for library `name` to the local file `dest`."""

	@abstractmethod
	def restore_library(self, request: RestoreRequest) -> None:
		"""
		Restore a library from save data.

		Without `request.replace` an existing target library is an error with
		`requires_delete` set; with it the existing library is deleted first.
		"""

	@abstractmethod
	def load_and_run(self, library: str, save_file: Path) -> None: ...

	def resolve_path(self, path: str) -> Path:
		"""Map a target filesystem path to the local path that represents it."""
		return Path(path)

	def create_directory(self, path: str) -> Path:
		dest = self.resolve_path(path)
		try:
			dest.mkdir(parents=True, exist_ok=True)
		except OSError as err:
			raise target_error(f"cannot create directory: {err}", reason_code="MKDIR_FAILED", path=path) from err
		return dest

	def copy_in(self, staged: Path, path: str) -> Path:
		"""Copy a staged file or directory tree onto the target at `path`."""
		dest = self.resolve_path(path)
		try:
			dest.parent.mkdir(parents=True, exist_ok=True)
			if staged.is_dir():
				shutil.copytree(staged, dest, dirs_exist_ok=True)
			else:
				shutil.copyfile(staged, dest)
				shutil.copymode(staged, dest)
		except OSError as err:
			raise target_error(f"cannot copy {staged} to target: {err}", reason_code="COPY_FAILED", path=path) from err
		return dest

	def run_script(self, script: Path, *, env: Mapping[str, str] | None = None) -> subprocess.CompletedProcess[str]:
		"""
		Run an install script and return the completed process.

		Scripts with a `#!` line and the execute bit are executed directly;
		anything else goes through /bin/sh. The caller decides what a non-zero
		status means.
		"""
		with script.open("rb") as f:
			has_shebang = f.read(2) == b"#!"
		direct = has_shebang and os.access(script, os.X_OK)
		argv = [str(script)] if direct else ["/bin/sh", str(script)]
		run_env = dict(os.environ)
		if env:
			run_env.update(env)
		return subprocess.run(argv, env=run_env, cwd=str(script.parent), text=True, capture_output=True, check=False)


class CommandTargetSystem(TargetSystem):
	"""
	IBM i backend issuing CL commands through PASE `system`.

	Save data moves through a temporary save file in `work_library`; the save
	file object is read and written through its /QSYS.LIB IFS path.
	"""

	def __init__(
		self,
		logger: logging.Logger,
		*,
		work_library: str = "QGPL",
		system_cmd: str = "system",
		qsys_root: Path = Path("/QSYS.LIB"),
	) -> None:
		super().__init__(logger)
		self.work_library = work_library
		self.system_cmd = system_cmd
		self.qsys_root = qsys_root

	def _cl(self, command: str, *, library: str | None = None) -> str:
		self.logger.debug("CL: %s", command)
		try:
			cp = subprocess.run([self.system_cmd, command], text=True, capture_output=True, check=False)
		except OSError as err:
			raise target_error(f"cannot run '{self.system_cmd}': {err}", reason_code="CL_UNAVAILABLE", library=library) from err
		output = (cp.stdout or "") + (cp.stderr or "")
		if cp.returncode != 0:
			raise target_error(f"{command} failed: {output.strip()}", reason_code="CL_FAILED", library=library)
		return output

	def _lib_ifs_path(self, name: str) -> Path:
		return self.qsys_root / f"{name}.LIB"

	def _new_savf(self) -> tuple[str, Path]:
		name = "AI" + secrets.token_hex(4).upper()
		self._cl(f"CRTSAVF FILE({self.work_library}/{name})")
		return name, self._lib_ifs_path(self.work_library) / f"{name}.FILE"

	def _drop_savf(self, name: str) -> None:
		try:
			self._cl(f"DLTF FILE({self.work_library}/{name})")
		except AppInstallError as err:
			self.logger.warning("could not delete temporary save file %s/%s: %s", self.work_library, name, err.message)

	def library_exists(self, name: str) -> bool:
		return self._lib_ifs_path(name).is_dir()

	def save_library(self, name: str, dest: Path) -> None:
		savf, savf_path = self._new_savf()
		try:
			self._cl(f"SAVLIB LIB({name}) DEV(*SAVF) SAVF({self.work_library}/{savf})", library=name)
			try:
				dest.parent.mkdir(parents=True, exist_ok=True)
				shutil.copyfile(savf_path, dest)
			except OSError as err:
				raise target_error(f"cannot copy save data of {name}: {err}", reason_code="SAVE_FAILED", library=name) from err
		finally:
			self._drop_savf(savf)

	def _load_savf(self, save_file: Path) -> str:
		savf, savf_path = self._new_savf()
		try:
			shutil.copyfile(save_file, savf_path)
		except OSError as err:
			self._drop_savf(savf)
			raise target_error(f"cannot load save data into {savf_path}: {err}", reason_code="SAVF_LOAD_FAILED") from err
		return savf

	def restore_library(self, request: RestoreRequest) -> None:
		name = request.target_name
		if self.library_exists(name):
			if not request.replace:
				raise library_exists_error(name)
			self._cl(f"DLTLIB LIB({name})", library=name)
		savf = self._load_savf(request.save_file)
		try:
			cmd = f"RSTLIB SAVLIB({request.library}) DEV(*SAVF) SAVF({self.work_library}/{savf})"
			if request.rstlib:
				cmd += f" RSTLIB({request.rstlib})"
			if request.rstasp:
				cmd += f" RSTASP({request.rstasp})"
			if request.rstaspdev:
				cmd += f" RSTASPDEV({request.rstaspdev})"
			self._cl(cmd, library=request.library)
		finally:
			self._drop_savf(savf)

	def load_and_run(self, library: str, save_file: Path) -> None:
		savf = self._load_savf(save_file)
		try:
			self._cl(f"LODRUN DEV(*SAVF) SAVF({self.work_library}/{savf})", library=library)
		finally:
			self._drop_savf(savf)


def _zip_tree(src: Path) -> bytes:
	buf = io.BytesIO()
	with zipfile.ZipFile(buf, mode="w") as zf:
		for p in sorted(src.rglob("*")):
			rel = p.relative_to(src).as_posix()
			mode = p.stat().st_mode & 0o7777
			if p.is_dir():
				zf.writestr(stable_zipinfo(rel, mode=mode, is_dir=True), b"")
			else:
				zf.writestr(stable_zipinfo(rel, mode=mode), p.read_bytes())
	return buf.getvalue()


def _unzip_tree(save_file: Path, dest: Path) -> None:
	with zipfile.ZipFile(save_file) as zf:
		for info in zf.infolist():
			if info.filename.startswith("/") or ".." in PurePosixPath(info.filename).parts:
				raise ValueError(f"unsafe entry in save data: {info.filename}")
			out = dest / info.filename
			if info.is_dir():
				out.mkdir(parents=True, exist_ok=True)
				continue
			out.parent.mkdir(parents=True, exist_ok=True)
			out.write_bytes(zf.read(info))
			mode = (info.external_attr >> 16) & 0o7777
			if mode:
				out.chmod(mode)


class DirectoryTargetSystem(TargetSystem):
	"""
	Directory-backed emulation of a target system.

	Layout under `root`:
	- libraries: `QSYS.LIB/<NAME>.LIB/` directories,
	- filesystem paths: `<root>/<absolute path without leading slash>`.

	Save data is a deterministic zip of the library directory. Load-and-run
	restores the save data into a scratch directory and runs its `QINSTALL`
	entry as a script. Every side effect is appended to `journal`.
	"""

	def __init__(self, logger: logging.Logger, root: Path) -> None:
		super().__init__(logger)
		self.root = root
		self.journal: list[TargetEvent] = []

	def _record(self, action: str, subject: str, **detail: Any) -> None:
		self.journal.append(TargetEvent(action=action, subject=subject, detail=detail))

	def library_path(self, name: str) -> Path:
		return self.root / "QSYS.LIB" / f"{name}.LIB"

	def resolve_path(self, path: str) -> Path:
		return self.root / PurePosixPath(path).as_posix().lstrip("/")

	def library_exists(self, name: str) -> bool:
		return self.library_path(name).is_dir()

	def save_library(self, name: str, dest: Path) -> None:
		src = self.library_path(name)
		if not src.is_dir():
			raise target_error(f"library {name} not found", reason_code="LIBRARY_NOT_FOUND", library=name)
		dest.parent.mkdir(parents=True, exist_ok=True)
		dest.write_bytes(_zip_tree(src))
		self._record("save", name)

	def restore_library(self, request: RestoreRequest) -> None:
		name = request.target_name
		dest = self.library_path(name)
		if dest.exists() and not request.replace:
			raise library_exists_error(name)
		try:
			if dest.exists():
				shutil.rmtree(dest)
			dest.mkdir(parents=True)
			_unzip_tree(request.save_file, dest)
		except (OSError, ValueError, zipfile.BadZipFile) as err:
			raise target_error(f"restore of {request.library} failed: {err}", reason_code="RESTORE_FAILED", library=request.library) from err
		self._record(
			"restore",
			request.library,
			rstlib=request.rstlib,
			rstasp=request.rstasp,
			rstaspdev=request.rstaspdev,
			replace=request.replace,
		)

	def load_and_run(self, library: str, save_file: Path) -> None:
		with tempfile.TemporaryDirectory(prefix="appinstall-lodrun-") as scratch:
			scratch_path = Path(scratch)
			try:
				_unzip_tree(save_file, scratch_path)
			except (OSError, ValueError, zipfile.BadZipFile) as err:
				raise target_error(f"cannot load {library}: {err}", reason_code="LODRUN_FAILED", library=library) from err
			entry = scratch_path / LODRUN_ENTRY
			if not entry.is_file():
				raise target_error(f"library {library} has no {LODRUN_ENTRY} entry point", reason_code="LODRUN_NO_ENTRY", library=library)
			self._record("lodrun", library)
			try:
				cp = super().run_script(entry)
			except OSError as err:
				raise target_error(f"cannot run {LODRUN_ENTRY} in {library}: {err}", reason_code="LODRUN_FAILED", library=library) from err
			if cp.returncode != 0:
				raise target_error(
					f"{LODRUN_ENTRY} in {library} ended with status {cp.returncode}: {(cp.stderr or '').strip()}",
					reason_code="LODRUN_FAILED",
					library=library,
				)

	def create_directory(self, path: str) -> Path:
		dest = super().create_directory(path)
		self._record("mkdir", path)
		return dest

	def copy_in(self, staged: Path, path: str) -> Path:
		dest = super().copy_in(staged, path)
		self._record("copy", path)
		return dest

	def run_script(self, script: Path, *, env: Mapping[str, str] | None = None) -> subprocess.CompletedProcess[str]:
		self._record("script", script.name)
		return super().run_script(script, env=env)


def make_target_system(logger: logging.Logger, target_root: Path | None) -> TargetSystem:
	"""The directory emulation when `--target-root` was given, otherwise IBM i."""
	if target_root is not None:
		return DirectoryTargetSystem(logger, target_root)
	return CommandTargetSystem(logger)
