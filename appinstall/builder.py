# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Package builder.

The builder keeps its draft as an immutable `_BuildState`. Every operation
computes a new state and only then commits it, so a failing call (missing
value, duplicate script, unreadable spec file, ...) leaves the draft exactly
as it was. A spec file is applied as a single transition.
"""

from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import appinstall
from appinstall.components import (
	BareDirectory,
	Component,
	File,
	Library,
	LodrunLibrary,
	Manifest,
	ManifestEntry,
	Payload,
	PayloadFile,
	Script,
	ScriptRole,
	absolute_posix_path,
	manifest_to_dict,
	normalize_library_name,
)
from appinstall.container import PAYLOAD_ROOT, ArchiveFile, bundled_sources, canonical_json_bytes, sha256_file, write_package
from appinstall.crypto import load_seed32, sign_manifest
from appinstall.errors import AppInstallError, manifest_error, missing_argument, usage_error
from appinstall.specfile import load_spec_directives
from appinstall.target import TargetSystem

# Directive vocabulary shared by the build command and spec files.
BUILD_FLAGS: dict[str, str] = {
	"-o": "set_output_file",
	"--pre": "add_pre_install",
	"--post": "add_post_install",
	"--qsys": "add_library",
	"--dir": "add_bare_directory",
	"--file": "add_file",
	"--spec": "add_from_spec_file",
	"--lodrun": "set_lodrun_lib",
}


@dataclass(frozen=True)
class _BuildState:
	output_path: str | None = None
	components: tuple[Component, ...] = ()
	pre: Script | None = None
	post: Script | None = None
	lodrun: LodrunLibrary | None = None
	sign_seed: bytes | None = None


def _require(flag: str, value: str | None) -> str:
	if value is None or not str(value).strip():
		raise missing_argument(flag)
	return str(value)


def _existing_path(flag: str, value: str, *, want_file: bool) -> str:
	p = Path(value)
	ok = p.is_file() if want_file else p.exists()
	if not ok:
		what = "file" if want_file else "file or directory"
		raise manifest_error(f"{flag}: {what} not found: {value}", reason_code="PATH_NOT_FOUND", path=value)
	return absolute_posix_path(value)


def _utc_now() -> datetime:
	return datetime.now(timezone.utc)


class PackageBuilder:
	def __init__(self, logger: logging.Logger, system: TargetSystem, *, clock: Callable[[], datetime] = _utc_now) -> None:
		self.logger = logger
		self.system = system
		self.clock = clock
		self._state = _BuildState()

	@property
	def manifest(self) -> Manifest:
		"""The draft manifest (no payload information until `build()`)."""
		s = self._state
		return Manifest(
			entries=tuple(ManifestEntry(component=c) for c in s.components),
			output_path=s.output_path,
			pre=ManifestEntry(component=s.pre) if s.pre is not None else None,
			post=ManifestEntry(component=s.post) if s.post is not None else None,
			lodrun=ManifestEntry(component=s.lodrun) if s.lodrun is not None else None,
			tool_version=appinstall.__version__,
		)

	# -- transitions -----------------------------------------------------

	def _transition(self, state: _BuildState, flag: str, value: str | None) -> _BuildState:
		flag = flag.lower()
		if flag == "-o":
			return replace(state, output_path=_require(flag, value))
		if flag in ("--pre", "--post"):
			path = _existing_path(flag, _require(flag, value), want_file=True)
			role = ScriptRole.PRE if flag == "--pre" else ScriptRole.POST
			current = state.pre if role is ScriptRole.PRE else state.post
			if current is not None:
				raise manifest_error(
					f"only one {role.value}-install script can be specified (already have {current.path})",
					reason_code="DUPLICATE_SINGLETON",
					path=path,
				)
			script = Script(role=role, path=path)
			return replace(state, pre=script) if role is ScriptRole.PRE else replace(state, post=script)
		if flag == "--qsys":
			return replace(state, components=(*state.components, Library(name=normalize_library_name(_require(flag, value)))))
		if flag == "--dir":
			return replace(state, components=(*state.components, BareDirectory(path=absolute_posix_path(_require(flag, value)))))
		if flag == "--file":
			path = _existing_path(flag, _require(flag, value), want_file=False)
			return replace(state, components=(*state.components, File(path=path)))
		if flag == "--lodrun":
			name = normalize_library_name(_require(flag, value))
			if state.lodrun is not None:
				raise manifest_error(
					f"only one lodrun library can be specified (already have {state.lodrun.path})",
					reason_code="DUPLICATE_SINGLETON",
				)
			return replace(state, lodrun=LodrunLibrary(path=name))
		if flag == "--spec":
			spec_path = _require(flag, value)
			for d in load_spec_directives(spec_path):
				try:
					state = self._transition(state, d.flag, d.value)
				except AppInstallError as err:
					raise replace(err, message=f"{d.where()}: {err.message}") from err
			return state
		raise usage_error(f"Unrecognized argument: {flag}", flag=flag, reason_code="UNKNOWN_FLAG")

	def _commit(self, flag: str, value: str | None) -> None:
		self._state = self._transition(self._state, flag, value)
		self.logger.debug("%s %s", flag, value)

	def apply(self, flag: str, value: str | None) -> None:
		"""Apply one directive from the shared build vocabulary."""
		if flag.lower() not in BUILD_FLAGS:
			raise usage_error(f"Unrecognized argument: {flag}", flag=flag, reason_code="UNKNOWN_FLAG")
		self._commit(flag, value)

	def set_output_file(self, path: str | None) -> None:
		self._commit("-o", path)

	def add_pre_install(self, path: str | None) -> None:
		self._commit("--pre", path)

	def add_post_install(self, path: str | None) -> None:
		self._commit("--post", path)

	def add_library(self, name: str | None) -> None:
		self._commit("--qsys", name)

	def add_bare_directory(self, path: str | None) -> None:
		self._commit("--dir", path)

	def add_file(self, path: str | None) -> None:
		self._commit("--file", path)

	def add_from_spec_file(self, path: str | None) -> None:
		self._commit("--spec", path)

	def set_lodrun_lib(self, name: str | None) -> None:
		self._commit("--lodrun", name)

	def set_signing_key(self, path: str | None) -> None:
		key_path = Path(_require("--sign-key", path))
		try:
			seed = load_seed32(key_path)
		except (OSError, ValueError) as err:
			raise manifest_error(f"--sign-key: {err}", reason_code="SIGNING_KEY_INVALID", path=str(key_path)) from err
		self._state = replace(self._state, sign_seed=seed)

	# -- build -----------------------------------------------------------

	def _capture_fs(self, component: Component, src: Path, root: str, files: list[ArchiveFile], dirs: list[str]) -> Payload:
		if src.is_dir():
			tree_files: list[PayloadFile] = []
			tree_dirs: list[str] = []
			for p in sorted(src.rglob("*")):
				rel = p.relative_to(src).as_posix()
				if p.is_dir():
					tree_dirs.append(rel)
					dirs.append(f"{root}/{rel}")
					continue
				st = p.stat()
				pf = PayloadFile(rel_path=rel, sha256=sha256_file(p), size=st.st_size, mode=st.st_mode & 0o7777)
				tree_files.append(pf)
				files.append(ArchiveFile(arcname=f"{root}/{rel}", source=p, mode=pf.mode))
			dirs.append(root)
			return Payload(root=root, kind="tree", files=tuple(tree_files), dirs=tuple(tree_dirs))
		if not src.is_file():
			raise manifest_error(f"{component.describe()} no longer exists", reason_code="PATH_NOT_FOUND", path=str(src))
		st = src.stat()
		pf = PayloadFile(rel_path=src.name, sha256=sha256_file(src), size=st.st_size, mode=st.st_mode & 0o7777)
		files.append(ArchiveFile(arcname=f"{root}/{pf.rel_path}", source=src, mode=pf.mode))
		return Payload(root=root, kind="file", files=(pf,))

	def _capture_library(self, name: str, root: str, scratch: Path, files: list[ArchiveFile]) -> Payload:
		save_file = scratch / root / f"{name}.SAVF"
		self.system.save_library(name, save_file)
		pf = PayloadFile(rel_path=save_file.name, sha256=sha256_file(save_file), size=save_file.stat().st_size, mode=0o644)
		files.append(ArchiveFile(arcname=f"{root}/{pf.rel_path}", source=save_file, mode=pf.mode))
		return Payload(root=root, kind="savf", files=(pf,))

	def _capture(self, component: Component, root: str, scratch: Path, files: list[ArchiveFile], dirs: list[str]) -> ManifestEntry:
		self.logger.debug("Adding %s", component.describe())
		try:
			if isinstance(component, BareDirectory):
				return ManifestEntry(component=component)
			if isinstance(component, Library):
				return ManifestEntry(component=component, payload=self._capture_library(component.name, root, scratch, files))
			if isinstance(component, LodrunLibrary):
				return ManifestEntry(component=component, payload=self._capture_library(component.path, root, scratch, files))
			return ManifestEntry(component=component, payload=self._capture_fs(component, Path(component.path), root, files, dirs))
		except OSError as err:
			raise manifest_error(f"cannot read {component.describe()}: {err}", reason_code="PAYLOAD_UNREADABLE") from err

	def build(self) -> Manifest:
		"""
		Write the install package and return the manifest embedded in it.

		Nothing is written unless every component could be captured.
		"""
		state = self._state
		if not state.output_path:
			raise manifest_error("no output file specified (use -o <file>)", reason_code="NO_OUTPUT")
		out = Path(state.output_path)
		self.logger.info("Building install package %s", out)

		files: list[ArchiveFile] = []
		dirs: list[str] = []
		with tempfile.TemporaryDirectory(prefix="appinstall-build-") as scratch_dir:
			scratch = Path(scratch_dir)
			entries = tuple(
				self._capture(c, f"{PAYLOAD_ROOT}/{idx:04d}", scratch, files, dirs) for idx, c in enumerate(state.components)
			)
			pre = self._capture(state.pre, f"{PAYLOAD_ROOT}/pre", scratch, files, dirs) if state.pre is not None else None
			post = self._capture(state.post, f"{PAYLOAD_ROOT}/post", scratch, files, dirs) if state.post is not None else None
			lodrun = self._capture(state.lodrun, f"{PAYLOAD_ROOT}/lodrun", scratch, files, dirs) if state.lodrun is not None else None

			manifest = Manifest(
				entries=entries,
				output_path=absolute_posix_path(state.output_path),
				pre=pre,
				post=post,
				lodrun=lodrun,
				tool_version=appinstall.__version__,
				built_at=self.clock().strftime("%Y-%m-%dT%H:%M:%SZ"),
			)
			manifest_bytes = canonical_json_bytes(manifest_to_dict(manifest))
			signature = sign_manifest(manifest_bytes, priv_seed32=state.sign_seed) if state.sign_seed is not None else None
			try:
				write_package(
					out,
					manifest_bytes=manifest_bytes,
					signature_bytes=signature,
					files=files,
					dirs=dirs,
					bundle=bundled_sources(Path(appinstall.__file__).parent),
				)
			except OSError as err:
				raise manifest_error(f"cannot write {out}: {err}", reason_code="OUTPUT_UNWRITABLE", path=str(out)) from err

		self.logger.info(
			"Wrote %s (%d component(s)%s%s%s%s)",
			out,
			len(entries),
			", pre-install script" if pre else "",
			", post-install script" if post else "",
			", lodrun library" if lodrun else "",
			", signed" if signature else "",
		)
		return manifest
