# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Payload extraction into a local staging area.

Extraction only touches `<staging dir>/appinstall-<manifest digest>`, never
anything else in the staging directory. That subdirectory is emptied first, so
re-running extraction (for example after a failed attempt) produces the same
tree as a first run.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path

from appinstall.components import Component, ManifestEntry, Payload
from appinstall.config import PackageConfiguration
from appinstall.errors import AppInstallError, ErrorKind, corrupt_package


@dataclass(frozen=True)
class StagedComponent:
	component: Component
	location: Path


@dataclass(frozen=True)
class StagedLayout:
	root: Path
	components: tuple[StagedComponent, ...]
	pre: StagedComponent | None = None
	post: StagedComponent | None = None
	lodrun: StagedComponent | None = None

	def discard(self) -> None:
		shutil.rmtree(self.root, ignore_errors=True)


def default_staging_dir() -> Path:
	return Path(tempfile.gettempdir()) / "appinstall-staging"


def staging_root(parent: Path, config: PackageConfiguration) -> Path:
	"""The directory owned by one package under `parent`; only this is ever cleared."""
	return parent / f"appinstall-{config.digest[:16]}"


def _extraction_error(message: str, *, path: str | None = None) -> AppInstallError:
	return AppInstallError(kind=ErrorKind.EXTRACTION, message=message, reason_code="EXTRACTION_FAILED", path=path)


class ExtractionTask:
	def __init__(self, logger: logging.Logger, config: PackageConfiguration, staging_dir: Path | None = None) -> None:
		self.logger = logger
		self.config = config
		self.staging_dir = staging_dir if staging_dir is not None else default_staging_dir()

	def _stage_payload(self, zf: zipfile.ZipFile, entry: ManifestEntry, dest: Path) -> Path:
		payload: Payload | None = entry.payload
		if payload is None:
			# Bare directory: identity only.
			dest.mkdir(parents=True)
			return dest
		if payload.kind == "tree":
			dest.mkdir(parents=True)
			for d in payload.dirs:
				(dest / d).mkdir(parents=True, exist_ok=True)
			location = dest
		else:
			location = dest / payload.files[0].rel_path
		for pf in payload.files:
			out = dest / pf.rel_path
			out.parent.mkdir(parents=True, exist_ok=True)
			h = hashlib.sha256()
			arcname = payload.archive_name(pf)
			try:
				with zf.open(arcname) as src, out.open("wb") as dst:
					for chunk in iter(lambda: src.read(1 << 20), b""):
						h.update(chunk)
						dst.write(chunk)
			except KeyError as err:
				raise corrupt_package(f"payload entry missing from package: {arcname}", reason_code="PAYLOAD_MISSING", path=arcname) from err
			if h.hexdigest() != pf.sha256:
				raise corrupt_package(f"payload sha256 mismatch for {arcname}", reason_code="PAYLOAD_SHA_MISMATCH", path=arcname)
			out.chmod(pf.mode)
		return location

	def run(self) -> StagedLayout:
		"""Extract every component into a fresh staging area and describe the result."""
		manifest = self.config.manifest
		root = staging_root(self.staging_dir, self.config)
		self.logger.info("Extracting package to %s", root)
		try:
			if root.exists():
				self.logger.debug("Removing previous staging area %s", root)
				shutil.rmtree(root)
			root.mkdir(parents=True)
			with zipfile.ZipFile(self.config.artifact) as zf:
				staged = tuple(
					StagedComponent(component=e.component, location=self._stage_payload(zf, e, root / f"{idx:04d}"))
					for idx, e in enumerate(manifest.entries)
				)

				def _single(entry: ManifestEntry | None, name: str) -> StagedComponent | None:
					if entry is None:
						return None
					return StagedComponent(component=entry.component, location=self._stage_payload(zf, entry, root / name))

				pre = _single(manifest.pre, "pre")
				post = _single(manifest.post, "post")
				lodrun = _single(manifest.lodrun, "lodrun")
		except (OSError, zipfile.BadZipFile) as err:
			raise _extraction_error(f"cannot stage package contents: {err}", path=str(root)) from err
		self.logger.debug("Staged %d component(s)", len(staged))
		return StagedLayout(root=root, components=staged, pre=pre, post=post, lodrun=lodrun)
