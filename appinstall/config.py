# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import json
import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path

from appinstall.components import Manifest, manifest_from_dict
from appinstall.container import MARKER_PATH, SIGNATURE_PATH, sha256_hex
from appinstall.crypto import verify_manifest_signature
from appinstall.errors import corrupt_package, usage_error


@dataclass(frozen=True)
class PackageConfiguration:
	"""
	Read-only view of the manifest embedded in an install package.

	`digest` is the sha256 of the embedded manifest bytes; it names the staging
	area so re-running the same package reuses (and first clears) one location.
	"""

	artifact: Path
	manifest: Manifest
	digest: str
	signed_by: str | None = None

	@classmethod
	def load(cls, artifact: str | Path, *, logger: logging.Logger, trusted_keys: list[bytes] | None = None) -> PackageConfiguration:
		path = Path(artifact)
		if not path.is_file() or not zipfile.is_zipfile(path):
			raise usage_error(f"{path} is not an install package", reason_code="NOT_A_PACKAGE")
		try:
			with zipfile.ZipFile(path) as zf:
				names = set(zf.namelist())
				if MARKER_PATH not in names:
					raise usage_error(f"{path} is not an install package (no {MARKER_PATH})", reason_code="NOT_A_PACKAGE")
				manifest_bytes = zf.read(MARKER_PATH)
				sig_bytes = zf.read(SIGNATURE_PATH) if SIGNATURE_PATH in names else None
		except (OSError, zipfile.BadZipFile) as err:
			raise corrupt_package(f"cannot read {path}: {err}", path=str(path)) from err

		try:
			manifest = manifest_from_dict(json.loads(manifest_bytes.decode("utf-8")))
		except (UnicodeDecodeError, json.JSONDecodeError, ValueError) as err:
			raise corrupt_package(f"embedded manifest is unreadable: {err}", reason_code="MANIFEST_UNREADABLE", path=str(path)) from err

		signed_by: str | None = None
		if trusted_keys:
			if sig_bytes is None:
				raise corrupt_package("package is not signed but trusted keys were given", reason_code="SIGNATURE_MISSING", path=str(path))
			try:
				signed_by = verify_manifest_signature(manifest_bytes, sig_bytes, trusted_keys=list(trusted_keys))
			except ValueError as err:
				raise corrupt_package(f"signature check failed: {err}", reason_code="SIGNATURE_INVALID", path=str(path)) from err
			logger.info("Package signature verified (kid=%s)", signed_by)
		elif sig_bytes is not None:
			logger.warning("Package is signed but no --trust-key was given; signature not checked")

		logger.debug("Loaded manifest from %s (built %s by appinstall %s)", path, manifest.built_at, manifest.tool_version)
		return cls(artifact=path, manifest=manifest, digest=sha256_hex(manifest_bytes), signed_by=signed_by)
