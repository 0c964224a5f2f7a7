# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Install package container (v0).

The artifact is a zip file that Python can run directly as a zipapp:

    __main__.py                      bootstrap calling appinstall.installer
    appinstall/...                   installer code bundled with the package
    APPINSTALL-INF/manifest.json     marker + canonical JSON manifest
    APPINSTALL-INF/manifest.sig      optional Ed25519 signature of the manifest
    payload/...                      component contents

The archive is deterministic:
- entries use fixed timestamps,
- payload entries are written in manifest order, tree contents sorted,
- no compression (STORE) to avoid platform-dependent compression outputs.
"""

from __future__ import annotations

import hashlib
import json
import os
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

MARKER_PATH = "APPINSTALL-INF/manifest.json"
SIGNATURE_PATH = "APPINSTALL-INF/manifest.sig"
PAYLOAD_ROOT = "payload"

BOOTSTRAP_SOURCE = """\
import os
import sys

from appinstall.installer import main

sys.exit(main(sys.argv[1:], artifact=os.path.dirname(os.path.abspath(__file__))))
"""


def sha256_hex(data: bytes) -> str:
	"""Return sha256 hex digest for `data`."""
	return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path) -> str:
	h = hashlib.sha256()
	with path.open("rb") as f:
		for chunk in iter(lambda: f.read(1 << 20), b""):
			h.update(chunk)
	return h.hexdigest()


def canonical_json_bytes(obj: Any) -> bytes:
	"""
	Render JSON deterministically.

	Rules:
	- UTF-8
	- no insignificant whitespace
	- stable key ordering
	"""
	return json.dumps(obj, sort_keys=True, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def stable_zipinfo(name: str, *, mode: int = 0o644, is_dir: bool = False) -> zipfile.ZipInfo:
	"""
	Create a ZipInfo with deterministic metadata.

	- fixed timestamp (Zip's earliest representable time)
	- unix permission bits carried in external_attr
	"""
	zi = zipfile.ZipInfo(filename=name + ("/" if is_dir and not name.endswith("/") else ""))
	zi.date_time = (1980, 1, 1, 0, 0, 0)
	kind_bits = 0o040000 if is_dir else 0o100000
	zi.external_attr = ((kind_bits | (mode & 0o7777)) << 16) | (0x10 if is_dir else 0)
	zi.compress_type = zipfile.ZIP_STORED
	return zi


@dataclass(frozen=True)
class ArchiveFile:
	"""A local file to be copied into the archive under `arcname`."""

	arcname: str
	source: Path
	mode: int


def bundled_sources(package_dir: Path) -> dict[str, bytes]:
	"""
	Collect the installer package sources to embed in an artifact.

	Tests and caches are skipped; only `.py` modules and `.lark` grammars travel.
	"""
	out: dict[str, bytes] = {}
	for p in sorted(package_dir.rglob("*")):
		if not p.is_file() or p.suffix not in (".py", ".lark"):
			continue
		rel = p.relative_to(package_dir)
		if rel.parts[0] in ("tests", "__pycache__") or "__pycache__" in rel.parts:
			continue
		out[f"{package_dir.name}/{rel.as_posix()}"] = p.read_bytes()
	return out


def write_package(
	path: Path,
	*,
	manifest_bytes: bytes,
	signature_bytes: bytes | None,
	files: Iterable[ArchiveFile],
	dirs: Iterable[str],
	bundle: Mapping[str, bytes],
) -> None:
	"""
	Write an install package.

	The archive is written to a temporary sibling first and renamed over `path`
	so a failed build never leaves a truncated artifact behind.
	"""
	path.parent.mkdir(parents=True, exist_ok=True)
	tmp = path.with_name(path.name + f".tmp.{os.getpid()}")
	try:
		with zipfile.ZipFile(tmp, mode="w") as zf:
			zf.writestr(stable_zipinfo("__main__.py"), BOOTSTRAP_SOURCE.encode("utf-8"))
			for arcname in sorted(bundle.keys()):
				zf.writestr(stable_zipinfo(arcname), bundle[arcname])
			for d in dirs:
				zf.writestr(stable_zipinfo(d, mode=0o755, is_dir=True), b"")
			for f in files:
				zi = stable_zipinfo(f.arcname, mode=f.mode)
				with f.source.open("rb") as src, zf.open(zi, "w") as dst:
					for chunk in iter(lambda: src.read(1 << 20), b""):
						dst.write(chunk)
			zf.writestr(stable_zipinfo(MARKER_PATH), manifest_bytes)
			if signature_bytes is not None:
				zf.writestr(stable_zipinfo(SIGNATURE_PATH), signature_bytes)
		os.replace(tmp, path)
	finally:
		if tmp.exists():
			tmp.unlink()

