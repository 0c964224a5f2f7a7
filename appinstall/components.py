# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Component model and manifest (v0).

A package is described by an ordered manifest of components. The order in
which components were added at build time is the order in which they are
applied at install time, so serialization must never reorder entries.

Manifest JSON (canonical, see `container.canonical_json_bytes`):
{
  "format": "appinstall-manifest",
  "version": 0,
  "tool_version": "...",
  "built_at": "2026-01-01T00:00:00Z",
  "output": "/abs/pkg.pyz",
  "components": [ {"component": {...}, "payload": {...} | null}, ... ],
  "pre": {...} | null, "post": {...} | null, "lodrun": {...} | null
}
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Literal, Union

MANIFEST_FORMAT = "appinstall-manifest"
MANIFEST_VERSION = 0


class ScriptRole(str, Enum):
	PRE = "pre"
	POST = "post"


@dataclass(frozen=True)
class Library:
	name: str
	kind: Literal["library"] = field(default="library", init=False)

	def describe(self) -> str:
		return f"library {self.name}"


@dataclass(frozen=True)
class BareDirectory:
	path: str
	kind: Literal["bare_directory"] = field(default="bare_directory", init=False)

	def describe(self) -> str:
		return f"directory {self.path}"


@dataclass(frozen=True)
class File:
	path: str
	kind: Literal["file"] = field(default="file", init=False)

	def describe(self) -> str:
		return f"file {self.path}"


@dataclass(frozen=True)
class Script:
	role: ScriptRole
	path: str
	kind: Literal["script"] = field(default="script", init=False)

	def describe(self) -> str:
		return f"{self.role.value}-install script {self.path}"


@dataclass(frozen=True)
class LodrunLibrary:
	path: str
	kind: Literal["lodrun_library"] = field(default="lodrun_library", init=False)

	def describe(self) -> str:
		return f"lodrun library {self.path}"


Component = Union[Library, BareDirectory, File, Script, LodrunLibrary]


@dataclass(frozen=True)
class PayloadFile:
	"""One file inside a payload, relative to the payload root."""

	rel_path: str
	sha256: str
	size: int
	mode: int


@dataclass(frozen=True)
class Payload:
	"""
	Archive content backing a component.

	`kind` is one of:
	- "file": a single file, `files` holds exactly one entry
	- "tree": a directory; `dirs` lists every directory (so empty ones survive)
	- "savf": library save data produced by the target system
	"""

	root: str
	kind: Literal["file", "tree", "savf"]
	files: tuple[PayloadFile, ...]
	dirs: tuple[str, ...] = ()

	def archive_name(self, entry: PayloadFile) -> str:
		return f"{self.root}/{entry.rel_path}"


@dataclass(frozen=True)
class ManifestEntry:
	component: Component
	payload: Payload | None = None


@dataclass(frozen=True)
class Manifest:
	entries: tuple[ManifestEntry, ...] = ()
	output_path: str | None = None
	pre: ManifestEntry | None = None
	post: ManifestEntry | None = None
	lodrun: ManifestEntry | None = None
	tool_version: str = ""
	built_at: str = ""

	@property
	def components(self) -> tuple[Component, ...]:
		return tuple(e.component for e in self.entries)

	def libraries(self) -> list[Library]:
		return [c for c in self.components if isinstance(c, Library)]


def normalize_library_name(name: str) -> str:
	return name.strip().upper()


def absolute_posix_path(path: str) -> str:
	"""Make `path` absolute against the current directory without resolving links."""
	return PurePosixPath(os.path.abspath(path).replace(os.sep, "/")).as_posix()


def normalize_rel_path(path_str: str, *, what: str) -> str:
	p = PurePosixPath(path_str.replace("\\", "/"))
	if p.is_absolute():
		raise ValueError(f"{what} must be a relative path, got: {path_str}")
	if not p.parts or str(p) == ".":
		raise ValueError(f"{what} must be non-empty, got: {path_str}")
	if any(part in (".", "..") for part in p.parts):
		raise ValueError(f"{what} must not contain '.' or '..', got: {path_str}")
	return str(p)


def component_to_dict(c: Component) -> dict[str, Any]:
	if isinstance(c, Library):
		return {"kind": c.kind, "name": c.name}
	if isinstance(c, Script):
		return {"kind": c.kind, "role": c.role.value, "path": c.path}
	return {"kind": c.kind, "path": c.path}


def component_from_dict(obj: Any) -> Component:
	if not isinstance(obj, dict):
		raise ValueError("component must be an object")
	kind = obj.get("kind")
	if kind == "library":
		name = obj.get("name")
		if not isinstance(name, str) or not name:
			raise ValueError("library component is missing name")
		return Library(name=name)
	path = obj.get("path")
	if not isinstance(path, str) or not path:
		raise ValueError(f"{kind} component is missing path")
	if kind == "bare_directory":
		return BareDirectory(path=path)
	if kind == "file":
		return File(path=path)
	if kind == "lodrun_library":
		return LodrunLibrary(path=path)
	if kind == "script":
		role = obj.get("role")
		try:
			return Script(role=ScriptRole(role), path=path)
		except ValueError as err:
			raise ValueError(f"script component has unknown role: {role!r}") from err
	raise ValueError(f"unknown component kind: {kind!r}")


def _payload_to_dict(p: Payload) -> dict[str, Any]:
	return {
		"root": p.root,
		"kind": p.kind,
		"files": [{"rel_path": f.rel_path, "sha256": f.sha256, "size": f.size, "mode": f.mode} for f in p.files],
		"dirs": list(p.dirs),
	}


def _payload_from_dict(obj: Any) -> Payload:
	if not isinstance(obj, dict):
		raise ValueError("payload must be an object")
	root = obj.get("root")
	kind = obj.get("kind")
	if not isinstance(root, str):
		raise ValueError("payload is missing root")
	root = normalize_rel_path(root, what="payload root")
	if kind not in ("file", "tree", "savf"):
		raise ValueError(f"payload has unknown kind: {kind!r}")
	raw_files = obj.get("files")
	raw_dirs = obj.get("dirs", [])
	if not isinstance(raw_files, list) or not isinstance(raw_dirs, list):
		raise ValueError("payload files/dirs must be arrays")
	files: list[PayloadFile] = []
	for raw in raw_files:
		if not isinstance(raw, dict):
			raise ValueError("payload file entry must be an object")
		rel = raw.get("rel_path")
		sha = raw.get("sha256")
		size = raw.get("size")
		mode = raw.get("mode")
		if not isinstance(rel, str) or not isinstance(sha, str) or not isinstance(size, int) or not isinstance(mode, int):
			raise ValueError("payload file entry is malformed")
		files.append(PayloadFile(rel_path=normalize_rel_path(rel, what="payload file"), sha256=sha, size=size, mode=mode))
	dirs = tuple(normalize_rel_path(d, what="payload dir") for d in raw_dirs if isinstance(d, str))
	if kind in ("file", "savf") and len(files) != 1:
		raise ValueError(f"{kind} payload must hold exactly one file")
	return Payload(root=root, kind=kind, files=tuple(files), dirs=dirs)


def _entry_to_dict(e: ManifestEntry | None) -> dict[str, Any] | None:
	if e is None:
		return None
	return {
		"component": component_to_dict(e.component),
		"payload": _payload_to_dict(e.payload) if e.payload is not None else None,
	}


def _entry_from_dict(obj: Any) -> ManifestEntry:
	if not isinstance(obj, dict):
		raise ValueError("manifest entry must be an object")
	component = component_from_dict(obj.get("component"))
	raw_payload = obj.get("payload")
	payload = _payload_from_dict(raw_payload) if raw_payload is not None else None
	if payload is None and not isinstance(component, BareDirectory):
		raise ValueError(f"{component.describe()} has no payload")
	return ManifestEntry(component=component, payload=payload)


def manifest_to_dict(m: Manifest) -> dict[str, Any]:
	return {
		"format": MANIFEST_FORMAT,
		"version": MANIFEST_VERSION,
		"tool_version": m.tool_version,
		"built_at": m.built_at,
		"output": m.output_path,
		"components": [_entry_to_dict(e) for e in m.entries],
		"pre": _entry_to_dict(m.pre),
		"post": _entry_to_dict(m.post),
		"lodrun": _entry_to_dict(m.lodrun),
	}


def manifest_from_dict(obj: Any) -> Manifest:
	if not isinstance(obj, dict):
		raise ValueError("manifest must be a JSON object")
	if obj.get("format") != MANIFEST_FORMAT or obj.get("version") != MANIFEST_VERSION:
		raise ValueError("unsupported manifest format/version (upgrade appinstall?)")
	raw_components = obj.get("components")
	if not isinstance(raw_components, list):
		raise ValueError("manifest components must be an array")
	entries = tuple(_entry_from_dict(raw) for raw in raw_components)
	for e in entries:
		if isinstance(e.component, (Script, LodrunLibrary)):
			raise ValueError(f"{e.component.describe()} is not allowed in the component list")

	def _singleton(key: str) -> ManifestEntry | None:
		raw = obj.get(key)
		if raw is None:
			return None
		return _entry_from_dict(raw)

	pre = _singleton("pre")
	post = _singleton("post")
	lodrun = _singleton("lodrun")
	if pre is not None and not (isinstance(pre.component, Script) and pre.component.role is ScriptRole.PRE):
		raise ValueError("manifest 'pre' must be a pre-install script")
	if post is not None and not (isinstance(post.component, Script) and post.component.role is ScriptRole.POST):
		raise ValueError("manifest 'post' must be a post-install script")
	if lodrun is not None and not isinstance(lodrun.component, LodrunLibrary):
		raise ValueError("manifest 'lodrun' must be a lodrun library")
	output = obj.get("output")
	return Manifest(
		entries=entries,
		output_path=output if isinstance(output, str) else None,
		pre=pre,
		post=post,
		lodrun=lodrun,
		tool_version=str(obj.get("tool_version", "")),
		built_at=str(obj.get("built_at", "")),
	)
