# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
	USAGE = "usage"
	MISSING_ARGUMENT = "missing_argument"
	MANIFEST = "manifest"
	EXTRACTION = "extraction"
	TARGET_SYSTEM = "target_system"
	SCRIPT = "script"
	CORRUPT_PACKAGE = "corrupt_package"


# Kinds that are reported together with the usage text and exit code -1.
USAGE_KINDS = frozenset({ErrorKind.USAGE, ErrorKind.MISSING_ARGUMENT})


@dataclass(frozen=True)
class AppInstallError(Exception):
	"""
	The single error type raised by build and install operations.

	`kind` is the discriminator; `reason_code` narrows it down where callers need
	to react to a specific cause (for example `LIBRARY_EXISTS` together with
	`requires_delete`, which the continue-if-not-delete policy skips over).
	"""

	kind: ErrorKind
	message: str
	reason_code: str | None = None
	flag: str | None = None
	step: str | None = None
	library: str | None = None
	path: str | None = None
	requires_delete: bool = False

	def __str__(self) -> str:
		return self.format_human()

	@property
	def is_usage(self) -> bool:
		return self.kind in USAGE_KINDS

	def to_dict(self) -> dict[str, Any]:
		return {
			"kind": self.kind.value,
			"message": self.message,
			"reason_code": self.reason_code,
			"flag": self.flag,
			"step": self.step,
			"library": self.library,
			"path": self.path,
			"requires_delete": self.requires_delete,
		}

	def format_human(self) -> str:
		parts: list[str] = [f"[{self.reason_code or self.kind.value}] {self.message}"]
		if self.step:
			parts.append(f"step={self.step}")
		if self.library:
			parts.append(f"library={self.library}")
		if self.path:
			parts.append(f"path={self.path}")
		return " ".join(parts)


def usage_error(message: str, *, flag: str | None = None, reason_code: str = "USAGE") -> AppInstallError:
	return AppInstallError(kind=ErrorKind.USAGE, message=message, reason_code=reason_code, flag=flag)


def missing_argument(flag: str) -> AppInstallError:
	return AppInstallError(
		kind=ErrorKind.MISSING_ARGUMENT,
		message=f"Argument '{flag}' specified without value",
		reason_code="MISSING_ARGUMENT",
		flag=flag,
	)


def manifest_error(message: str, *, reason_code: str = "MANIFEST_INVALID", path: str | None = None) -> AppInstallError:
	return AppInstallError(kind=ErrorKind.MANIFEST, message=message, reason_code=reason_code, path=path)


def corrupt_package(message: str, *, reason_code: str = "CORRUPT_PACKAGE", path: str | None = None) -> AppInstallError:
	return AppInstallError(kind=ErrorKind.CORRUPT_PACKAGE, message=message, reason_code=reason_code, path=path)
