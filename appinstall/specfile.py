# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Spec file parsing.

A spec file lists package components with the same flags the build command
accepts. Nested `--spec` directives are expanded in place, so callers get a
flat, ordered directive list. Include cycles are rejected; including the same
file twice along separate branches is fine.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, replace
from pathlib import Path

from lark import Lark, Token, Tree
from lark.exceptions import UnexpectedInput

from appinstall.errors import manifest_error, missing_argument, usage_error

SPEC_FLAGS = ("--qsys", "--dir", "--file", "--pre", "--post", "--lodrun", "--spec")
PATH_FLAGS = frozenset(("--dir", "--file", "--pre", "--post", "--spec"))

_GRAMMAR_PATH = Path(__file__).with_name("specfile.lark")
_GRAMMAR_SRC = _GRAMMAR_PATH.read_text(encoding="utf-8")

_PARSER = Lark(
	_GRAMMAR_SRC,
	parser="lalr",
	start="start",
	propagate_positions=True,
	maybe_placeholders=False,
)

_ESCAPE_RE = re.compile(r"\\(.)")


@dataclass(frozen=True)
class SpecDirective:
	flag: str
	value: str | None
	source: Path
	line: int

	def where(self) -> str:
		return f"{self.source}:{self.line}"


def _decode_string_token(tok: Token) -> str:
	return _ESCAPE_RE.sub(r"\1", tok.value[1:-1])


def parse_spec_text(text: str, *, source: Path) -> list[SpecDirective]:
	"""Parse spec file text without expanding `--spec` includes."""
	if not text.endswith("\n"):
		text += "\n"
	try:
		tree = _PARSER.parse(text)
	except UnexpectedInput as err:
		raise usage_error(
			f"{source}:{err.line}:{err.column}: cannot parse spec directive",
			reason_code="SPEC_SYNTAX",
		) from err

	out: list[SpecDirective] = []
	for node in tree.children:
		if not isinstance(node, Tree) or node.data != "directive":
			continue
		flag_tok = node.children[0]
		flag = str(flag_tok).lower()
		if flag not in SPEC_FLAGS:
			raise usage_error(f"{source}:{flag_tok.line}: unrecognized directive '{flag_tok}'", flag=str(flag_tok), reason_code="SPEC_UNKNOWN_FLAG")
		value: str | None = None
		if len(node.children) > 1:
			tok = node.children[1]
			value = _decode_string_token(tok) if tok.type == "ESCAPED_STRING" else str(tok)
		out.append(SpecDirective(flag=flag, value=value, source=source, line=int(flag_tok.line)))
	return out


def load_spec_directives(path: str | Path, *, _stack: tuple[Path, ...] = ()) -> list[SpecDirective]:
	"""
	Load a spec file and expand nested `--spec` directives recursively.

	Directives without a value raise MissingArgument. Relative paths in
	`--file`, `--dir`, `--pre`, `--post` and `--spec` are taken relative to the
	directory of the spec file that names them.
	"""
	spec_path = Path(path)
	resolved = spec_path.resolve()
	if resolved in _stack:
		chain = " -> ".join(str(p) for p in (*_stack, resolved))
		raise manifest_error(f"spec file includes itself: {chain}", reason_code="SPEC_CYCLE", path=str(spec_path))
	try:
		text = spec_path.read_text(encoding="utf-8")
	except (OSError, UnicodeDecodeError) as err:
		raise manifest_error(f"cannot read spec file: {err}", reason_code="SPEC_UNREADABLE", path=str(spec_path)) from err

	out: list[SpecDirective] = []
	for d in parse_spec_text(text, source=spec_path):
		if not d.value:
			raise missing_argument(d.flag)
		if d.flag in PATH_FLAGS and not os.path.isabs(d.value):
			d = replace(d, value=os.path.join(spec_path.parent, d.value))
		if d.flag == "--spec":
			out.extend(load_spec_directives(d.value, _stack=(*_stack, resolved)))
			continue
		out.append(d)
	return out


__all__ = ["SPEC_FLAGS", "SpecDirective", "load_spec_directives", "parse_spec_text"]
