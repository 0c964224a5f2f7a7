# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

from pathlib import Path

import pytest

from appinstall.errors import AppInstallError, ErrorKind
from appinstall.specfile import load_spec_directives, parse_spec_text


def _write_file(path: Path, text: str) -> None:
	path.parent.mkdir(parents=True, exist_ok=True)
	path.write_text(text, encoding="utf-8")


def test_parse_skips_comments_and_blank_lines(tmp_path: Path) -> None:
	text = """
# application libraries
--qsys MYLIB   # main data

--file "/home/app/my config.json"
--DIR /opt/app/logs
"""
	ds = parse_spec_text(text, source=tmp_path / "app.spec")
	assert [(d.flag, d.value) for d in ds] == [
		("--qsys", "MYLIB"),
		("--file", "/home/app/my config.json"),
		("--dir", "/opt/app/logs"),
	]
	assert ds[0].line == 3
	assert ds[1].where() == f"{tmp_path / 'app.spec'}:5"


def test_parse_last_line_without_newline(tmp_path: Path) -> None:
	ds = parse_spec_text("--qsys A\n--qsys B", source=tmp_path / "x.spec")
	assert [d.value for d in ds] == ["A", "B"]


def test_quoted_values_unescape(tmp_path: Path) -> None:
	ds = parse_spec_text('--file "/srv/a \\"b\\".txt"\n', source=tmp_path / "x.spec")
	assert ds[0].value == '/srv/a "b".txt'


def test_output_flag_is_not_a_spec_directive(tmp_path: Path) -> None:
	with pytest.raises(AppInstallError) as exc:
		parse_spec_text("-o pkg.pyz\n", source=tmp_path / "x.spec")
	assert exc.value.kind is ErrorKind.USAGE
	assert exc.value.reason_code == "SPEC_UNKNOWN_FLAG"


def test_value_without_flag_is_a_syntax_error(tmp_path: Path) -> None:
	with pytest.raises(AppInstallError) as exc:
		parse_spec_text("MYLIB\n", source=tmp_path / "x.spec")
	assert exc.value.reason_code == "SPEC_SYNTAX"


def test_directive_without_value_is_missing_argument(tmp_path: Path) -> None:
	spec = tmp_path / "x.spec"
	_write_file(spec, "--qsys MYLIB\n--qsys\n")
	with pytest.raises(AppInstallError) as exc:
		load_spec_directives(spec)
	assert exc.value.kind is ErrorKind.MISSING_ARGUMENT
	assert exc.value.flag == "--qsys"


def test_nested_specs_are_expanded_in_place(tmp_path: Path) -> None:
	_write_file(tmp_path / "libs.spec", "--qsys LIB2\n--qsys LIB3\n")
	_write_file(tmp_path / "main.spec", f"--qsys LIB1\n--spec {tmp_path / 'libs.spec'}\n--qsys LIB4\n")
	ds = load_spec_directives(tmp_path / "main.spec")
	assert [d.value for d in ds] == ["LIB1", "LIB2", "LIB3", "LIB4"]
	assert ds[1].source == tmp_path / "libs.spec"


def test_same_spec_included_twice_is_not_a_cycle(tmp_path: Path) -> None:
	_write_file(tmp_path / "common.spec", "--dir /opt/app\n")
	_write_file(tmp_path / "main.spec", f"--spec {tmp_path / 'common.spec'}\n--spec {tmp_path / 'common.spec'}\n")
	assert [d.value for d in load_spec_directives(tmp_path / "main.spec")] == ["/opt/app", "/opt/app"]


def test_spec_include_cycle_is_rejected(tmp_path: Path) -> None:
	_write_file(tmp_path / "a.spec", f"--spec {tmp_path / 'b.spec'}\n")
	_write_file(tmp_path / "b.spec", f"--qsys X\n--spec {tmp_path / 'a.spec'}\n")
	with pytest.raises(AppInstallError) as exc:
		load_spec_directives(tmp_path / "a.spec")
	assert exc.value.kind is ErrorKind.MANIFEST
	assert exc.value.reason_code == "SPEC_CYCLE"


def test_unreadable_spec(tmp_path: Path) -> None:
	with pytest.raises(AppInstallError) as exc:
		load_spec_directives(tmp_path / "missing.spec")
	assert exc.value.reason_code == "SPEC_UNREADABLE"


def test_relative_paths_follow_the_spec_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
	app = tmp_path / "project" / "deploy"
	_write_file(app / "libs" / "libs.spec", "--qsys LIB2\n--file ../conf/db.conf\n")
	_write_file(app / "main.spec", "--file conf/app.conf\n--spec libs/libs.spec\n--dir /var/app\n--qsys LIB1\n")
	elsewhere = tmp_path / "elsewhere"
	elsewhere.mkdir()
	monkeypatch.chdir(elsewhere)

	ds = load_spec_directives(Path("..") / "project" / "deploy" / "main.spec")

	values = [(d.flag, d.value) for d in ds]
	assert values[1] == ("--qsys", "LIB2")
	assert values[3:] == [("--dir", "/var/app"), ("--qsys", "LIB1")]
	assert Path(values[0][1]).resolve() == (app / "conf" / "app.conf").resolve()
	assert Path(values[2][1]).resolve() == (app / "conf" / "db.conf").resolve()
