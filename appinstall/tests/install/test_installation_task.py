# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

import pytest

from appinstall.builder import PackageBuilder
from appinstall.installation import ConfirmMode, InstallationTask, InstallOptions, InstallState, SkippedLibrary
from appinstall.target import DirectoryTargetSystem


def _write_file(path: Path, text: str) -> Path:
	path.parent.mkdir(parents=True, exist_ok=True)
	path.write_text(text, encoding="utf-8")
	return path


def _never_asked(question: str) -> bool:
	raise AssertionError(f"unexpected prompt: {question}")


def _events(target: DirectoryTargetSystem) -> list[tuple[str, str]]:
	return [(e.action, e.subject) for e in target.journal]


def _existing_library(target: DirectoryTargetSystem, name: str) -> Path:
	lib = target.library_path(name)
	lib.mkdir(parents=True)
	(lib / "OLD.FILE").write_text("old\n", encoding="utf-8")
	return lib


class _Recorder:
	def __init__(self, answer: bool) -> None:
		self.answer = answer
		self.questions: list[str] = []

	def __call__(self, question: str) -> bool:
		self.questions.append(question)
		return self.answer


@pytest.fixture
def install(logger: logging.Logger, target_system: DirectoryTargetSystem, stage: Callable):
	def _install(artifact: Path, options: InstallOptions, prompt=_never_asked):
		config, layout = stage(artifact)
		task = InstallationTask(logger, config, layout, target_system, prompt=prompt)
		return task.run(options), layout

	return _install


def test_full_pipeline_runs_steps_in_order(tmp_path: Path, builder: PackageBuilder, target_system: DirectoryTargetSystem, install) -> None:
	conf = _write_file(tmp_path / "src" / "app.conf", "port=8080\n")
	pre = _write_file(tmp_path / "pre.sh", f'echo "$APPINSTALL_PACKAGE" > {tmp_path / "pre.out"}\n')
	post = _write_file(tmp_path / "post.sh", "echo post ran\n")
	builder.add_pre_install(str(pre))
	builder.add_post_install(str(post))
	builder.add_library("MYLIB")
	builder.add_bare_directory("/var/app/spool")
	builder.add_file(str(conf))
	builder.set_output_file(str(tmp_path / "app.pyz"))
	builder.build()

	report, layout = install(tmp_path / "app.pyz", InstallOptions(confirm=ConfirmMode.PROMPT_EACH))

	assert report.ok and not report.partial
	assert report.state is InstallState.COMPLETE
	assert report.restored == ("MYLIB",)
	assert report.materialized == ("/var/app/spool", conf.as_posix())
	assert _events(target_system) == [
		("script", "pre.sh"),
		("restore", "MYLIB"),
		("mkdir", "/var/app/spool"),
		("copy", conf.as_posix()),
		("script", "post.sh"),
	]
	assert (target_system.library_path("MYLIB") / "DATA.FILE").read_text(encoding="utf-8") == "payroll v2\n"
	assert target_system.resolve_path(conf.as_posix()).read_text(encoding="utf-8") == "port=8080\n"
	assert target_system.resolve_path("/var/app/spool").is_dir()
	assert (tmp_path / "pre.out").read_text(encoding="utf-8").strip() == str(tmp_path / "app.pyz")
	assert not layout.root.exists()


def test_yes_to_all_replaces_without_prompting(tmp_path: Path, builder: PackageBuilder, target_system: DirectoryTargetSystem, install) -> None:
	old = _existing_library(target_system, "MYLIB")
	builder.add_library("MYLIB")
	builder.set_output_file(str(tmp_path / "app.pyz"))
	builder.build()

	report, _ = install(tmp_path / "app.pyz", InstallOptions(confirm=ConfirmMode.YES_TO_ALL))

	assert report.ok
	assert not (old / "OLD.FILE").exists()
	assert (old / "DATA.FILE").is_file()
	assert target_system.journal[0].detail["replace"] is True


def test_continue_if_not_delete_skips_existing_libraries(
	tmp_path: Path, builder: PackageBuilder, target_system: DirectoryTargetSystem, install, caplog: pytest.LogCaptureFixture
) -> None:
	old = _existing_library(target_system, "MYLIB")
	builder.add_library("MYLIB")
	builder.add_library("INSTLIB")
	builder.set_output_file(str(tmp_path / "app.pyz"))
	builder.build()

	with caplog.at_level(logging.WARNING):
		report, _ = install(tmp_path / "app.pyz", InstallOptions(confirm=ConfirmMode.CONTINUE_IF_NOT_DELETE))

	assert report.ok and report.partial
	assert report.skipped == (SkippedLibrary(name="MYLIB", reason="requires delete"),)
	assert report.restored == ("INSTLIB",)
	assert (old / "OLD.FILE").is_file()
	assert any("MYLIB" in r.getMessage() for r in caplog.records if r.levelno >= logging.WARNING)


def test_prompt_each_declined_library_is_skipped(tmp_path: Path, builder: PackageBuilder, target_system: DirectoryTargetSystem, install) -> None:
	old = _existing_library(target_system, "MYLIB")
	builder.add_library("MYLIB")
	builder.add_library("INSTLIB")
	builder.set_output_file(str(tmp_path / "app.pyz"))
	builder.build()
	prompt = _Recorder(answer=False)

	report, _ = install(tmp_path / "app.pyz", InstallOptions(), prompt=prompt)

	assert len(prompt.questions) == 1 and "MYLIB" in prompt.questions[0]
	assert report.skipped == (SkippedLibrary(name="MYLIB", reason="declined"),)
	assert report.restored == ("INSTLIB",)
	assert (old / "OLD.FILE").is_file()


def test_prompt_each_accepted_library_is_replaced(tmp_path: Path, builder: PackageBuilder, target_system: DirectoryTargetSystem, install) -> None:
	old = _existing_library(target_system, "MYLIB")
	builder.add_library("MYLIB")
	builder.set_output_file(str(tmp_path / "app.pyz"))
	builder.build()

	report, _ = install(tmp_path / "app.pyz", InstallOptions(), prompt=_Recorder(answer=True))

	assert report.ok and not report.partial
	assert not (old / "OLD.FILE").exists()


def test_pre_install_failure_stops_before_any_restore(tmp_path: Path, builder: PackageBuilder, target_system: DirectoryTargetSystem, install) -> None:
	pre = _write_file(tmp_path / "pre.sh", "echo nope >&2\nexit 3\n")
	builder.add_pre_install(str(pre))
	builder.add_library("MYLIB")
	builder.set_output_file(str(tmp_path / "app.pyz"))
	builder.build()

	report, layout = install(tmp_path / "app.pyz", InstallOptions(confirm=ConfirmMode.YES_TO_ALL))

	assert report.state is InstallState.FAILED
	assert report.failed_step is InstallState.PRE_INSTALL
	assert report.error is not None and report.error.reason_code == "SCRIPT_FAILED"
	assert report.error.step == "PreInstall"
	assert _events(target_system) == [("script", "pre.sh")]
	assert not target_system.library_exists("MYLIB")
	assert not layout.root.exists()


def test_post_install_failure_keeps_applied_changes(tmp_path: Path, builder: PackageBuilder, target_system: DirectoryTargetSystem, install) -> None:
	post = _write_file(tmp_path / "post.sh", "exit 1\n")
	builder.add_post_install(str(post))
	builder.add_library("MYLIB")
	builder.set_output_file(str(tmp_path / "app.pyz"))
	builder.build()

	report, _ = install(tmp_path / "app.pyz", InstallOptions(confirm=ConfirmMode.YES_TO_ALL))

	assert report.failed_step is InstallState.POST_INSTALL
	assert report.restored == ("MYLIB",)
	assert target_system.library_exists("MYLIB")
	assert report.to_dict()["error"]["kind"] == "script"


def test_lodrun_only_runs_when_requested(
	tmp_path: Path, builder: PackageBuilder, target_system: DirectoryTargetSystem, install, monkeypatch: pytest.MonkeyPatch
) -> None:
	marker = tmp_path / "qinstall.out"
	monkeypatch.setenv("APPINSTALL_LODRUN_MARKER", str(marker))
	builder.set_lodrun_lib("INSTLIB")
	builder.set_output_file(str(tmp_path / "app.pyz"))
	builder.build()

	report, _ = install(tmp_path / "app.pyz", InstallOptions(confirm=ConfirmMode.YES_TO_ALL))
	assert report.ok
	assert not marker.exists()
	assert ("lodrun", "INSTLIB") not in _events(target_system)

	report, _ = install(tmp_path / "app.pyz", InstallOptions(confirm=ConfirmMode.YES_TO_ALL, run_lodrun=True))
	assert report.ok
	assert marker.read_text(encoding="utf-8") == "qinstall ran\n"
	assert ("lodrun", "INSTLIB") in _events(target_system)


def test_restore_overrides_are_passed_to_the_target(tmp_path: Path, builder: PackageBuilder, target_system: DirectoryTargetSystem, install) -> None:
	builder.add_library("MYLIB")
	builder.set_output_file(str(tmp_path / "app.pyz"))
	builder.build()

	report, _ = install(
		tmp_path / "app.pyz",
		InstallOptions(confirm=ConfirmMode.YES_TO_ALL, rstlib_target="MYLIBTST", rstasp_target="2", rstaspdev_target="IASP1"),
	)

	assert report.ok
	assert target_system.library_exists("MYLIBTST")
	assert not target_system.library_exists("MYLIB")
	detail = target_system.journal[0].detail
	assert (detail["rstlib"], detail["rstasp"], detail["rstaspdev"]) == ("MYLIBTST", "2", "IASP1")


def test_task_runs_only_once(tmp_path: Path, builder: PackageBuilder, target_system: DirectoryTargetSystem, logger: logging.Logger, stage) -> None:
	builder.add_bare_directory("/opt/app")
	builder.set_output_file(str(tmp_path / "app.pyz"))
	builder.build()
	config, layout = stage(tmp_path / "app.pyz")
	task = InstallationTask(logger, config, layout, target_system, prompt=_never_asked)
	assert task.run(InstallOptions()).ok
	with pytest.raises(RuntimeError):
		task.run(InstallOptions())


def test_failing_lodrun_stops_before_post_install(
	tmp_path: Path, builder: PackageBuilder, source_system: DirectoryTargetSystem, target_system: DirectoryTargetSystem, install
) -> None:
	badlib = source_system.library_path("BADLIB")
	badlib.mkdir(parents=True)
	(badlib / "QINSTALL").write_text("echo broken >&2\nexit 4\n", encoding="utf-8")
	post = _write_file(tmp_path / "post.sh", "echo post ran\n")
	builder.set_lodrun_lib("BADLIB")
	builder.add_post_install(str(post))
	builder.set_output_file(str(tmp_path / "app.pyz"))
	builder.build()

	report, _ = install(tmp_path / "app.pyz", InstallOptions(confirm=ConfirmMode.YES_TO_ALL, run_lodrun=True))

	assert report.state is InstallState.FAILED
	assert report.failed_step is InstallState.RUNNING_LODRUN
	assert report.error.reason_code == "LODRUN_FAILED"
	assert "broken" in report.error.message
	assert ("script", "post.sh") not in _events(target_system)


def test_lodrun_that_cannot_start_fails_the_step(
	tmp_path: Path, builder: PackageBuilder, target_system: DirectoryTargetSystem, install, monkeypatch: pytest.MonkeyPatch
) -> None:
	builder.set_lodrun_lib("INSTLIB")
	builder.set_output_file(str(tmp_path / "app.pyz"))
	builder.build()

	def _denied(*args, **kwargs):
		raise PermissionError(13, "Permission denied")

	monkeypatch.setattr("appinstall.target.subprocess.run", _denied)
	report, layout = install(tmp_path / "app.pyz", InstallOptions(confirm=ConfirmMode.YES_TO_ALL, run_lodrun=True))

	assert report.state is InstallState.FAILED
	assert report.failed_step is InstallState.RUNNING_LODRUN
	assert report.error.reason_code == "LODRUN_FAILED"
	assert not layout.root.exists()


def test_shebang_script_without_execute_bit_still_runs(tmp_path: Path, builder: PackageBuilder, install) -> None:
	pre = _write_file(tmp_path / "pre.sh", f"#!/bin/sh\necho hi > {tmp_path / 'pre.out'}\n")
	pre.chmod(0o644)
	builder.add_pre_install(str(pre))
	builder.set_output_file(str(tmp_path / "app.pyz"))
	builder.build()

	report, _ = install(tmp_path / "app.pyz", InstallOptions())

	assert report.ok, report.error
	assert (tmp_path / "pre.out").read_text(encoding="utf-8") == "hi\n"


def test_directory_file_component_is_copied_with_contents(
	tmp_path: Path, builder: PackageBuilder, target_system: DirectoryTargetSystem, install
) -> None:
	web = tmp_path / "src" / "web"
	_write_file(web / "index.html", "<html/>\n")
	_write_file(web / "css" / "site.css", "body {}\n")
	(web / "uploads").mkdir()
	builder.add_file(str(web))
	builder.set_output_file(str(tmp_path / "app.pyz"))
	builder.build()

	report, _ = install(tmp_path / "app.pyz", InstallOptions())

	assert report.ok
	assert report.materialized == (web.as_posix(),)
	installed = target_system.resolve_path(web.as_posix())
	assert (installed / "index.html").read_text(encoding="utf-8") == "<html/>\n"
	assert (installed / "css" / "site.css").read_text(encoding="utf-8") == "body {}\n"
	assert (installed / "uploads").is_dir()
	assert ("copy", web.as_posix()) in _events(target_system)
