# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

import pytest

from appinstall.builder import PackageBuilder
from appinstall.config import PackageConfiguration
from appinstall.extraction import ExtractionTask, StagedLayout
from appinstall.target import DirectoryTargetSystem


@pytest.fixture
def logger() -> logging.Logger:
	lg = logging.getLogger("tests.appinstall")
	lg.setLevel(logging.DEBUG)
	lg.propagate = True
	return lg


@pytest.fixture
def source_system(tmp_path: Path, logger: logging.Logger) -> DirectoryTargetSystem:
	"""A build-side system holding MYLIB (one data member) and INSTLIB (a QINSTALL entry)."""
	system = DirectoryTargetSystem(logger, tmp_path / "source")
	mylib = system.library_path("MYLIB")
	mylib.mkdir(parents=True)
	(mylib / "DATA.FILE").write_text("payroll v2\n", encoding="utf-8")
	instlib = system.library_path("INSTLIB")
	instlib.mkdir(parents=True)
	(instlib / "QINSTALL").write_text('echo "qinstall ran" > "$APPINSTALL_LODRUN_MARKER"\n', encoding="utf-8")
	return system


@pytest.fixture
def target_system(tmp_path: Path, logger: logging.Logger) -> DirectoryTargetSystem:
	return DirectoryTargetSystem(logger, tmp_path / "target")


@pytest.fixture
def builder(logger: logging.Logger, source_system: DirectoryTargetSystem) -> PackageBuilder:
	return PackageBuilder(logger, source_system)


@pytest.fixture
def stage(tmp_path: Path, logger: logging.Logger) -> Callable[..., tuple[PackageConfiguration, StagedLayout]]:
	def _stage(artifact: Path, **load_kw) -> tuple[PackageConfiguration, StagedLayout]:
		config = PackageConfiguration.load(artifact, logger=logger, **load_kw)
		layout = ExtractionTask(logger, config, tmp_path / "staging").run()
		return config, layout

	return _stage
