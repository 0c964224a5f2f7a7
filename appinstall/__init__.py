# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""Self-installing application packages."""

__version__ = "0.1.0"
