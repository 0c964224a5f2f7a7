# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
import sys

from appinstall.cli import main

sys.exit(main())
