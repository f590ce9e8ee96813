"""Each package must import on its own, in any order."""

import subprocess
import sys

import pytest

MODULES = [
    "labcare.core.repository",
    "labcare.core.http_repository",
    "labcare.core.gateway",
    "labcare.encounter",
    "labcare.encounter.machine",
    "labcare.billing",
    "labcare.extraction",
    "labcare.observability",
    "labcare.api.app",
    "labcare.cli.commands",
]


class TestPackageImports:
    @pytest.mark.parametrize("module", MODULES)
    def test_imports_in_fresh_interpreter(self, module):
        result = subprocess.run(
            [sys.executable, "-c", f"import {module}"],
            capture_output=True,
            text=True,
        )

        assert result.returncode == 0, result.stderr
