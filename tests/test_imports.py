"""Every module must import on its own, in a fresh interpreter.

Importing inside the test process would hit modules already cached in
sys.modules by other tests and hide circular imports, so each import runs
in a subprocess.
"""

import os
import subprocess
import sys
from pathlib import Path

import pytest

SRC_DIR = Path(__file__).resolve().parent.parent / "src"
PACKAGE_DIR = SRC_DIR / "aumos_evidence_ledger"


def module_names() -> list[str]:
    names = []
    for path in sorted(PACKAGE_DIR.rglob("*.py")):
        parts = list(path.relative_to(SRC_DIR).with_suffix("").parts)
        if parts[-1] == "__init__":
            parts.pop()
        names.append(".".join(parts))
    return names


@pytest.mark.parametrize("module", module_names())
def test_module_imports_in_isolation(module: str) -> None:
    env = {**os.environ, "PYTHONPATH": os.pathsep.join(filter(None, [str(SRC_DIR), os.environ.get("PYTHONPATH")]))}

    result = subprocess.run(
        [sys.executable, "-c", f"import {module}"],
        capture_output=True,
        text=True,
        env=env,
        timeout=60,
        check=False,
    )

    assert result.returncode == 0, result.stderr


def test_cycle_prone_modules_are_covered() -> None:
    names = module_names()

    for module in (
        "aumos_evidence_ledger.escalation.router",
        "aumos_evidence_ledger.mapping_gate",
        "aumos_evidence_ledger.container",
        "aumos_evidence_ledger.main",
    ):
        assert module in names
