"""Tests for ralph package structure.

These tests verify the basic package setup and entry point functionality.
"""

import subprocess
import sys
from pathlib import Path


class TestPackageImportable:
    """Test that the ralph package is properly importable."""

    def test_package_has_version(self):
        """Package should expose a __version__ attribute."""
        import ralph

        assert isinstance(ralph.__version__, str)
        assert len(ralph.__version__) > 0


class TestCLIEntryPoint:
    """Test that the CLI entry point works correctly."""

    def test_cli_help_works(self):
        """Running 'python -m ralph --help' should succeed and show help text."""
        result = subprocess.run(
            [sys.executable, "-m", "ralph", "--help"],
            capture_output=True,
            text=True,
            timeout=10,
            cwd=Path(__file__).parent.parent.parent,
        )
        assert result.returncode == 0, f"Failed with stderr: {result.stderr}"
        assert "usage" in result.stdout.lower()


class TestPackageData:
    """Test that data files ship inside the package."""

    def test_py_typed_marker_exists(self):
        import ralph

        assert (Path(ralph.__file__).parent / "py.typed").exists()

    def test_error_rules_packaged(self):
        import ralph

        assert (Path(ralph.__file__).parent / "error_rules.yaml").exists()
