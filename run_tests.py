#!/usr/bin/env python3
"""
Simple test runner for the ERA5 forcing preprocessor tests.

Runs the pytest suite under tests/ and prints a summary. Extra arguments are
passed through to pytest, e.g. ``python run_tests.py -k spatial``.
"""

import sys
import subprocess
from pathlib import Path


def run_tests(extra_args=None):
    """Run all tests and return True when they pass"""
    test_dir = Path(__file__).parent / "tests"

    if not test_dir.exists():
        print("Error: tests directory not found")
        return False

    test_files = sorted(test_dir.glob("test_*.py"))
    if not test_files:
        print("Error: no test files found")
        return False

    print("ERA5 Forcing Preprocessor Test Suite")
    print("=" * 40)
    print(f"Found {len(test_files)} test files")
    print()

    result = subprocess.run([
        sys.executable, "-m", "pytest",
        str(test_dir),
        "-v",
        "--tb=short",
        *(extra_args or []),
    ], capture_output=True, text=True)

    print("Test Results:")
    print(result.stdout)

    if result.stderr:
        print("Warnings/Errors:")
        print(result.stderr)

    return result.returncode == 0


def main():
    """Main function"""
    print("Starting ERA5 forcing preprocessor tests...")
    print(f"Python executable: {sys.executable}")
    print()

    success = run_tests(sys.argv[1:])

    print()
    if success:
        print("✓ All tests passed!")
        sys.exit(0)
    else:
        print("✗ Some tests failed!")
        sys.exit(1)


if __name__ == "__main__":
    main()
