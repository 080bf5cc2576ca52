#!/usr/bin/env python3
"""
Test runner script for mlb-proxy

Usage:
    python run_tests.py                     # Run all tests
    python run_tests.py --unit              # Skip tests marked integration
    python run_tests.py --module playlist   # Run tests/test_playlist.py
    python run_tests.py --coverage          # Run with coverage report
"""

import argparse
import os
import subprocess
import sys

TESTS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "tests")


def build_command(args) -> list:
    cmd = [sys.executable, "-m", "pytest"]

    if args.verbose:
        cmd.append("-vv")
    if args.keyword:
        cmd.extend(["-k", args.keyword])
    if args.coverage:
        cmd.extend(["--cov=src", "--cov-report=term-missing"])

    if args.unit:
        cmd.extend(["-m", "not integration"])
    elif args.integration:
        cmd.extend(["-m", "integration"])

    if args.module:
        cmd.append(os.path.join(TESTS_DIR, f"test_{args.module}.py"))
    elif args.file:
        cmd.append(args.file)
    else:
        cmd.append(TESTS_DIR)
    return cmd


def main():
    parser = argparse.ArgumentParser(description="Run tests for mlb-proxy")
    parser.add_argument("--unit", action="store_true", help="Skip integration tests")
    parser.add_argument("--integration", action="store_true", help="Run only integration tests")
    parser.add_argument("--coverage", action="store_true", help="Run with coverage report (needs pytest-cov)")
    parser.add_argument("--module", help="Run the tests for one module, e.g. playlist")
    parser.add_argument("--file", help="Run a specific test file")
    parser.add_argument("-k", dest="keyword", help="Only run tests matching this expression")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    args = parser.parse_args()

    cmd = build_command(args)
    print(f"Running: {' '.join(cmd)}")
    exit_code = subprocess.run(cmd).returncode

    if exit_code == 0:
        print("\n✅ All tests passed!")
    else:
        print(f"\n❌ Tests failed with exit code {exit_code}")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
