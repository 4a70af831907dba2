"""
Shared test configuration.

Adds both the project root and src/ to sys.path so that the flat modules
(insights_engine, entries, models, ...) and the namespace packages
(analytics, pipeline) import the same way they do inside the engine:

    from entries import normalize_entries
    from analytics.baseline import compute_baseline

Entry builders shared by several test modules live in tests/builders.py.
"""

import os
import sys

import pytest

_project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
_src_dir = os.path.join(_project_root, "src")

if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

# src/ second, so `import insights_engine` etc. work for flat modules
if _src_dir not in sys.path:
    sys.path.insert(1, _src_dir)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep PAIN_INSIGHTS_* overrides from a developer shell out of the tests."""
    for key in list(os.environ):
        if key.startswith("PAIN_INSIGHTS_"):
            monkeypatch.delenv(key, raising=False)
