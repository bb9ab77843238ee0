"""Shared test helpers for the nofx test suite."""

from __future__ import annotations

from tests.helpers.fixtures import make_agent, make_task, spec_for_type, submit

__all__ = ["make_agent", "make_task", "spec_for_type", "submit"]
