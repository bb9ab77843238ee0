"""nofx: task scheduling and agent lifecycle for pools of terminal coding agents."""

__version__ = "0.1.0"
