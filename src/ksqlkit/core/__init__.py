from __future__ import annotations

"""
Shared plumbing: logging, options, clocks, aliases and small helpers.
"""
