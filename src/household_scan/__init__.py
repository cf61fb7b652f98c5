"""
Household Scan – ingredient risk pipeline for household cleaning products.

Shared foundations (config, logging, paths, domain models) live at the top
level; the scan pipeline itself lives under ``orchestrator``.
"""

__all__ = [
    "config",
    "errors",
    "logging",
    "paths",
]
