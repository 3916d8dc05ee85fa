"""Helpers that sit beside the backend rather than inside it.

Structured KPI logging and trajectory plots live here so the core package
stays free of I/O and plotting dependencies.
"""
