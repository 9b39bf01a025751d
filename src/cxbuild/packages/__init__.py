"""Dependency management for cxbuild.

This package resolves, fetches, caches, locks, and vendors the external
dependencies a project declares.
"""
