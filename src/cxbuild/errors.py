"""Base exception for cxbuild.

Each concrete error lives in the module that owns the concern; they all share
this base so the CLI can report any of them uniformly.
"""


class CxBuildError(Exception):
    """Base class for all cxbuild errors."""

    pass
