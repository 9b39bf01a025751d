"""cxbuild - C/C++ project manager and incremental build orchestrator."""

__version__ = "0.1.0"
