"""crossbuild - Multi-architecture containerized build orchestration.

This package drives containerized builds across a platform matrix,
provisions foreign-architecture emulation, collects build outputs, and
publishes them as named artifact bundles.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
