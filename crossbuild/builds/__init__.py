"""Build orchestration module.

This module handles:
- Emulation provisioning for foreign architectures
- Running builds inside containers
- Collecting and staging build artifacts
- Driving the platform matrix end to end
"""

# Submodules are imported directly (crossbuild.builds.runner, etc.)
# to avoid circular imports with crossbuild.pipeline.
