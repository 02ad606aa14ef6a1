"""Foreign-architecture emulation provisioning.

This module handles:
- Deciding whether an architecture needs emulation on this host
- Registering binfmt emulators with the container runtime
- A single-use barrier so registration happens at most once per run

Registration is process-wide: one call installs emulators for every
configured platform, so a run never needs more than one.
"""

from __future__ import annotations

import logging
import platform
import shlex
import subprocess
import threading
from typing import Literal

logger = logging.getLogger(__name__)

EmulationMode = Literal["auto", "always", "never"]

# Map runtime/platform architecture names onto the kernel's machine names
ARCH_ALIASES = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "arm64": "aarch64",
    "armv8": "aarch64",
    "armhf": "armv7l",
    "armv7": "armv7l",
    "ppc64el": "ppc64le",
}


class ProvisionError(Exception):
    """Raised when emulation cannot be registered. Fatal to the run."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "provision_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


def canonical_arch(arch: str) -> str:
    """Return the kernel machine name for an architecture alias."""
    arch = arch.strip().lower()
    return ARCH_ALIASES.get(arch, arch)


def host_arch() -> str:
    """Return the canonical architecture of the running host."""
    return canonical_arch(platform.machine())


def compose_binfmt_command(
    runtime: str,
    binfmt_image: str,
    platforms: str = "all",
) -> list[str]:
    """Compose the command that installs binfmt emulators.

    Args:
        runtime: Container runtime executable.
        binfmt_image: Installer image reference.
        platforms: Comma-separated platforms or ``all``.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    return [
        runtime,
        "run",
        "--rm",
        "--privileged",
        binfmt_image,
        "--install",
        platforms,
    ]


class EmulationProvisioner:
    """Registers foreign-architecture execution support with the runtime."""

    def __init__(
        self,
        runtime: str = "docker",
        binfmt_image: str = "tonistiigi/binfmt:latest",
        platforms: str = "all",
        mode: EmulationMode = "auto",
        timeout: int | None = 600,
    ) -> None:
        self.runtime = runtime
        self.binfmt_image = binfmt_image
        self.platforms = platforms
        self.mode = mode
        self.timeout = timeout
        self._registered = False
        self._lock = threading.Lock()

    @property
    def registered(self) -> bool:
        return self._registered

    def requires_emulation(self, arch_tag: str) -> bool:
        """Check whether building for ``arch_tag`` needs emulation.

        Args:
            arch_tag: Target architecture.

        Returns:
            True if the provisioner should run before building.
        """
        if self.mode == "never":
            return False
        if self.mode == "always":
            return True
        return canonical_arch(arch_tag) != host_arch()

    def ensure(self, arch_tag: str) -> None:
        """Ensure the host can execute ``arch_tag`` binaries in containers.

        Idempotent: once registration succeeded, later calls return
        immediately.

        Args:
            arch_tag: Architecture the caller is about to build for.

        Raises:
            ProvisionError: If the emulator installer fails.
        """
        with self._lock:
            if self._registered:
                logger.debug("Emulation already registered, skipping for %s", arch_tag)
                return

            cmd = compose_binfmt_command(self.runtime, self.binfmt_image, self.platforms)
            logger.info(
                "Registering emulation for %s: %s", arch_tag, shlex.join(cmd)
            )

            try:
                result = subprocess.run(
                    cmd,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                    check=False,
                )
            except subprocess.TimeoutExpired as e:
                raise ProvisionError(
                    f"Emulation registration timed out after {self.timeout}s",
                    exit_code=-1,
                    code="provision_timeout",
                ) from e
            except OSError as e:
                raise ProvisionError(
                    f"Failed to run container runtime '{self.runtime}': {e}",
                    code="launch_failed",
                ) from e

            if result.returncode != 0:
                raise ProvisionError(
                    f"Emulation registration failed with exit code "
                    f"{result.returncode}: {result.stderr.strip()}",
                    exit_code=result.returncode,
                    code="provision_failed",
                )

            self._registered = True
            logger.info("Emulation registered (%s)", self.platforms)


class ProvisionBarrier:
    """Single-use gate around emulation provisioning for one run.

    The first call to :meth:`run` invokes the provisioner; every later call,
    from any thread, returns without invoking it again. A failure is kept
    and re-raised to every later caller.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._done = False
        self._error: ProvisionError | None = None
        self._calls = 0

    @property
    def done(self) -> bool:
        return self._done

    @property
    def calls(self) -> int:
        """Number of times the provisioner was invoked through this barrier."""
        return self._calls

    def run(self, provisioner: EmulationProvisioner, arch_tag: str) -> None:
        """Provision through the barrier.

        Raises:
            ProvisionError: If provisioning failed, now or on an earlier call.
        """
        with self._lock:
            if not self._done:
                self._done = True
                self._calls += 1
                try:
                    provisioner.ensure(arch_tag)
                except ProvisionError as e:
                    self._error = e
            if self._error is not None:
                raise self._error


__all__ = [
    "ARCH_ALIASES",
    "EmulationProvisioner",
    "ProvisionBarrier",
    "ProvisionError",
    "canonical_arch",
    "compose_binfmt_command",
    "host_arch",
]
