"""Mount namespace isolation and partition preflight checks.

A backup or restore mounts images at a fixed path and may remount the
system, cache and data partitions read-write. Running inside a private mount
namespace keeps those changes invisible to the rest of the system; the kernel
drops the namespace, and every mount made in it, when the process exits.
"""

from __future__ import annotations

import os
from typing import Callable, Optional

from romvault.logging import LoggerFactory

from .exceptions import IsolationError, MountFailedError, PreflightError
from .mount import make_private_recursive, remount_writable


log = LoggerFactory.for_mount()


class MountIsolation:
    """Private mount namespace session for the current process.

    Create one per process and call :meth:`establish` before mounting
    anything. There is no teardown method: leaving the namespace is not
    possible once unshared, and it is released at process exit.
    """

    def __init__(
        self,
        unshare: Optional[Callable[[int], None]] = None,
        make_private: Callable[[str], None] = make_private_recursive,
        remount: Callable[[str], None] = remount_writable,
    ):
        self._unshare = unshare or os.unshare
        self._make_private = make_private
        self._remount = remount
        self.active = False

    def establish(self) -> None:
        """Unshare the mount namespace and make it private and writable.

        Raises:
            IsolationError: If any step fails
        """
        if self.active:
            return

        try:
            self._unshare(os.CLONE_NEWNS)
        except OSError as error:
            raise IsolationError(f"unshare() failed: {error.strerror}") from error

        try:
            self._make_private("/")
        except MountFailedError as error:
            raise IsolationError(str(error)) from error

        try:
            self._remount("/")
        except MountFailedError as error:
            raise IsolationError(
                f"Failed to remount rootfs as writable: {error.reason}"
            ) from error

        self.active = True
        log.debug("Running in a private mount namespace")


class PreflightChecker:
    """Checks that the ROM partitions are usable before a run.

    ``registry`` only needs ``partition_paths()`` and ``partition_mounted()``
    (see :class:`romvault.storage.roms.RomRegistry`).
    """

    def __init__(self, registry, remount: Callable[[str], None] = remount_writable):
        self.registry = registry
        self._remount = remount

    def ensure_partitions_mounted(self) -> None:
        """Raise PreflightError if system, cache or data is not mounted."""
        for label, path in self.registry.partition_paths().items():
            if not path or not self.registry.partition_mounted(path):
                raise PreflightError(
                    path or label, f"{label.capitalize()} partition is not mounted"
                )
        log.debug("System, cache and data partitions are mounted")

    def remount_partitions_writable(self) -> None:
        """Remount system, cache and data read-write (restore only)."""
        for label, path in self.registry.partition_paths().items():
            try:
                self._remount(str(path))
            except MountFailedError as error:
                raise PreflightError(
                    path, f"Failed to remount {label} partition as writable: {error.reason}"
                ) from error
