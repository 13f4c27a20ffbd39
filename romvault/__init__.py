"""Backup and restore for individual ROMs on multi-ROM devices."""

from .__version__ import __version__

__all__ = ["__version__"]
