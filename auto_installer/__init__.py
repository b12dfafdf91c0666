"""Unattended installation front-end: answer files, device matching and installer hand-off."""

from .__version__ import __version__

__all__ = ["__version__"]
