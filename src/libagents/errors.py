"""Exception types raised by the installer engine.

Everything fatal derives from InstallerError so the CLI can map it to a
single exit path. Per-file filesystem failures are not exceptions at
this level: they are collected into run reports.
"""

from __future__ import annotations


class InstallerError(Exception):
    """Base class for fatal installer failures."""


class EnvironmentCheckError(InstallerError):
    """A required external tool (git) is unavailable."""


class SourceError(InstallerError):
    """The upstream source tree could not be located or fetched."""


class UnknownAgentError(InstallerError):
    """An agent selector names an agent the source does not provide."""


class ProfileError(InstallerError):
    """A profile document is malformed."""


class UnknownProfileError(ProfileError):
    """No profile with the requested name exists in the source."""


class ManifestError(InstallerError):
    """Manifest text could not be parsed."""


class MarkerError(InstallerError):
    """A marker region is unterminated or otherwise unusable."""


class NoBackupError(InstallerError):
    """Rollback was requested but no snapshot exists."""
