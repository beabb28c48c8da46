"""Exception hierarchy shared by the tracker components."""

from __future__ import annotations


class FocusTrackerError(Exception):
    """Base class for every error raised by the tracker."""


class ValidationError(FocusTrackerError, ValueError):
    """A command was rejected at the boundary; no state was changed."""


class StorageError(FocusTrackerError):
    """The local key-value store could not complete a read or write."""


class RemoteUnavailable(FocusTrackerError):
    """The remote activity store could not be reached or timed out."""


class RuleInstallError(FocusTrackerError):
    """The blocking backend rejected a rule update."""
