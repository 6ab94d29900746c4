"""
Errors raised while reconciling addons.

Anything derived from AddonError is an expected outcome of reconciliation
and is retried by the dispatch layer. Other exceptions reaching the top of a
reconcile are treated as unexpected.
"""

from typing import List

from version_cache import DependencyState


class AddonError(Exception):
    """Base class for reconcile errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class AddonValidationError(AddonError):
    """The addon spec is invalid."""


class DependencyError(AddonValidationError):
    """A required package is not available yet, or at all."""

    def __init__(self, state: DependencyState, message: str):
        self.state = state
        super().__init__(message)


class WorkflowError(AddonError):
    """A lifecycle workflow could not be resolved or submitted."""


class SecretValidationError(AddonError):
    """A secret required by the addon does not exist."""


class TTLExpiredError(AddonError):
    """The addon stayed non-terminal for longer than its TTL."""


class ObservationError(AddonError):
    """One or more resource kinds could not be observed."""

    def __init__(self, errors: List[Exception]):
        self.errors = list(errors)
        super().__init__(
            "observed errors: " + "; ".join(str(e) for e in self.errors)
        )
