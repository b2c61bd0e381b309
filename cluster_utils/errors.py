"""
# Custom Errors for the Kubernetes User Onboarder

This module defines the error classes raised by the onboarding steps.
The CLI maps each of them to an exit code.
"""

from typing import List, Optional


class OnboardingError(Exception):
    """Base class for every failure the onboarder reports to the operator."""
    pass

class UsageError(OnboardingError):
    """Raised for a malformed invocation (missing username, bad grant tokens)."""
    pass

class IssuanceError(OnboardingError):
    """Raised when key/CSR generation, submission, approval or retrieval fails."""
    pass

class ClusterConfigError(OnboardingError):
    """Raised when the active cluster's server or CA data cannot be resolved."""
    pass

class PollTimeoutError(OnboardingError):
    """Raised when a polled condition is not reached before its deadline."""
    pass

class RbacApplyError(OnboardingError):
    """Raised when a namespace or RBAC object cannot be applied."""

    def __init__(self, message: str, applied: Optional[List[str]] = None,
                 failed_namespace: Optional[str] = None):
        """
        Initializes the exception with the partial progress of the run.

        Args:
            message (str): The error message.
            applied (list): Namespaces fully configured before the failure.
            failed_namespace (str): Namespace being configured when it failed,
                                    None for the cluster-wide grant.
        """
        super().__init__(message)
        self.applied = list(applied or [])
        self.failed_namespace = failed_namespace
