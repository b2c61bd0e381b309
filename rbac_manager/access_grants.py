#!/usr/bin/env python3
"""
Namespace Access Grants
Parses `namespace:access` tokens and applies the protected-namespace policy.

Namespaces matching a protected prefix are always granted read-only access,
whatever the token asked for. "prod" is always protected; extra prefixes can
only add to it.
"""
import logging
import re
from typing import Iterable, List, Sequence, Tuple

from cluster_utils.errors import UsageError

logger = logging.getLogger(__name__)

ACCESS_READ = "read"
ACCESS_WRITE = "write"
ACCESS_LEVELS = (ACCESS_READ, ACCESS_WRITE)

DEFAULT_PROTECTED_PREFIXES: Tuple[str, ...] = ("prod",)

# Usernames end up in object names such as "<username>-csr"
USERNAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")
NAMESPACE_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
MAX_NAMESPACE_LENGTH = 63


class NamespacePolicy:
    """Decides the effective access level for a namespace."""

    def __init__(self, extra_prefixes: Iterable[str] = ()):
        prefixes = list(DEFAULT_PROTECTED_PREFIXES)
        for prefix in extra_prefixes:
            prefix = (prefix or "").strip()
            if prefix and prefix not in prefixes:
                prefixes.append(prefix)
        self.protected_prefixes = tuple(prefixes)

    def is_protected_namespace(self, name: str) -> bool:
        """True if `name` starts with one of the protected prefixes."""
        return any(name.startswith(prefix) for prefix in self.protected_prefixes)

    def effective_access(self, namespace: str, requested: str) -> str:
        if self.is_protected_namespace(namespace):
            return ACCESS_READ
        return requested


class NamespaceGrant:
    """A single namespace access grant, after the policy has been applied."""

    def __init__(self, namespace: str, requested: str, effective: str):
        self.namespace = namespace
        self.requested = requested
        self.effective = effective

    @property
    def downgraded(self) -> bool:
        return self.requested != self.effective

    @property
    def is_read(self) -> bool:
        return self.effective == ACCESS_READ

    def __eq__(self, other):
        if not isinstance(other, NamespaceGrant):
            return NotImplemented
        return (self.namespace, self.requested, self.effective) == \
            (other.namespace, other.requested, other.effective)

    def __repr__(self):
        return f"NamespaceGrant({self.namespace!r}, requested={self.requested!r}, effective={self.effective!r})"


def validate_username(username: str) -> str:
    username = (username or "").strip()
    if not username:
        raise UsageError("A username is required.")
    if not USERNAME_PATTERN.match(username):
        raise UsageError(
            f"Invalid username '{username}': use lowercase letters, digits, '-' and '.' "
            "(it is embedded in Kubernetes object names)."
        )
    return username


def parse_grant_token(token: str, policy: NamespacePolicy, lenient: bool = False) -> NamespaceGrant:
    """
    Parses one `namespace:access` token.

    Args:
        token (str): Token such as "dev:write".
        policy (NamespacePolicy): Policy used to compute the effective access.
        lenient (bool): Treat any access value other than "read" as "write"
                        instead of rejecting it.

    Returns:
        NamespaceGrant: The parsed grant.

    Raises:
        UsageError: If the token is malformed.
    """
    # Namespace runs up to the first ':', access starts after the last one
    namespace = token.partition(":")[0].strip()
    access = token.rpartition(":")[2].strip()
    separators = token.count(":")

    if not namespace:
        raise UsageError(f"Invalid grant '{token}': namespace is empty.")
    if len(namespace) > MAX_NAMESPACE_LENGTH or not NAMESPACE_PATTERN.match(namespace):
        raise UsageError(f"Invalid grant '{token}': '{namespace}' is not a valid namespace name.")

    if lenient:
        requested = ACCESS_READ if access == ACCESS_READ else ACCESS_WRITE
        if access != requested:
            logger.warning(f"Access '{access}' for namespace '{namespace}' treated as '{ACCESS_WRITE}'")
    else:
        if separators != 1:
            raise UsageError(f"Invalid grant '{token}': expected <namespace>:<read|write>.")
        if access not in ACCESS_LEVELS:
            raise UsageError(f"Invalid grant '{token}': access must be one of {', '.join(ACCESS_LEVELS)}.")
        requested = access

    effective = policy.effective_access(namespace, requested)
    if effective != requested:
        logger.info(f"Namespace '{namespace}' is protected: forcing '{effective}' access (requested '{requested}')")
    return NamespaceGrant(namespace, requested, effective)


def parse_invocation(username: str, tokens: Sequence[str], policy: NamespacePolicy,
                     lenient: bool = False) -> Tuple[str, List[NamespaceGrant]]:
    """Validates the whole command line before anything touches the cluster."""
    if not (username or "").strip() or not tokens:
        raise UsageError("Usage: <username> <namespace1>:<read|write> [namespace2:access] ...")
    username = validate_username(username)
    grants = [parse_grant_token(token, policy, lenient=lenient) for token in tokens]
    return username, grants
