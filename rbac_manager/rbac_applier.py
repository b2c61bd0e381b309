#!/usr/bin/env python3
"""
RBAC Applier
Ensures namespaces exist and binds a user to read-only or edit access in each
of them, then grants the cluster-wide namespace listing permission.

Every object is created, or replaced in place when it already exists, so the
whole run can be repeated with the same arguments and converges to the same
state.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException
from rich.console import Console

from cluster_utils.errors import RbacApplyError
from cluster_utils.kube_clients import API_CALL_ERRORS, describe_api_error
from rbac_manager.access_grants import NamespaceGrant

console = Console()
logger = logging.getLogger(__name__)

RBAC_API_GROUP = "rbac.authorization.k8s.io"
RBAC_API_VERSION = "rbac.authorization.k8s.io/v1"

READONLY_ROLE_NAME = "readonly-role"
EDIT_CLUSTER_ROLE = "edit"
READ_VERBS = ["get", "list", "watch"]

# (apiGroup, resources) granted get/list/watch by the shared read-only Role
READONLY_RULES = [
    ("", ["pods", "pods/log", "services", "endpoints", "configmaps", "secrets", "events"]),
    ("apps", ["deployments", "replicasets", "statefulsets"]),
    ("batch", ["jobs", "cronjobs"]),
    ("networking.k8s.io", ["ingresses", "networkpolicies"]),
    ("metrics.k8s.io", ["pods", "nodes"]),
]

ACTION_CREATED = "created"
ACTION_UPDATED = "updated"
ACTION_RECREATED = "recreated"
ACTION_UNCHANGED = "exists"


# --- Manifest builders ---

def _user_subject(username: str) -> Dict[str, str]:
    return {"kind": "User", "name": username, "apiGroup": RBAC_API_GROUP}


def readonly_binding_name(username: str) -> str:
    return f"{username}-readonly-binding"


def edit_binding_name(username: str) -> str:
    return f"{username}-edit-binding"


def namespace_reader_name(username: str) -> str:
    return f"{username}-namespace-reader"


def namespace_reader_binding_name(username: str) -> str:
    return f"{username}-namespace-reader-binding"


def namespace_manifest(namespace: str) -> Dict[str, Any]:
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": namespace}}


def readonly_role_manifest(namespace: str) -> Dict[str, Any]:
    """The fixed read-only Role. It is shared by every user granted read in the namespace."""
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": "Role",
        "metadata": {"name": READONLY_ROLE_NAME, "namespace": namespace},
        "rules": [
            {"apiGroups": [group], "resources": list(resources), "verbs": list(READ_VERBS)}
            for group, resources in READONLY_RULES
        ],
    }


def role_binding_manifest(name: str, namespace: str, username: str,
                          role_kind: str, role_name: str) -> Dict[str, Any]:
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": "RoleBinding",
        "metadata": {"name": name, "namespace": namespace},
        "subjects": [_user_subject(username)],
        "roleRef": {"kind": role_kind, "name": role_name, "apiGroup": RBAC_API_GROUP},
    }


def readonly_binding_manifest(namespace: str, username: str) -> Dict[str, Any]:
    return role_binding_manifest(readonly_binding_name(username), namespace, username,
                                 "Role", READONLY_ROLE_NAME)


def edit_binding_manifest(namespace: str, username: str) -> Dict[str, Any]:
    return role_binding_manifest(edit_binding_name(username), namespace, username,
                                 "ClusterRole", EDIT_CLUSTER_ROLE)


def namespace_reader_cluster_role_manifest(username: str) -> Dict[str, Any]:
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": "ClusterRole",
        "metadata": {"name": namespace_reader_name(username)},
        "rules": [{"apiGroups": [""], "resources": ["namespaces"], "verbs": ["get", "list"]}],
    }


def namespace_reader_binding_manifest(username: str) -> Dict[str, Any]:
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": "ClusterRoleBinding",
        "metadata": {"name": namespace_reader_binding_name(username)},
        "subjects": [_user_subject(username)],
        "roleRef": {"kind": "ClusterRole", "name": namespace_reader_name(username),
                    "apiGroup": RBAC_API_GROUP},
    }


# --- Apply results ---

class AppliedObject:
    """One object touched during the run."""

    def __init__(self, kind: str, name: str, namespace: Optional[str], action: str):
        self.kind = kind
        self.name = name
        self.namespace = namespace
        self.action = action

    def __repr__(self):
        where = f"{self.namespace}/" if self.namespace else ""
        return f"{self.kind}/{where}{self.name} ({self.action})"


class GrantReport:
    """What was applied, per namespace, in input order."""

    def __init__(self):
        self.namespaces: List[str] = []
        self.objects: List[AppliedObject] = []

    def record(self, applied: AppliedObject):
        self.objects.append(applied)


class RBACApplier:
    """Applies namespace-scoped and cluster-scoped RBAC objects for a user."""

    def __init__(self, core_v1: client.CoreV1Api, rbac_v1: client.RbacAuthorizationV1Api):
        self.core_v1 = core_v1
        self.rbac_v1 = rbac_v1
        self.report = GrantReport()

    def _upsert(self, kind: str, name: str, namespace: Optional[str],
                create: Callable[[], Any], replace: Callable[[], Any],
                delete: Optional[Callable[[], Any]] = None) -> str:
        """
        Creates an object, replacing it if it already exists.

        Bindings cannot change their roleRef in place; when `delete` is given
        and the replace is rejected as invalid, the object is recreated.
        """
        try:
            create()
            action = ACTION_CREATED
        except ApiException as e:
            if e.status != 409:
                raise
            try:
                replace()
                action = ACTION_UPDATED
            except ApiException as replace_error:
                if replace_error.status != 422 or delete is None:
                    raise
                logger.warning(f"{kind} '{name}' cannot be updated in place, recreating it")
                delete()
                create()
                action = ACTION_RECREATED

        logger.info(f"{kind} '{name}'{f' in {namespace}' if namespace else ''}: {action}")
        self.report.record(AppliedObject(kind, name, namespace, action))
        return action

    def ensure_namespace(self, namespace: str) -> str:
        """Creates the namespace unless it already exists."""
        try:
            self.core_v1.create_namespace(body=namespace_manifest(namespace))
            action = ACTION_CREATED
        except ApiException as e:
            if e.status != 409:
                raise
            action = ACTION_UNCHANGED
        logger.info(f"Namespace '{namespace}': {action}")
        self.report.record(AppliedObject("Namespace", namespace, None, action))
        return action

    def apply_readonly_role(self, namespace: str) -> str:
        body = readonly_role_manifest(namespace)
        return self._upsert(
            "Role", READONLY_ROLE_NAME, namespace,
            create=lambda: self.rbac_v1.create_namespaced_role(namespace, body),
            replace=lambda: self.rbac_v1.replace_namespaced_role(READONLY_ROLE_NAME, namespace, body),
        )

    def apply_role_binding(self, body: Dict[str, Any]) -> str:
        name = body["metadata"]["name"]
        namespace = body["metadata"]["namespace"]
        return self._upsert(
            "RoleBinding", name, namespace,
            create=lambda: self.rbac_v1.create_namespaced_role_binding(namespace, body),
            replace=lambda: self.rbac_v1.replace_namespaced_role_binding(name, namespace, body),
            delete=lambda: self.rbac_v1.delete_namespaced_role_binding(name, namespace),
        )

    def apply_grant(self, username: str, grant: NamespaceGrant):
        """Applies the RBAC objects for one namespace grant."""
        ns = grant.namespace
        if grant.downgraded:
            console.print(f"[yellow]![/yellow] Namespace '{ns}' is protected: "
                          f"'{grant.requested}' downgraded to '{grant.effective}'")
        console.print(f"Setting [bold]{grant.effective}[/bold] access for {username} in namespace [cyan]{ns}[/cyan]")

        self.ensure_namespace(ns)
        if grant.is_read:
            logger.warning(f"Role '{READONLY_ROLE_NAME}' in '{ns}' grants get/list/watch on secrets")
            self.apply_readonly_role(ns)
            self.apply_role_binding(readonly_binding_manifest(ns, username))
        else:
            self.apply_role_binding(edit_binding_manifest(ns, username))

    def apply_grants(self, username: str, grants: List[NamespaceGrant]) -> GrantReport:
        """
        Applies every grant sequentially, in input order.

        Raises:
            RbacApplyError: On the first failure. It lists the namespaces
                            completed before it.
        """
        for grant in grants:
            try:
                self.apply_grant(username, grant)
            except API_CALL_ERRORS as e:
                logger.error(f"Failed to apply access for '{grant.namespace}': {describe_api_error(e)}")
                raise RbacApplyError(
                    f"Failed to apply {grant.effective} access in namespace '{grant.namespace}': "
                    f"{describe_api_error(e)}",
                    applied=self.report.namespaces,
                    failed_namespace=grant.namespace,
                ) from e
            self.report.namespaces.append(grant.namespace)
            console.print(f"[green]✓[/green] {grant.namespace}: {grant.effective} access applied")
        return self.report

    def grant_namespace_reader(self, username: str) -> GrantReport:
        """Lets the user get and list all namespaces."""
        console.print(f"Granting '{username}' permission to list namespaces...")
        role_name = namespace_reader_name(username)
        binding_name = namespace_reader_binding_name(username)
        role_body = namespace_reader_cluster_role_manifest(username)
        binding_body = namespace_reader_binding_manifest(username)
        try:
            self._upsert(
                "ClusterRole", role_name, None,
                create=lambda: self.rbac_v1.create_cluster_role(role_body),
                replace=lambda: self.rbac_v1.replace_cluster_role(role_name, role_body),
            )
            self._upsert(
                "ClusterRoleBinding", binding_name, None,
                create=lambda: self.rbac_v1.create_cluster_role_binding(binding_body),
                replace=lambda: self.rbac_v1.replace_cluster_role_binding(binding_name, binding_body),
                delete=lambda: self.rbac_v1.delete_cluster_role_binding(binding_name),
            )
        except API_CALL_ERRORS as e:
            logger.error(f"Failed to grant namespace listing: {describe_api_error(e)}")
            raise RbacApplyError(
                f"Failed to grant namespace listing to '{username}': {describe_api_error(e)}",
                applied=self.report.namespaces,
            ) from e
        console.print(f"[green]✓[/green] ClusterRole {role_name} bound to {username}")
        return self.report
