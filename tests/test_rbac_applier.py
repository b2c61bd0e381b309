import copy

import pytest

from cluster_utils.errors import RbacApplyError
from rbac_manager.access_grants import NamespacePolicy, parse_invocation
from rbac_manager.rbac_applier import (
    ACTION_CREATED,
    ACTION_RECREATED,
    ACTION_UNCHANGED,
    ACTION_UPDATED,
    READONLY_ROLE_NAME,
    RBACApplier,
    edit_binding_manifest,
    readonly_role_manifest,
)
from tests.fakes import api_error

EXPECTED_READONLY_RULES = [
    {"apiGroups": [""],
     "resources": ["pods", "pods/log", "services", "endpoints", "configmaps", "secrets", "events"],
     "verbs": ["get", "list", "watch"]},
    {"apiGroups": ["apps"], "resources": ["deployments", "replicasets", "statefulsets"],
     "verbs": ["get", "list", "watch"]},
    {"apiGroups": ["batch"], "resources": ["jobs", "cronjobs"], "verbs": ["get", "list", "watch"]},
    {"apiGroups": ["networking.k8s.io"], "resources": ["ingresses", "networkpolicies"],
     "verbs": ["get", "list", "watch"]},
    {"apiGroups": ["metrics.k8s.io"], "resources": ["pods", "nodes"], "verbs": ["get", "list", "watch"]},
]


def grants_for(*tokens):
    return parse_invocation("alice", list(tokens), NamespacePolicy())[1]


@pytest.fixture
def applier(core_api, rbac_api):
    return RBACApplier(core_api, rbac_api)


def test_readonly_role_has_the_fixed_rule_set():
    role = readonly_role_manifest("qa")
    assert role["kind"] == "Role"
    assert role["metadata"] == {"name": "readonly-role", "namespace": "qa"}
    assert role["rules"] == EXPECTED_READONLY_RULES


def test_read_grant_creates_role_and_binding(applier, core_api, rbac_api):
    applier.apply_grants("alice", grants_for("qa:read"))

    assert "qa" in core_api.namespaces
    assert rbac_api.get("Role", "qa", READONLY_ROLE_NAME)["rules"] == EXPECTED_READONLY_RULES
    binding = rbac_api.get("RoleBinding", "qa", "alice-readonly-binding")
    assert binding["roleRef"] == {"kind": "Role", "name": "readonly-role",
                                  "apiGroup": "rbac.authorization.k8s.io"}
    assert binding["subjects"] == [{"kind": "User", "name": "alice",
                                    "apiGroup": "rbac.authorization.k8s.io"}]
    assert rbac_api.get("RoleBinding", "qa", "alice-edit-binding") is None


def test_write_grant_binds_builtin_edit_only(applier, rbac_api):
    applier.apply_grants("alice", grants_for("dev:write"))

    binding = rbac_api.get("RoleBinding", "dev", "alice-edit-binding")
    assert binding["roleRef"] == {"kind": "ClusterRole", "name": "edit",
                                  "apiGroup": "rbac.authorization.k8s.io"}
    assert binding["metadata"]["namespace"] == "dev"
    assert rbac_api.get("Role", "dev", READONLY_ROLE_NAME) is None
    assert not any(call[1] == "Role" for call in rbac_api.calls)


def test_write_on_prod_namespace_gets_readonly(applier, rbac_api):
    applier.apply_grants("alice", grants_for("prod-db:write"))

    assert rbac_api.get("Role", "prod-db", READONLY_ROLE_NAME) is not None
    assert rbac_api.get("RoleBinding", "prod-db", "alice-readonly-binding") is not None
    assert rbac_api.get("RoleBinding", "prod-db", "alice-edit-binding") is None


def test_existing_namespace_is_left_alone(core_api, rbac_api):
    core_api.namespaces.add("qa")
    applier = RBACApplier(core_api, rbac_api)
    report = applier.apply_grants("alice", grants_for("qa:read"))
    namespace_entry = [o for o in report.objects if o.kind == "Namespace"][0]
    assert namespace_entry.action == ACTION_UNCHANGED


def test_reapplying_converges(core_api, rbac_api):
    grants = grants_for("dev:write", "qa:read", "prod-db:write")
    first = RBACApplier(core_api, rbac_api)
    first.apply_grants("alice", grants)
    first.grant_namespace_reader("alice")
    snapshot = copy.deepcopy(rbac_api.objects)

    second = RBACApplier(core_api, rbac_api)
    report = second.apply_grants("alice", grants)
    second.grant_namespace_reader("alice")

    assert rbac_api.objects == snapshot
    assert {o.action for o in report.objects if o.kind != "Namespace"} == {ACTION_UPDATED}
    assert {o.action for o in report.objects if o.kind == "Namespace"} == {ACTION_UNCHANGED}


def test_shared_readonly_role_is_overwritten(applier, rbac_api):
    rbac_api.objects[("Role", "qa", READONLY_ROLE_NAME)] = {
        "metadata": {"name": READONLY_ROLE_NAME, "namespace": "qa"},
        "rules": [{"apiGroups": ["*"], "resources": ["*"], "verbs": ["*"]}],
    }
    applier.apply_grants("alice", grants_for("qa:read"))
    assert rbac_api.get("Role", "qa", READONLY_ROLE_NAME)["rules"] == EXPECTED_READONLY_RULES


def test_binding_with_other_role_ref_is_recreated(applier, rbac_api):
    stale = edit_binding_manifest("dev", "alice")
    stale["roleRef"]["name"] = "view"
    rbac_api.objects[("RoleBinding", "dev", "alice-edit-binding")] = stale

    applier.apply_grants("alice", grants_for("dev:write"))

    assert rbac_api.get("RoleBinding", "dev", "alice-edit-binding")["roleRef"]["name"] == "edit"
    assert ("delete", "RoleBinding", "dev", "alice-edit-binding") in rbac_api.calls
    assert applier.report.objects[-1].action == ACTION_RECREATED


def test_failure_reports_completed_namespaces(core_api, rbac_api):
    core_api.fail_namespaces.add("qa")
    applier = RBACApplier(core_api, rbac_api)

    with pytest.raises(RbacApplyError) as excinfo:
        applier.apply_grants("alice", grants_for("dev:write", "qa:read", "prod-db:read"))

    assert excinfo.value.applied == ["dev"]
    assert excinfo.value.failed_namespace == "qa"
    assert "403" in str(excinfo.value)
    # nothing after the failing namespace is touched
    assert "prod-db" not in core_api.namespaces


def test_duplicate_namespaces_are_applied_in_order(applier, rbac_api):
    applier.apply_grants("alice", grants_for("dev:read", "dev:write"))
    assert rbac_api.get("RoleBinding", "dev", "alice-readonly-binding") is not None
    assert rbac_api.get("RoleBinding", "dev", "alice-edit-binding") is not None
    assert applier.report.namespaces == ["dev", "dev"]


def test_namespace_reader_grant(applier, rbac_api):
    applier.grant_namespace_reader("alice")

    role = rbac_api.get("ClusterRole", None, "alice-namespace-reader")
    assert role["rules"] == [{"apiGroups": [""], "resources": ["namespaces"], "verbs": ["get", "list"]}]
    binding = rbac_api.get("ClusterRoleBinding", None, "alice-namespace-reader-binding")
    assert binding["roleRef"] == {"kind": "ClusterRole", "name": "alice-namespace-reader",
                                  "apiGroup": "rbac.authorization.k8s.io"}
    assert binding["subjects"][0]["name"] == "alice"
    assert [o.action for o in applier.report.objects] == [ACTION_CREATED, ACTION_CREATED]


def test_namespace_reader_failure_is_an_rbac_error(applier, rbac_api):
    def refuse(body):
        raise api_error(403, "Forbidden")

    rbac_api.create_cluster_role = refuse
    with pytest.raises(RbacApplyError) as excinfo:
        applier.grant_namespace_reader("alice")
    assert excinfo.value.failed_namespace is None


def test_lost_connection_reports_completed_namespaces(core_api, rbac_api):
    core_api.unreachable_namespaces.add("qa")
    applier = RBACApplier(core_api, rbac_api)

    with pytest.raises(RbacApplyError) as excinfo:
        applier.apply_grants("alice", grants_for("dev:write", "qa:read", "ops:read"))

    assert excinfo.value.applied == ["dev"]
    assert excinfo.value.failed_namespace == "qa"
    assert "connection error" in str(excinfo.value)
    assert "ops" not in core_api.namespaces
