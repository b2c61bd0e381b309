"""
Shared fixtures for the onboarder tests.
"""
import base64

import pytest
import yaml

from cluster_utils.kube_clients import KubeClients
from tests.fakes import FakeCertificateAuthority, FakeCertificatesApi, FakeCoreApi, FakeRbacApi


@pytest.fixture(scope="session")
def fake_ca():
    return FakeCertificateAuthority()


@pytest.fixture
def certificates_api(fake_ca):
    return FakeCertificatesApi(fake_ca)


@pytest.fixture
def core_api():
    return FakeCoreApi()


@pytest.fixture
def rbac_api():
    return FakeRbacApi()


@pytest.fixture
def kube_clients(core_api, rbac_api, certificates_api):
    return KubeClients(core_v1=core_api, rbac_v1=rbac_api, certificates_v1=certificates_api)


@pytest.fixture
def admin_kubeconfig(tmp_path, fake_ca):
    """An admin kubeconfig whose context and cluster names differ."""
    path = tmp_path / "admin-kubeconfig.yaml"
    document = {
        "apiVersion": "v1",
        "kind": "Config",
        "current-context": "admin@test",
        "clusters": [
            {"name": "other", "cluster": {"server": "https://other:6443",
                                          "certificate-authority-data": "b3RoZXI="}},
            {"name": "test-cluster", "cluster": {
                "server": "https://10.0.0.1:6443",
                "certificate-authority-data": base64.b64encode(fake_ca.pem).decode("utf-8"),
            }},
        ],
        "contexts": [
            {"name": "admin@test", "context": {"cluster": "test-cluster", "user": "admin"}},
            {"name": "admin@other", "context": {"cluster": "other", "user": "admin"}},
        ],
        "users": [{"name": "admin", "user": {"token": "secret"}}],
    }
    path.write_text(yaml.safe_dump(document))
    return path
