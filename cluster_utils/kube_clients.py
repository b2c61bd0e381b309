"""
Kubernetes API client setup shared by the onboarding steps.
"""
import logging
from typing import Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config import ConfigException
from urllib3.exceptions import HTTPError

from cluster_utils.errors import ClusterConfigError

logger = logging.getLogger(__name__)

# Error responses from the API server, and connection failures before one arrives
API_CALL_ERRORS = (ApiException, HTTPError)


def describe_api_error(error: Exception) -> str:
    """Short operator-facing description of a failed API call."""
    if isinstance(error, ApiException):
        return f"{error.status} - {error.reason}"
    return f"connection error ({type(error).__name__}): {error}"


class KubeClients:
    """Bundle of the API groups the onboarder talks to."""

    def __init__(self, core_v1: client.CoreV1Api,
                 rbac_v1: client.RbacAuthorizationV1Api,
                 certificates_v1: client.CertificatesV1Api):
        self.core_v1 = core_v1
        self.rbac_v1 = rbac_v1
        self.certificates_v1 = certificates_v1


def init_kube_clients(kubeconfig_path: Optional[str] = None,
                      context: Optional[str] = None) -> KubeClients:
    """
    Loads the admin kubeconfig and returns the API clients.

    The same kubeconfig also supplies the server and CA written into the
    user's kubeconfig, so there is no in-cluster fallback.
    """
    try:
        config.load_kube_config(config_file=kubeconfig_path, context=context)
        logger.info(f"Using kubeconfig configuration (context={context or 'current'})")
    except ConfigException as e:
        raise ClusterConfigError(f"Could not load kubeconfig: {e}") from e

    api_client = client.ApiClient()
    return KubeClients(
        core_v1=client.CoreV1Api(api_client),
        rbac_v1=client.RbacAuthorizationV1Api(api_client),
        certificates_v1=client.CertificatesV1Api(api_client),
    )
