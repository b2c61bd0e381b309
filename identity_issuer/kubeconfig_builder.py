#!/usr/bin/env python3
"""
Kubeconfig Builder
Reads the active cluster from the local client configuration and writes a
self-contained kubeconfig that authenticates with a user's client certificate.
"""
import base64
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from cluster_utils.errors import ClusterConfigError
from identity_issuer.csr_issuer import IssuedIdentity

logger = logging.getLogger(__name__)

CLUSTER_ENTRY_NAME = "kubernetes"
DEFAULT_KUBECONFIG = "~/.kube/config"


class ClusterInfo:
    """Endpoint and trust material of the cluster the user is created on."""

    def __init__(self, context_name: str, cluster_name: str, server: str, ca_data: str):
        self.context_name = context_name
        self.cluster_name = cluster_name
        self.server = server
        self.ca_data = ca_data


def kubeconfig_candidates(kubeconfig_path: Optional[str] = None) -> List[Path]:
    """Files to read, in the order kubectl would merge them."""
    if kubeconfig_path:
        return [Path(kubeconfig_path).expanduser()]
    env_value = os.environ.get("KUBECONFIG")
    if env_value:
        return [Path(p).expanduser() for p in env_value.split(os.pathsep) if p]
    return [Path(DEFAULT_KUBECONFIG).expanduser()]


def _named(entries: List[Dict[str, Any]], key: str) -> Dict[str, Any]:
    return {item["name"]: item.get(key) or {} for item in entries or [] if item and "name" in item}


def _load_documents(paths: List[Path]) -> List[Dict[str, Any]]:
    documents = []
    for path in paths:
        if not path.is_file():
            logger.debug(f"Kubeconfig candidate {path} does not exist")
            continue
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ClusterConfigError(f"Could not read kubeconfig {path}: {e}") from e
        if not isinstance(data, dict):
            raise ClusterConfigError(f"Kubeconfig {path} is not a mapping.")
        data["_source"] = path
        documents.append(data)
    return documents


def load_active_cluster(kubeconfig_path: Optional[str] = None,
                        context: Optional[str] = None) -> ClusterInfo:
    """
    Resolves the active (or requested) context to its cluster server and CA data.

    When several kubeconfig files are configured, the first file that sets a
    value wins, as with kubectl.

    Raises:
        ClusterConfigError: If the context, cluster, server or CA cannot be found.
    """
    documents = _load_documents(kubeconfig_candidates(kubeconfig_path))
    if not documents:
        raise ClusterConfigError("No kubeconfig file found; set KUBECONFIG or pass --kubeconfig.")

    context_name = context or next(
        (doc["current-context"] for doc in documents if doc.get("current-context")), None)
    if not context_name:
        raise ClusterConfigError("No current context is set; pass --context.")

    contexts: Dict[str, Any] = {}
    clusters: Dict[str, Any] = {}
    sources: Dict[str, Path] = {}
    for doc in documents:
        for name, value in _named(doc.get("contexts"), "context").items():
            contexts.setdefault(name, value)
        for name, value in _named(doc.get("clusters"), "cluster").items():
            if name not in clusters:
                clusters[name] = value
                sources[name] = doc["_source"]

    if context_name not in contexts:
        raise ClusterConfigError(f"Context '{context_name}' not found in kubeconfig.")
    cluster_name = contexts[context_name].get("cluster")
    if not cluster_name or cluster_name not in clusters:
        raise ClusterConfigError(f"Cluster for context '{context_name}' not found in kubeconfig.")

    cluster = clusters[cluster_name]
    server = cluster.get("server")
    if not server:
        raise ClusterConfigError(f"Cluster '{cluster_name}' has no server URL.")

    ca_data = cluster.get("certificate-authority-data")
    if not ca_data:
        ca_path = cluster.get("certificate-authority")
        if not ca_path:
            raise ClusterConfigError(f"Cluster '{cluster_name}' has no certificate authority data.")
        ca_file = Path(ca_path).expanduser()
        if not ca_file.is_absolute():
            ca_file = sources[cluster_name].parent / ca_file
        try:
            ca_data = base64.b64encode(ca_file.read_bytes()).decode("utf-8")
        except OSError as e:
            raise ClusterConfigError(f"Could not read certificate authority {ca_file}: {e}") from e

    logger.info(f"Active cluster '{cluster_name}' ({server}) from context '{context_name}'")
    return ClusterInfo(context_name, cluster_name, server, ca_data)


def build_kubeconfig(cluster: ClusterInfo, identity: IssuedIdentity,
                     default_namespace: Optional[str] = None) -> Dict[str, Any]:
    username = identity.username
    context_name = f"{username}@{CLUSTER_ENTRY_NAME}"
    context: Dict[str, Any] = {"cluster": CLUSTER_ENTRY_NAME, "user": username}
    if default_namespace:
        context["namespace"] = default_namespace
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{
            "name": CLUSTER_ENTRY_NAME,
            "cluster": {
                "certificate-authority-data": cluster.ca_data,
                "server": cluster.server,
            },
        }],
        "contexts": [{"name": context_name, "context": context}],
        "current-context": context_name,
        "users": [{
            "name": username,
            "user": {
                "client-certificate-data": base64.b64encode(identity.cert_pem).decode("utf-8"),
                "client-key-data": base64.b64encode(identity.key_pem).decode("utf-8"),
            },
        }],
    }


def write_kubeconfig(document: Dict[str, Any], path: Path) -> Path:
    """Writes the kubeconfig readable by the owner only."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        yaml.safe_dump(document, f, sort_keys=False, default_flow_style=False)
    os.chmod(path, 0o600)
    logger.info(f"Kubeconfig written to {path}")
    return path
