from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from kubernetes import client, config
from kubernetes.client import AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


def format_label_selector(labels: Mapping[str, str] | None) -> str:
    """Render ``matchLabels`` as a ``k=v,k2=v2`` selector string."""
    if not labels:
        return ""
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def _owner_name(owner_references: Any, kind: str) -> str | None:
    for owner in owner_references or []:
        if getattr(owner, "kind", None) == kind and getattr(owner, "name", None):
            return owner.name
    return None


def resolve_deployment_name(apps_api: AppsV1Api, pod: Any) -> str:
    """Return the Deployment that owns *pod* through its ReplicaSet.

    Only the ``Pod -> ReplicaSet -> Deployment`` chain is followed.  Bare
    pods, StatefulSet or DaemonSet pods and ReplicaSets without a Deployment
    owner yield ``""``.  ``ApiException`` from the ReplicaSet lookup
    propagates to the caller.
    """
    metadata = getattr(pod, "metadata", None)
    if metadata is None:
        return ""

    replica_set_name = _owner_name(metadata.owner_references, "ReplicaSet")
    if replica_set_name is None:
        return ""

    replica_set = apps_api.read_namespaced_replica_set(
        name=replica_set_name,
        namespace=metadata.namespace,
    )
    rs_metadata = getattr(replica_set, "metadata", None)
    return _owner_name(getattr(rs_metadata, "owner_references", None), "Deployment") or ""


def list_deployment_pod_ips(
    core_api: CoreV1Api,
    apps_api: AppsV1Api,
    namespace: str,
    deployment_name: str,
) -> list[str]:
    """Return the pod IPs currently assigned to pods selected by a Deployment.

    Pods without an IP yet (pending scheduling or sandbox creation) are left
    out.  Order follows the API listing with duplicates removed.
    """
    if not deployment_name:
        return []

    deployment = apps_api.read_namespaced_deployment(name=deployment_name, namespace=namespace)
    selector = getattr(getattr(deployment, "spec", None), "selector", None)
    label_selector = format_label_selector(getattr(selector, "match_labels", None))
    if not label_selector:
        # An empty selector would list every pod in the namespace.
        LOGGER.warning(
            "Deployment %s/%s has no matchLabels; not resolving pod IPs",
            namespace,
            deployment_name,
        )
        return []

    pods = core_api.list_namespaced_pod(namespace=namespace, label_selector=label_selector)
    ips: dict[str, None] = {}
    for pod in pods.items or []:
        pod_ip = getattr(getattr(pod, "status", None), "pod_ip", None)
        if pod_ip:
            ips[pod_ip] = None
    return list(ips)
