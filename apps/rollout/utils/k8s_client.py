"""
Kubernetes client helper for the rollout controller.

Loads the in-cluster ServiceAccount config, or the local kubeconfig when
the controller runs outside a cluster.
"""

from __future__ import annotations

import logging
from typing import Optional

from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException

logger = logging.getLogger("rollout.k8s")

_custom_objects: Optional[client.CustomObjectsApi] = None


def load_k8s_config() -> None:
    """
    Order of config:
      1. In-cluster (for pods in the cluster)
      2. KUBECONFIG / ~/.kube/config (for local dev)
    """
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        logger.warning("In-cluster config not found, trying local kubeconfig")
        config.load_kube_config()
        logger.info("Loaded local kubeconfig")


def get_custom_objects_api() -> client.CustomObjectsApi:
    """
    Shared CustomObjectsApi client. AppRollouts, ApplicationConfigurations
    and CloneSets are all custom resources.
    """
    global _custom_objects
    if _custom_objects is None:
        load_k8s_config()
        _custom_objects = client.CustomObjectsApi()
    return _custom_objects
