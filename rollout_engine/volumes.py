"""
Volume pre-provisioning.

A throwaway `volumemanagement-` StatefulSet carries the workload's volume claim
templates so PVCs are bound before the versioned StatefulSet's pods start.
It is deleted once all of its pods are ready; the PVCs stay behind.
"""
import copy
import logging
from typing import Any, Dict, List, Mapping, Optional

import kopf
from kubernetes.client import AppsV1Api, CoreV1Api, V1StatefulSet
from kubernetes.client.exceptions import ApiException

from rollout_engine.annotations import GROUP, LABEL_EXTENDED_STATEFULSET_NAME
from rollout_engine.kube import (
    delete_stateful_set_background,
    get_pod_with_index,
    is_conflict,
    is_pod_ready,
    request_timeout,
)
from rollout_engine.settings import settings
from rollout_engine.zones import apply_zone, name_prefix, zone_list, zone_node_label

log = logging.getLogger(__name__)

VOLUME_MANAGEMENT_PREFIX = "volumemanagement-"
VOLUME_MANAGEMENT_CONTAINER = "volume-management"
LABEL_VOLUME_MANAGEMENT = f"{GROUP}/volume-management"


def is_volume_management(name: str) -> bool:
    return name.startswith(VOLUME_MANAGEMENT_PREFIX)


def volume_management_name(owner_name: str, zone_index: Optional[int]) -> str:
    return f"{VOLUME_MANAGEMENT_PREFIX}{name_prefix(owner_name, zone_index)}"


def claim_templates(template: Mapping[str, Any]) -> List[Dict[str, Any]]:
    return list((template.get("spec") or {}).get("volumeClaimTemplates") or [])


def needs_preprovisioning(template: Mapping[str, Any], actual_version: int, is_new_version: bool,
                          actual: Optional[V1StatefulSet]) -> bool:
    """First version of a workload with claims, or a scale-up beyond the current replicas."""
    if not claim_templates(template):
        return False
    if actual_version == 0:
        return is_new_version
    desired = (template.get("spec") or {}).get("replicas")
    desired = 1 if desired is None else desired
    current = (actual.spec.replicas if actual is not None and actual.spec else None) or 0
    return desired - current > 0


def generate_volume_management_stateful_sets(owner: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """One volume-management StatefulSet per zone, or one without zones."""
    spec = owner.get("spec") or {}
    zones = zone_list(spec)
    if not zones:
        return [_generate_single(owner, None, None)]
    return [_generate_single(owner, index, zone) for index, zone in enumerate(zones)]


def _generate_single(owner: Mapping[str, Any], zone_index: Optional[int], zone_name: Optional[str]) -> Dict[str, Any]:
    owner_name = owner["metadata"]["name"]
    spec = owner.get("spec") or {}
    sts = copy.deepcopy(spec.get("template") or {})
    name = volume_management_name(owner_name, zone_index)

    sts["apiVersion"] = "apps/v1"
    sts["kind"] = "StatefulSet"
    sts["metadata"] = {
        "name": name,
        "namespace": owner["metadata"].get("namespace"),
        "labels": {LABEL_EXTENDED_STATEFULSET_NAME: owner_name},
    }

    sts_spec = sts.setdefault("spec", {})
    pod_template = sts_spec.setdefault("template", {})
    # Own selector so these pods never back the workload's Services.
    pod_template["metadata"] = {"labels": {LABEL_VOLUME_MANAGEMENT: name}}
    sts_spec["selector"] = {"matchLabels": {LABEL_VOLUME_MANAGEMENT: name}}

    if zone_index is not None:
        apply_zone(sts, zone_index, zone_name, zone_list(spec), zone_node_label(spec))

    sts_spec["podManagementPolicy"] = "Parallel"
    sts_spec.pop("updateStrategy", None)

    pod_spec = pod_template.setdefault("spec", {})
    pod_spec["initContainers"] = []
    pod_spec["containers"] = [{
        "name": VOLUME_MANAGEMENT_CONTAINER,
        "image": settings.volume_management_image,
        "command": ["sh", "-c", "while true; do sleep 3600; done"],
        "volumeMounts": [
            {"name": claim["metadata"]["name"], "mountPath": f"/mnt/{claim['metadata']['name']}"}
            for claim in claim_templates(sts)
        ],
    }]

    kopf.append_owner_reference(sts, owner=owner)
    return sts


def create_volume_management(apps: AppsV1Api, namespace: str, manifests: List[Dict[str, Any]],
                             logger: logging.Logger = log) -> List[str]:
    """Create the volume-management StatefulSets; existing ones are left alone."""
    created = []
    for manifest in manifests:
        name = manifest["metadata"]["name"]
        try:
            apps.create_namespaced_stateful_set(namespace=namespace, body=manifest, _request_timeout=request_timeout())
        except ApiException as exc:
            if not is_conflict(exc):
                raise
            logger.debug(f"[{namespace}/{name}] Volume management StatefulSet already exists.")
            continue
        logger.info(f"[{namespace}/{name}] Created volume management StatefulSet.")
        created.append(name)
    return created


def is_volume_management_ready(core: CoreV1Api, sts: V1StatefulSet) -> bool:
    """Every ordinal pod exists and is ready. A missing pod is not ready yet."""
    replicas = sts.spec.replicas if sts.spec and sts.spec.replicas is not None else 1
    for index in range(replicas):
        pod = get_pod_with_index(core, sts.metadata.namespace, sts.metadata.name, index)
        if pod is None or not is_pod_ready(pod):
            return False
    return True


def cleanup_volume_management(apps: AppsV1Api, core: CoreV1Api, stateful_sets: List[V1StatefulSet],
                              logger: logging.Logger = log) -> List[str]:
    """
    Delete every ready volume-management StatefulSet among stateful_sets.
    Returns the names of those still waiting for their pods.
    """
    pending = []
    for sts in stateful_sets:
        name = sts.metadata.name
        if not is_volume_management(name):
            continue
        if not is_volume_management_ready(core, sts):
            pending.append(name)
            continue
        logger.info(f"[{sts.metadata.namespace}/{name}] Volumes provisioned; deleting volume management StatefulSet.")
        delete_stateful_set_background(apps, sts.metadata.namespace, name)
    return pending
