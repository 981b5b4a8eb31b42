"""
VersionManager: turns an ExtendedStatefulSet into immutable, numbered StatefulSets.

A new version `<name>[-z<i>]-v<N>` is minted only when the SHA1 of the desired
template, zones and update block differs from the latest version's; existing
versions are never updated.
"""
import copy
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import kopf
from kubernetes.client import AppsV1Api, CoreV1Api, V1StatefulSet
from kubernetes.client.exceptions import ApiException

from rollout_engine import volumes
from rollout_engine.annotations import (
    ANNOTATION_CONFIG_SHA1,
    ANNOTATION_STATEFULSET_SHA1,
    ANNOTATION_VERSION,
    GROUP,
    LABEL_EXTENDED_STATEFULSET_NAME,
)
from rollout_engine.configs import VersionedSecretStore, compute_config_sha1
from rollout_engine.errors import VersionAnnotationError
from rollout_engine.kube import (
    extract_annotations,
    is_conflict,
    is_controlled_by,
    label_selector,
    request_timeout,
)
from rollout_engine.rollout import compute_rollout_annotations
from rollout_engine.zones import apply_zone, inject_container_env, name_prefix, zone_list, zone_node_label

log = logging.getLogger(__name__)

# Read by the pod mutator to mount the pre-provisioned claims.
ANNOTATION_VOLUME_CLAIMS = f"{GROUP}/volume-claims"
ANNOTATION_VOLUME_MANAGEMENT_NAME = f"{GROUP}/volume-management-name"


@dataclass
class VersionReport:
    version: int
    created: List[str] = field(default_factory=list)
    volumes_pending: List[str] = field(default_factory=list)


# =========================
# Versions
# =========================

def get_version(sts: V1StatefulSet) -> int:
    """The version annotation of an owned StatefulSet; missing or non-numeric is an error."""
    value = extract_annotations(sts).get(ANNOTATION_VERSION)
    if value is None:
        raise VersionAnnotationError(sts.metadata.name, None)
    try:
        return int(value)
    except ValueError:
        raise VersionAnnotationError(sts.metadata.name, value) from None


def list_owned_stateful_sets(apps: AppsV1Api, namespace: str, owner_name: str,
                             owner_uid: str) -> List[V1StatefulSet]:
    """All StatefulSets controlled by the ExtendedStatefulSet, volume management ones included."""
    items = apps.list_namespaced_stateful_set(
        namespace=namespace,
        label_selector=label_selector({LABEL_EXTENDED_STATEFULSET_NAME: owner_name}),
        _request_timeout=request_timeout(),
    ).items
    return [sts for sts in items if is_controlled_by(sts, owner_uid)]


def group_versions(stateful_sets: List[V1StatefulSet]) -> Dict[int, List[V1StatefulSet]]:
    """Versioned StatefulSets keyed by version; one entry per zone."""
    versions: Dict[int, List[V1StatefulSet]] = {}
    for sts in stateful_sets:
        if volumes.is_volume_management(sts.metadata.name):
            continue
        versions.setdefault(get_version(sts), []).append(sts)
    return versions


def template_sha1(template: Mapping[str, Any]) -> str:
    return hashlib.sha1(json.dumps(template, sort_keys=True, separators=(",", ":")).encode("utf-8")).hexdigest()


def desired_sha1(owner: Mapping[str, Any], template: Mapping[str, Any]) -> str:
    """SHA1 over everything that shapes the generated StatefulSets, not just the template."""
    spec = owner.get("spec") or {}
    zones = zone_list(spec)
    return template_sha1({
        "template": template,
        "zones": zones,
        "zoneNodeLabel": zone_node_label(spec) if zones else None,
        "update": compute_rollout_annotations(spec.get("update")),
    })


def desired_version(versions: Dict[int, List[V1StatefulSet]], sha: str) -> Tuple[int, bool]:
    """(version, is_new): the latest version if its template matches, otherwise the next one."""
    if not versions:
        return 1, True
    latest = max(versions)
    shas = {extract_annotations(sts).get(ANNOTATION_STATEFULSET_SHA1) for sts in versions[latest]}
    if shas == {sha}:
        return latest, False
    return latest + 1, True


# =========================
# Generation
# =========================

def prepare_template(core: CoreV1Api, owner: Mapping[str, Any]) -> Dict[str, Any]:
    """
    The desired StatefulSet template with versioned secret references resolved
    and, if requested, the config SHA1 stamped on the pod template.
    """
    namespace = owner["metadata"]["namespace"]
    spec = owner.get("spec") or {}
    template = copy.deepcopy(spec.get("template") or {})
    pod_template = template.setdefault("spec", {}).setdefault("template", {})
    pod_spec = pod_template.setdefault("spec", {})

    VersionedSecretStore(core).update_secret_references(namespace, pod_spec)

    if spec.get("updateOnConfigChange"):
        metadata = pod_template.setdefault("metadata", {})
        annotations = metadata.get("annotations") or {}
        annotations[ANNOTATION_CONFIG_SHA1] = compute_config_sha1(core, namespace, pod_spec)
        metadata["annotations"] = annotations
    return template


def generate_stateful_sets(owner: Mapping[str, Any], template: Mapping[str, Any],
                           version: int, sha: str) -> List[Dict[str, Any]]:
    """One StatefulSet manifest per zone (or a single one) for the given version."""
    spec = owner.get("spec") or {}
    zones = zone_list(spec)
    if not zones:
        return [_generate_single(owner, template, version, sha, None, None)]
    return [
        _generate_single(owner, template, version, sha, index, zone)
        for index, zone in enumerate(zones)
    ]


def _generate_single(owner: Mapping[str, Any], template: Mapping[str, Any], version: int, sha: str,
                     zone_index: Optional[int], zone_name: Optional[str]) -> Dict[str, Any]:
    owner_name = owner["metadata"]["name"]
    spec = owner.get("spec") or {}
    sts = copy.deepcopy(dict(template))
    sts["apiVersion"] = "apps/v1"
    sts["kind"] = "StatefulSet"

    metadata = sts.setdefault("metadata", {})
    metadata["name"] = f"{name_prefix(owner_name, zone_index)}-v{version}"
    metadata["namespace"] = owner["metadata"].get("namespace")
    labels = metadata.get("labels") or {}
    labels[LABEL_EXTENDED_STATEFULSET_NAME] = owner_name
    metadata["labels"] = labels
    annotations = metadata.get("annotations") or {}
    annotations.update(compute_rollout_annotations(spec.get("update")))
    annotations[ANNOTATION_VERSION] = str(version)
    annotations[ANNOTATION_STATEFULSET_SHA1] = sha
    metadata["annotations"] = annotations

    sts_spec = sts.setdefault("spec", {})
    replicas = sts_spec.get("replicas")
    replicas = 1 if replicas is None else replicas
    pod_template = sts_spec.setdefault("template", {})
    pod_metadata = pod_template.setdefault("metadata", {})
    pod_labels = pod_metadata.get("labels") or {}
    pod_labels[LABEL_EXTENDED_STATEFULSET_NAME] = owner_name
    pod_metadata["labels"] = pod_labels

    if zone_index is not None:
        apply_zone(sts, zone_index, zone_name, zone_list(spec), zone_node_label(spec))
    inject_container_env(pod_template.setdefault("spec", {}), zone_index, zone_name, replicas)

    # Claims are bound by the volume management StatefulSet and mounted by the pod mutator.
    claims = sts_spec.pop("volumeClaimTemplates", None) or []
    if claims:
        pod_annotations = pod_metadata.get("annotations") or {}
        pod_annotations[ANNOTATION_VOLUME_CLAIMS] = json.dumps([c["metadata"]["name"] for c in claims])
        pod_annotations[ANNOTATION_VOLUME_MANAGEMENT_NAME] = volumes.volume_management_name(owner_name, zone_index)
        pod_metadata["annotations"] = pod_annotations

    kopf.append_owner_reference(sts, owner=owner)
    return sts


# =========================
# Reconcile
# =========================

def reconcile_versions(apps: AppsV1Api, core: CoreV1Api, owner: Mapping[str, Any],
                       logger: logging.Logger = log) -> VersionReport:
    """
    Create the StatefulSets of the desired version if they do not exist yet,
    pre-provisioning volumes first when the workload has claim templates.
    """
    namespace = owner["metadata"]["namespace"]
    owner_name = owner["metadata"]["name"]
    owned = list_owned_stateful_sets(apps, namespace, owner_name, owner["metadata"]["uid"])
    versions = group_versions(owned)
    actual_version = max(versions) if versions else 0
    actual = versions[actual_version][0] if versions else None

    template = prepare_template(core, owner)
    sha = desired_sha1(owner, template)
    version, is_new = desired_version(versions, sha)
    report = VersionReport(version=version)

    if volumes.needs_preprovisioning(template, actual_version, is_new, actual):
        manifests = volumes.generate_volume_management_stateful_sets(owner)
        volumes.create_volume_management(apps, namespace, manifests, logger)
        report.volumes_pending = [m["metadata"]["name"] for m in manifests]

    if not is_new:
        logger.debug(f"[{namespace}/{owner_name}] Version {version} is up to date.")
        return report

    existing = {sts.metadata.name for sts in owned}
    for manifest in generate_stateful_sets(owner, template, version, sha):
        name = manifest["metadata"]["name"]
        if name in existing:
            continue
        try:
            apps.create_namespaced_stateful_set(namespace=namespace, body=manifest, _request_timeout=request_timeout())
        except ApiException as exc:
            if not is_conflict(exc):
                raise
            logger.info(f"[{namespace}/{name}] StatefulSet already exists; versions are never updated.")
            continue
        logger.info(f"[{namespace}/{owner_name}] Created StatefulSet {name} (version {version}).")
        report.created.append(name)
    return report
