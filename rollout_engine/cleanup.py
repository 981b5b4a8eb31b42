"""
Version cleanup: delete StatefulSet versions older than the newest ready one,
and volume management StatefulSets once their claims are bound.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List

from kubernetes.client import AppsV1Api, CoreV1Api, V1StatefulSet

from rollout_engine import volumes
from rollout_engine.annotations import LABEL_CONTROLLER_REVISION_HASH
from rollout_engine.kube import (
    delete_stateful_set_background,
    is_controlled_by,
    is_pod_ready,
    label_selector,
    request_timeout,
)
from rollout_engine.versions import group_versions

log = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    deleted: List[str] = field(default_factory=list)
    volumes_pending: List[str] = field(default_factory=list)
    versions: Dict[int, bool] = field(default_factory=dict)


def is_version_ready(core: CoreV1Api, sts: V1StatefulSet) -> bool:
    """At least one pod of the StatefulSet's current revision is ready."""
    revision = sts.status.current_revision if sts.status else None
    if not revision:
        return False
    pods = core.list_namespaced_pod(
        namespace=sts.metadata.namespace,
        label_selector=label_selector({LABEL_CONTROLLER_REVISION_HASH: revision}),
        _request_timeout=request_timeout(),
    ).items
    return any(is_controlled_by(pod, sts.metadata.uid) and is_pod_ready(pod) for pod in pods)


def version_readiness(core: CoreV1Api, versions: Dict[int, List[V1StatefulSet]]) -> Dict[int, bool]:
    """A version with zones is ready when any of its per-zone StatefulSets is."""
    return {
        version: any(is_version_ready(core, sts) for sts in stateful_sets)
        for version, stateful_sets in versions.items()
    }


def max_available_version(readiness: Dict[int, bool]) -> int:
    """The greatest ready version, 0 when none is ready."""
    return max((version for version, ready in readiness.items() if ready), default=0)


def cleanup_versions(apps: AppsV1Api, versions: Dict[int, List[V1StatefulSet]],
                     readiness: Dict[int, bool], logger: logging.Logger = log) -> List[str]:
    """Delete versions strictly below the max available one. Never touches newer versions."""
    if len(versions) <= 1:
        return []

    max_available = max_available_version(readiness)
    deleted = []
    for version in sorted(versions):
        if version >= max_available:
            continue
        for sts in versions[version]:
            namespace, name = sts.metadata.namespace, sts.metadata.name
            logger.info(f"[{namespace}/{name}] Deleting version {version}; version {max_available} is available.")
            if delete_stateful_set_background(apps, namespace, name):
                deleted.append(name)
    return deleted


def reconcile_cleanup(apps: AppsV1Api, core: CoreV1Api, stateful_sets: List[V1StatefulSet],
                      logger: logging.Logger = log) -> CleanupReport:
    """Run both cleanups over the StatefulSets owned by one ExtendedStatefulSet."""
    report = CleanupReport()
    report.volumes_pending = volumes.cleanup_volume_management(apps, core, stateful_sets, logger)

    versions = group_versions(stateful_sets)
    report.versions = version_readiness(core, versions)
    report.deleted = cleanup_versions(apps, versions, report.versions, logger)
    return report
