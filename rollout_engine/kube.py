"""
Kubernetes API helpers shared by the reconcilers.

Every call passes `_request_timeout` so a single reconcile attempt is bounded,
independently of any rollout watch time.
"""
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

from kubernetes.client import AppsV1Api, CoreV1Api, V1DeleteOptions, V1Pod, V1StatefulSet
from kubernetes.client.exceptions import ApiException

from rollout_engine.errors import ConflictError
from rollout_engine.settings import settings

log = logging.getLogger(__name__)

T = TypeVar("T")


# =========================
# Helper functions
# =========================

def request_timeout() -> int:
    return settings.reconcile_timeout_seconds


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def is_conflict(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 409


def extract_annotations(obj: Any) -> Dict[str, str]:
    """Extract annotations from a model's metadata."""
    return (obj.metadata.annotations if obj.metadata else None) or {}


def extract_labels(obj: Any) -> Dict[str, str]:
    return (obj.metadata.labels if obj.metadata else None) or {}


def label_selector(labels: Dict[str, str]) -> str:
    return ",".join([f"{k}={v}" for k, v in sorted(labels.items())])


def is_pod_ready(pod: V1Pod) -> bool:
    """True if the pod has the Ready condition set to True."""
    conditions: List[Any] = (pod.status.conditions if pod.status else None) or []
    return any(c.type == "Ready" and c.status == "True" for c in conditions)


def is_controlled_by(obj: Any, owner_uid: Optional[str]) -> bool:
    """True if obj carries a controller owner reference to owner_uid."""
    if not owner_uid or not obj.metadata:
        return False
    refs = obj.metadata.owner_references or []
    return any(ref.uid == owner_uid and ref.controller for ref in refs)


def pod_name(sts_name: str, index: int) -> str:
    return f"{sts_name}-{index}"


def get_pod_with_index(core: CoreV1Api, namespace: str, sts_name: str, index: int) -> Optional[V1Pod]:
    """Return pod `<sts>-<index>`, or None if it does not exist."""
    try:
        return core.read_namespaced_pod(
            name=pod_name(sts_name, index),
            namespace=namespace,
            _request_timeout=request_timeout(),
        )
    except ApiException as exc:
        if is_not_found(exc):
            return None
        raise


def cleanup_non_ready_pod(core: CoreV1Api, namespace: str, sts_name: str, index: int,
                          logger: logging.Logger = log) -> bool:
    """
    Delete pod `<sts>-<index>` if it exists and is not ready, so the StatefulSet
    controller recreates it. Returns True if a delete was issued.
    """
    pod = get_pod_with_index(core, namespace, sts_name, index)
    if pod is None or is_pod_ready(pod):
        return False

    logger.info(f"[{namespace}/{sts_name}] Deleting non-ready pod {pod_name(sts_name, index)}.")
    try:
        core.delete_namespaced_pod(
            name=pod_name(sts_name, index),
            namespace=namespace,
            _request_timeout=request_timeout(),
        )
    except ApiException as exc:
        if is_not_found(exc):
            return False
        raise
    return True


def delete_stateful_set_background(apps: AppsV1Api, namespace: str, name: str) -> bool:
    """Delete a StatefulSet, leaving its pods to the garbage collector. False if already gone."""
    try:
        apps.delete_namespaced_stateful_set(
            name=name,
            namespace=namespace,
            body=V1DeleteOptions(propagation_policy="Background"),
            _request_timeout=request_timeout(),
        )
    except ApiException as exc:
        if is_not_found(exc):
            return False
        raise
    return True


def read_modify_write(
    read: Callable[[], T],
    mutate: Callable[[T], bool],
    write: Callable[[T], T],
    namespace: str,
    name: str,
) -> T:
    """
    Read the latest object, let `mutate` change it in place, and write it back
    when `mutate` reports a change. The write carries the read resourceVersion,
    so a concurrent modification surfaces as ConflictError instead of being retried here.
    """
    obj = read()
    if not mutate(obj):
        return obj
    try:
        return write(obj)
    except ApiException as exc:
        if is_conflict(exc):
            raise ConflictError(namespace, name, exc) from exc
        raise


def update_stateful_set(
    apps: AppsV1Api,
    namespace: str,
    name: str,
    mutate: Callable[[V1StatefulSet], bool],
) -> V1StatefulSet:
    """Read-modify-write a StatefulSet with optimistic concurrency."""
    return read_modify_write(
        read=lambda: apps.read_namespaced_stateful_set(
            name=name, namespace=namespace, _request_timeout=request_timeout(),
        ),
        mutate=mutate,
        write=lambda sts: apps.replace_namespaced_stateful_set(
            name=name, namespace=namespace, body=sts, _request_timeout=request_timeout(),
        ),
        namespace=namespace,
        name=name,
    )
