"""
Mutating admission for StatefulSets that opted into canary rollouts.

A template change restarts the rollout cycle; a create starts it in
CanaryUpscale since there is no previous revision to canary against.
"""
import base64
import json
import logging
from typing import Any, Dict, Mapping, Optional

import kopf
from kubernetes.client import AdmissionregistrationV1Api
from kubernetes.client.exceptions import ApiException

from rollout_engine.annotations import GROUP, LABEL_EXTENDED_STATEFULSET_NAME, rollout_enabled
from rollout_engine.kube import is_conflict, request_timeout
from rollout_engine.rollout import configure_for_initial_rollout, configure_for_rollout
from rollout_engine.settings import RolloutSettings
from rollout_engine.versions import ANNOTATION_VOLUME_CLAIMS, ANNOTATION_VOLUME_MANAGEMENT_NAME

log = logging.getLogger(__name__)

WEBHOOK_ID = "mutate-statefulsets"
WEBHOOK_PATH = f"/{WEBHOOK_ID}"
WEBHOOK_NAME = f"{WEBHOOK_ID}.{GROUP}"
POD_WEBHOOK_ID = "mutate-pods"
POD_WEBHOOK_NAME = f"{POD_WEBHOOK_ID}.{GROUP}"

POD_INDEX_LABEL = "apps.kubernetes.io/pod-index"


def _decode(obj: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(obj, Mapping):
        raise kopf.AdmissionError(f"could not decode {what} StatefulSet", code=400)
    spec = obj.get("spec")
    if not isinstance(spec, Mapping) or not isinstance(spec.get("template"), Mapping):
        raise kopf.AdmissionError(f"could not decode {what} StatefulSet: missing spec.template", code=400)
    return obj


def mutate_statefulset(body: Any, old: Any, operation: str, now: Optional[float] = None) -> Dict[str, Any]:
    """
    Return the changes to apply to the admitted StatefulSet, or {} to admit it
    unmodified. Raises kopf.AdmissionError(code=400) on undecodable objects.
    """
    sts = _decode(body, "admitted")
    annotations = (sts.get("metadata") or {}).get("annotations")
    if not rollout_enabled(annotations):
        return {}

    if operation == "CREATE":
        return configure_for_initial_rollout(sts, now=now)

    if operation == "UPDATE":
        previous = _decode(old, "old")
        if sts["spec"]["template"] == previous["spec"]["template"]:
            return {}
        status = sts.get("status") or previous.get("status") or {}
        return configure_for_rollout(sts, now=now, status=status)

    return {}


def get_ordinal(pod: Mapping[str, Any]) -> Optional[int]:
    """
    Ordinal of a StatefulSet pod: the apps.kubernetes.io/pod-index label,
    falling back to the "-<ordinal>" suffix of the pod name.
    """
    metadata = pod.get("metadata") or {}
    labels = metadata.get("labels") or {}
    if POD_INDEX_LABEL in labels:
        try:
            return int(labels[POD_INDEX_LABEL])
        except ValueError:
            return None

    name = metadata.get("name") or ""
    _, _, suffix = name.rpartition("-")
    try:
        return int(suffix)
    except ValueError:
        return None


def mutate_pod(body: Any) -> Dict[str, Any]:
    """Mount the claims bound by the volume management StatefulSet into a versioned pod."""
    if not isinstance(body, Mapping):
        raise kopf.AdmissionError("could not decode admitted Pod", code=400)
    annotations = (body.get("metadata") or {}).get("annotations") or {}
    if ANNOTATION_VOLUME_CLAIMS not in annotations:
        return {}

    try:
        claims = json.loads(annotations[ANNOTATION_VOLUME_CLAIMS])
    except ValueError:
        raise kopf.AdmissionError(f"invalid {ANNOTATION_VOLUME_CLAIMS} annotation", code=400) from None
    source = annotations.get(ANNOTATION_VOLUME_MANAGEMENT_NAME)
    ordinal = get_ordinal(body)
    if not source or ordinal is None:
        raise kopf.AdmissionError("could not determine the pod's volume claims", code=400)

    pod_volumes = list((body.get("spec") or {}).get("volumes") or [])
    present = {volume.get("name") for volume in pod_volumes}
    missing = [claim for claim in claims if claim not in present]
    if not missing:
        return {}
    for claim in missing:
        pod_volumes.append({
            "name": claim,
            "persistentVolumeClaim": {"claimName": f"{claim}-{source}-{ordinal}"},
        })
    return {"spec": {"volumes": pod_volumes}}


# =========================
# Webhook registration
# =========================

def _client_config(cfg: RolloutSettings, ca_bundle: bytes, path: str, url: Optional[str]) -> Dict[str, Any]:
    client_config: Dict[str, Any] = {"caBundle": base64.b64encode(ca_bundle).decode("ascii")}
    if cfg.webhook_service_name:
        client_config["service"] = {
            "name": cfg.webhook_service_name,
            "namespace": cfg.webhook_service_namespace or cfg.operator_namespace,
            "path": path,
            "port": cfg.webhook_port,
        }
    else:
        base = url or f"https://{cfg.webhook_host or 'localhost'}:{cfg.webhook_port}"
        client_config["url"] = f"{base}{path}"
    return client_config


def webhook_configuration(cfg: RolloutSettings, ca_bundle: bytes,
                          url: Optional[str] = None) -> Dict[str, Any]:
    """MutatingWebhookConfiguration for the StatefulSet and Pod mutators (fail-closed)."""
    namespace_selector = {"matchLabels": {cfg.namespace_selector_label: cfg.operator_namespace}}
    return {
        "apiVersion": "admissionregistration.k8s.io/v1",
        "kind": "MutatingWebhookConfiguration",
        "metadata": {"name": WEBHOOK_NAME},
        "webhooks": [
            {
                "name": WEBHOOK_NAME,
                "clientConfig": _client_config(cfg, ca_bundle, WEBHOOK_PATH, url),
                "failurePolicy": "Fail",
                "sideEffects": "None",
                "admissionReviewVersions": ["v1"],
                "namespaceSelector": namespace_selector,
                "rules": [
                    {
                        "apiGroups": ["apps"],
                        "apiVersions": ["v1"],
                        "operations": ["CREATE", "UPDATE"],
                        "resources": ["statefulsets"],
                        "scope": "Namespaced",
                    }
                ],
            },
            {
                "name": POD_WEBHOOK_NAME,
                "clientConfig": _client_config(cfg, ca_bundle, f"/{POD_WEBHOOK_ID}", url),
                "failurePolicy": "Fail",
                "sideEffects": "None",
                "admissionReviewVersions": ["v1"],
                "namespaceSelector": namespace_selector,
                "objectSelector": {
                    "matchExpressions": [{"key": LABEL_EXTENDED_STATEFULSET_NAME, "operator": "Exists"}],
                },
                "rules": [
                    {
                        "apiGroups": [""],
                        "apiVersions": ["v1"],
                        "operations": ["CREATE"],
                        "resources": ["pods"],
                        "scope": "Namespaced",
                    }
                ],
            },
        ],
    }


def register_webhook_configuration(api: AdmissionregistrationV1Api, config: Dict[str, Any]) -> None:
    """Create the configuration, or replace it if it already exists."""
    name = config["metadata"]["name"]
    try:
        api.create_mutating_webhook_configuration(body=config, _request_timeout=request_timeout())
        log.info(f"Created MutatingWebhookConfiguration {name}.")
        return
    except ApiException as exc:
        if not is_conflict(exc):
            raise

    existing = api.read_mutating_webhook_configuration(name=name, _request_timeout=request_timeout())
    config["metadata"]["resourceVersion"] = existing.metadata.resource_version
    api.replace_mutating_webhook_configuration(name=name, body=config, _request_timeout=request_timeout())
    log.info(f"Replaced MutatingWebhookConfiguration {name}.")
