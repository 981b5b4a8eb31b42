"""
Kopf wiring for the rollout engine.

- Canary-enabled StatefulSets: status events feed the rollout state machine.
- ExtendedStatefulSets: create/update/resume mint versions and clean up old ones.
- Owned StatefulSets: status events feed the version cleanup.
- Mutating webhooks for StatefulSets (rollout annotations) and Pods (claims).

Env vars are prefixed with RO_ (see rollout_engine.settings).
"""
import logging
import os
from typing import Any, Dict, Mapping, Optional

import kopf
import kubernetes
from kubernetes.client import AdmissionregistrationV1Api, AppsV1Api, CoreV1Api, CustomObjectsApi
from kubernetes.client.exceptions import ApiException

from rollout_engine import admission, cleanup, rollout, versions
from rollout_engine.annotations import (
    ANNOTATION_CANARY_ROLLOUT_ENABLED,
    GROUP,
    LABEL_EXTENDED_STATEFULSET_NAME,
    RolloutState,
)
from rollout_engine.errors import WatchTimeError
from rollout_engine.kube import is_not_found, request_timeout
from rollout_engine.settings import settings as rollout_settings
from rollout_engine.workqueue import Key, ReconcileResult, RequeueScheduler

log = logging.getLogger(__name__)

CRD_VERSION = "v1alpha1"
CRD_PLURAL = "extendedstatefulsets"

rollout_scheduler: Optional[RequeueScheduler] = None
cleanup_scheduler: Optional[RequeueScheduler] = None

# Last status seen per StatefulSet; kopf.on.event carries no previous object.
_last_seen: Dict[Key, Mapping[str, Any]] = {}


# =========================
# Startup / shutdown
# =========================

def load_kube_config() -> None:
    try:
        kubernetes.config.load_incluster_config()
    except kubernetes.config.ConfigException:
        kubernetes.config.load_kube_config()


@kopf.on.startup()
async def configure(settings: kopf.OperatorSettings, logger, **kwargs):
    """Configure the Kubernetes client, kopf, the webhook server and the schedulers."""
    global rollout_scheduler, cleanup_scheduler

    load_kube_config()

    if rollout_settings.json_logs:
        kopf.configure(log_format=kopf.LogFormat.JSON)
    settings.posting.level = logging.INFO

    rollout_scheduler = RequeueScheduler(
        "rollout",
        reconcile_rollout,
        max_workers=rollout_settings.max_workers,
        backoff_base=rollout_settings.backoff_base_seconds,
        backoff_max=rollout_settings.backoff_max_seconds,
    )
    cleanup_scheduler = RequeueScheduler(
        "cleanup",
        reconcile_cleanup,
        max_workers=rollout_settings.max_workers,
        backoff_base=rollout_settings.backoff_base_seconds,
        backoff_max=rollout_settings.backoff_max_seconds,
    )

    if rollout_settings.webhook_enabled:
        configure_webhooks(settings, logger)


def configure_webhooks(settings: kopf.OperatorSettings, logger) -> None:
    cert_dir = rollout_settings.webhook_cert_dir
    if cert_dir is None:
        # Development: kopf self-signs (or tunnels) and manages its own configuration.
        if rollout_settings.webhook_host:
            settings.admission.server = kopf.WebhookServer(
                addr="0.0.0.0",
                port=rollout_settings.webhook_port,
                host=rollout_settings.webhook_host,
            )
        else:
            settings.admission.server = kopf.WebhookAutoServer(port=rollout_settings.webhook_port)
        settings.admission.managed = admission.WEBHOOK_NAME
        logger.warning("No RO_WEBHOOK_CERT_DIR set; using a self-signed webhook without a namespace selector.")
        return

    certfile = os.path.join(cert_dir, "tls.crt")
    pkeyfile = os.path.join(cert_dir, "tls.key")
    cafile = os.path.join(cert_dir, "ca.crt")
    settings.admission.server = kopf.WebhookServer(
        addr="0.0.0.0",
        port=rollout_settings.webhook_port,
        host=rollout_settings.webhook_host,
        certfile=certfile,
        pkeyfile=pkeyfile,
    )
    with open(cafile if os.path.exists(cafile) else certfile, "rb") as f:
        ca_bundle = f.read()
    admission.register_webhook_configuration(
        AdmissionregistrationV1Api(),
        admission.webhook_configuration(rollout_settings, ca_bundle),
    )


@kopf.on.cleanup()
async def shutdown(logger, **kwargs):
    for scheduler in (rollout_scheduler, cleanup_scheduler):
        if scheduler is not None:
            scheduler.shutdown()
    _last_seen.clear()
    logger.info("Schedulers stopped.")


# =========================
# Filters
# =========================

def in_watch_namespace(namespace, **kwargs) -> bool:
    """Handlers only act in RO_WATCH_NAMESPACE when it is set."""
    return rollout_settings.watch_namespace is None or namespace == rollout_settings.watch_namespace


# =========================
# Rollout state machine
# =========================

def _post_transition(namespace: str, name: str, step: rollout.RolloutStep) -> None:
    ref = {"apiVersion": "apps/v1", "kind": "StatefulSet", "metadata": {"namespace": namespace, "name": name}}
    message = f"{step.state.value}: partition {step.partition} ({step.reason})"
    if step.state == RolloutState.FAILED:
        kopf.warn(ref, reason="CanaryRolloutFailed", message=message)
    else:
        kopf.info(ref, reason=f"CanaryRollout{step.state.value}", message=message)


def reconcile_rollout(namespace: str, name: str) -> Optional[ReconcileResult]:
    return rollout.reconcile_rollout(
        AppsV1Api(), CoreV1Api(), namespace, name,
        logger=log,
        on_transition=lambda step: _post_transition(namespace, name, step),
    )


@kopf.on.event("apps", "v1", "statefulsets", annotations={ANNOTATION_CANARY_ROLLOUT_ENABLED: "true"},
                when=in_watch_namespace)
async def on_rollout_event(type, body, meta, logger, **kwargs):
    """Enqueue canary-enabled StatefulSets whose rollout needs another look."""
    key = (meta["namespace"], meta["name"])
    if type == "DELETED":
        _last_seen.pop(key, None)
        if rollout_scheduler is not None:
            rollout_scheduler.forget(key)
        wanted = rollout.should_reconcile_on_delete(body)
    elif type == "ADDED":
        _last_seen[key] = {"status": dict(body.get("status") or {})}
        wanted = rollout.should_reconcile_on_create(body)
    else:
        old = _last_seen.get(key)
        _last_seen[key] = {"status": dict(body.get("status") or {})}
        wanted = rollout.should_reconcile_on_update(old, body)
    if wanted and rollout_scheduler is not None:
        logger.debug(f"[{key[0]}/{key[1]}] Enqueueing rollout reconcile.")
        rollout_scheduler.enqueue(key)


# =========================
# ExtendedStatefulSet
# =========================

def _owned(apps: AppsV1Api, body: Mapping[str, Any]):
    meta = body["metadata"]
    return versions.list_owned_stateful_sets(apps, meta["namespace"], meta["name"], meta["uid"])


@kopf.on.resume(GROUP, CRD_VERSION, CRD_PLURAL, when=in_watch_namespace)
@kopf.on.create(GROUP, CRD_VERSION, CRD_PLURAL, when=in_watch_namespace)
@kopf.on.update(GROUP, CRD_VERSION, CRD_PLURAL, when=in_watch_namespace)
def reconcile_extended_stateful_set(body, meta, patch, logger, **kwargs):
    """Mint the desired version, then retire what the newest ready version supersedes."""
    namespace, name = meta["namespace"], meta["name"]
    apps, core = AppsV1Api(), CoreV1Api()

    # Bound volume management StatefulSets go first, so they are not recreated needlessly.
    before = cleanup.reconcile_cleanup(apps, core, _owned(apps, body), logger)
    try:
        report = versions.reconcile_versions(apps, core, body, logger)
    except WatchTimeError as exc:
        raise kopf.PermanentError(f"[{namespace}/{name}] Invalid update block: {exc}.") from exc

    patch.status["version"] = report.version
    patch.status["versions"] = {str(v): ready for v, ready in sorted(before.versions.items())}

    pending = sorted(set(before.volumes_pending) | set(report.volumes_pending))
    if pending:
        raise kopf.TemporaryError(
            f"[{namespace}/{name}] Waiting for volumes of {pending}.",
            delay=rollout_settings.volume_requeue_seconds,
        )
    logger.info(f"[{namespace}/{name}] At version {report.version}; created {report.created or 'nothing'}.")


def reconcile_cleanup(namespace: str, name: str) -> Optional[ReconcileResult]:
    apps, core = AppsV1Api(), CoreV1Api()
    try:
        owner = CustomObjectsApi().get_namespaced_custom_object(
            GROUP, CRD_VERSION, namespace, CRD_PLURAL, name, _request_timeout=request_timeout(),
        )
    except ApiException as exc:
        if is_not_found(exc):
            log.debug(f"[{namespace}/{name}] ExtendedStatefulSet not found; nothing to clean up.")
            return None
        raise

    report = cleanup.reconcile_cleanup(apps, core, _owned(apps, owner), log)
    if report.volumes_pending:
        return ReconcileResult(requeue_after=rollout_settings.volume_requeue_seconds)
    return ReconcileResult()


@kopf.on.event("apps", "v1", "statefulsets", labels={LABEL_EXTENDED_STATEFULSET_NAME: kopf.PRESENT},
                when=in_watch_namespace)
async def on_owned_statefulset_event(type, meta, labels, logger, **kwargs):
    """Versions becoming ready (or going away) may make older versions obsolete."""
    if cleanup_scheduler is None:
        return
    cleanup_scheduler.enqueue((meta["namespace"], labels[LABEL_EXTENDED_STATEFULSET_NAME]))


# =========================
# Admission
# =========================

@kopf.on.mutate("apps", "v1", "statefulsets", id=admission.WEBHOOK_ID,
                annotations={ANNOTATION_CANARY_ROLLOUT_ENABLED: "true"})
def mutate_statefulsets(body, old, operation, patch, logger, **kwargs):
    """Stamp rollout annotations and partition when the pod template changes."""
    changes = admission.mutate_statefulset(body, old, operation)
    if changes:
        annotations = changes["metadata"]["annotations"]
        logger.info(f"[{body['metadata'].get('namespace')}/{body['metadata'].get('name')}] "
                    f"Configuring canary rollout: {annotations}.")
        patch.update(changes)


@kopf.on.mutate("pods", id=admission.POD_WEBHOOK_ID, labels={LABEL_EXTENDED_STATEFULSET_NAME: kopf.PRESENT})
def mutate_pods(body, operation, patch, **kwargs):
    """Mount pre-provisioned claims into versioned StatefulSet pods."""
    if operation != "CREATE":
        return
    changes = admission.mutate_pod(body)
    if changes:
        patch.update(changes)
