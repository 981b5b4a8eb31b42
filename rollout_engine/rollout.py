"""
Canary rollout state machine for StatefulSets.

The state lives in the StatefulSet's annotations; each reconcile re-reads the
object, computes one step, writes it back with optimistic concurrency and
returns how long to wait before looking again.

    Pending ──(status.replicas < spec.replicas)──> CanaryUpscale
       └────(partition - 1)──> Canary ──(canary pod ready)──> Rollout ... ──> Done
    any non-terminal state ──(watch time exceeded)──> Failed
"""
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from kubernetes.client import (
    AppsV1Api,
    CoreV1Api,
    V1RollingUpdateStatefulSetStrategy,
    V1StatefulSet,
    V1StatefulSetUpdateStrategy,
)
from kubernetes.client.exceptions import ApiException

from rollout_engine.annotations import (
    ANNOTATION_CANARY_ROLLOUT,
    ANNOTATION_CANARY_ROLLOUT_ENABLED,
    ANNOTATION_CANARY_WATCH_TIME,
    ANNOTATION_UPDATE_START_TIME,
    ANNOTATION_UPDATE_WATCH_TIME,
    LABEL_CONTROLLER_REVISION_HASH,
    RolloutState,
)
from rollout_engine.errors import WatchTimeError
from rollout_engine.kube import (
    cleanup_non_ready_pod,
    extract_annotations,
    extract_labels,
    get_pod_with_index,
    is_not_found,
    is_pod_ready,
    update_stateful_set,
)
from rollout_engine.settings import settings
from rollout_engine.workqueue import ReconcileResult

log = logging.getLogger(__name__)

RANGE_WATCH_TIME = re.compile(r"^\s*(\d+)\s*-\s*(\d+)\s*$")
ABSOLUTE_WATCH_TIME = re.compile(r"^\s*(\d+)\s*$")


# =========================
# Configuration helpers
# =========================

def configure_for_rollout(body: Mapping[str, Any], now: Optional[float] = None,
                          status: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """
    Changes that (re)start a canary rollout: Pending, with the partition set so
    that no existing pod is replaced until the state machine moves it.
    """
    now = time.time() if now is None else now
    spec = body.get("spec") or {}
    replicas = spec.get("replicas")
    replicas = 1 if replicas is None else replicas
    status = status if status is not None else (body.get("status") or {})
    partition = min(replicas, status.get("replicas") or 0)
    return _rollout_changes(RolloutState.PENDING, partition, now)


def configure_for_initial_rollout(body: Mapping[str, Any], now: Optional[float] = None) -> Dict[str, Any]:
    """Changes for a StatefulSet that never had pods: nothing to canary against."""
    now = time.time() if now is None else now
    return _rollout_changes(RolloutState.CANARY_UPSCALE, 0, now)


def _rollout_changes(state: RolloutState, partition: int, now: float) -> Dict[str, Any]:
    return {
        "metadata": {
            "annotations": {
                ANNOTATION_CANARY_ROLLOUT: state.value,
                ANNOTATION_UPDATE_START_TIME: str(int(now)),
            },
        },
        "spec": {
            "updateStrategy": {
                "type": "RollingUpdate",
                "rollingUpdate": {"partition": partition},
            },
        },
    }


def extract_watch_time(value: Any, field: str) -> Optional[int]:
    """
    Parse a watch time in milliseconds. Accepts "30000" or a range
    "30000-1200000", in which case the upper bound is used.
    """
    if value is None:
        return None
    if isinstance(value, int):
        return value
    value = str(value)
    if not value.strip():
        return None

    match = RANGE_WATCH_TIME.match(value)
    if match:
        return int(match.group(2))
    match = ABSOLUTE_WATCH_TIME.match(value)
    if match:
        return int(match.group(1))
    raise WatchTimeError(f"invalid {field}: {value!r}")


def compute_rollout_annotations(update: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Rollout annotations for a versioned StatefulSet from an `update` block."""
    if not update:
        return {}

    annotations = {ANNOTATION_CANARY_ROLLOUT_ENABLED: "true"}
    canary = extract_watch_time(update.get("canaryWatchTime"), "canaryWatchTime")
    if canary is not None:
        annotations[ANNOTATION_CANARY_WATCH_TIME] = str(canary)
    watch = extract_watch_time(update.get("updateWatchTime"), "updateWatchTime")
    if watch is not None:
        annotations[ANNOTATION_UPDATE_WATCH_TIME] = str(watch)
    return annotations


# =========================
# Event predicates
# =========================

def should_reconcile_on_create(body: Mapping[str, Any]) -> bool:
    """Admission already stamped the initial state; status events drive progress."""
    return False


def should_reconcile_on_delete(body: Mapping[str, Any]) -> bool:
    return False


def should_reconcile_on_update(old: Optional[Mapping[str, Any]], new: Mapping[str, Any]) -> bool:
    """
    Reconcile while a rollout is active and the StatefulSet status moved.
    `old` is None when the object is seen for the first time by this process.
    """
    annotations = (new.get("metadata") or {}).get("annotations") or {}
    state = RolloutState.parse(annotations.get(ANNOTATION_CANARY_ROLLOUT))
    if state is None or state.terminal:
        return False
    if state == RolloutState.PENDING or old is None:
        return True

    old_status = old.get("status") or {}
    new_status = new.get("status") or {}
    return any(
        old_status.get(field) != new_status.get(field)
        for field in ("replicas", "readyReplicas", "updatedReplicas")
    )


# =========================
# State machine
# =========================

@dataclass
class RolloutStep:
    previous_state: Optional[RolloutState]
    previous_partition: int
    state: Optional[RolloutState]
    partition: int
    requeue_after: Optional[float] = None
    reason: str = ""

    @property
    def changed(self) -> bool:
        return self.state != self.previous_state or self.partition != self.previous_partition


def spec_replicas(sts: V1StatefulSet) -> int:
    replicas = sts.spec.replicas if sts.spec else None
    return 1 if replicas is None else replicas


def get_partition(sts: V1StatefulSet) -> int:
    strategy = sts.spec.update_strategy if sts.spec else None
    rolling = strategy.rolling_update if strategy else None
    return (rolling.partition if rolling else None) or 0


def set_partition(sts: V1StatefulSet, partition: int) -> None:
    if sts.spec.update_strategy is None:
        sts.spec.update_strategy = V1StatefulSetUpdateStrategy()
    strategy = sts.spec.update_strategy
    strategy.type = "RollingUpdate"
    if strategy.rolling_update is None:
        strategy.rolling_update = V1RollingUpdateStatefulSetStrategy()
    strategy.rolling_update.partition = partition


def get_watch_time(annotations: Mapping[str, str], key: str) -> Optional[int]:
    """Watch time in ms; None when absent or unparsable (never times out)."""
    value = annotations.get(key)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        log.warning(f"Invalid annotation {key}: {value!r}; ignoring it.")
        return None


def remaining_budget(annotations: Mapping[str, str], key: str, now: float) -> Optional[float]:
    """Seconds left before the watch time in `key` elapses, None if it never does."""
    watch_ms = get_watch_time(annotations, key)
    if watch_ms is None:
        return None
    start = annotations.get(ANNOTATION_UPDATE_START_TIME)
    try:
        started_at = int(start)
    except (TypeError, ValueError):
        log.warning(f"Invalid annotation {ANNOTATION_UPDATE_START_TIME}: {start!r}; ignoring {key}.")
        return None
    return started_at + watch_ms / 1000.0 - now


def partition_pod_ready(core: CoreV1Api, sts: V1StatefulSet, index: int) -> bool:
    """The pod at `index` is ready and runs the StatefulSet's update revision."""
    pod = get_pod_with_index(core, sts.metadata.namespace, sts.metadata.name, index)
    if pod is None or not is_pod_ready(pod):
        return False
    update_revision = sts.status.update_revision if sts.status else None
    return extract_labels(pod).get(LABEL_CONTROLLER_REVISION_HASH) == update_revision


def plan_step(sts: V1StatefulSet, now: float, pod_ready: Callable[[int], bool]) -> RolloutStep:
    """
    Compute the next state and partition. `pod_ready(i)` tells whether pod i is
    ready and updated; it is only called in Canary and Rollout.
    """
    annotations = extract_annotations(sts)
    state = RolloutState.parse(annotations.get(ANNOTATION_CANARY_ROLLOUT))
    partition = get_partition(sts)
    step = RolloutStep(state, partition, state, partition)
    if state is None or state.terminal:
        return step

    update_budget = remaining_budget(annotations, ANNOTATION_UPDATE_WATCH_TIME, now)
    if update_budget is not None and update_budget <= 0:
        step.state = RolloutState.FAILED
        step.reason = "update watch time exceeded"
        return step

    canary_budget = remaining_budget(annotations, ANNOTATION_CANARY_WATCH_TIME, now)
    _transition(step, sts, canary_budget, pod_ready)
    step.requeue_after = requeue_after(step.state, update_budget, canary_budget)
    return step


def _transition(step: RolloutStep, sts: V1StatefulSet, canary_budget: Optional[float],
                pod_ready: Callable[[int], bool]) -> None:
    replicas = spec_replicas(sts)
    status = sts.status
    current = (status.replicas if status else None) or 0
    ready = (status.ready_replicas if status else None) or 0
    updated = (status.updated_replicas if status else None) or 0
    partition = step.partition
    complete = ready == updated == replicas

    if replicas == 0:
        step.state, step.partition, step.reason = RolloutState.DONE, 0, "no replicas"
        return

    if step.state == RolloutState.PENDING:
        if current < replicas:
            step.state, step.reason = RolloutState.CANARY_UPSCALE, "scaling up"
        else:
            step.state, step.partition = RolloutState.CANARY, _lower(partition, replicas)
            step.reason = "starting canary"
        return

    if step.state == RolloutState.CANARY_UPSCALE:
        if not (current == replicas == ready):
            return
        if partition == 0:
            if complete:
                step.state, step.reason = RolloutState.DONE, "all replicas ready and updated"
            return
        step.state, step.partition = RolloutState.ROLLOUT, _lower(partition, replicas)
        step.reason = "scale-up complete"
        return

    if step.state == RolloutState.CANARY and canary_budget is not None and canary_budget <= 0:
        step.state, step.reason = RolloutState.FAILED, "canary watch time exceeded"
        return

    # Canary and Rollout
    if current < replicas:
        step.state, step.reason = RolloutState.CANARY_UPSCALE, "scaling up"
        return
    # An ordinal beyond the last replica has no pod to wait for.
    if partition < replicas and not pod_ready(partition):
        return
    if partition == 0:
        if complete:
            step.state, step.reason = RolloutState.DONE, "all replicas ready and updated"
        return
    step.state, step.partition = RolloutState.ROLLOUT, _lower(partition, replicas)
    step.reason = f"pod {partition} ready"


def _lower(partition: int, replicas: int) -> int:
    return max(min(partition, replicas) - 1, 0)


def requeue_after(state: Optional[RolloutState], update_budget: Optional[float],
                  canary_budget: Optional[float]) -> Optional[float]:
    """Seconds until the next check, capped while a rollout is active."""
    if state is None or state.terminal:
        return None
    budgets = [update_budget]
    if state == RolloutState.CANARY:
        budgets.append(canary_budget)
    cap = float(settings.requeue_cap_seconds)
    return min([cap] + [max(b, 0.0) for b in budgets if b is not None])


def apply_step(sts: V1StatefulSet, step: RolloutStep) -> None:
    if sts.metadata.annotations is None:
        sts.metadata.annotations = {}
    sts.metadata.annotations[ANNOTATION_CANARY_ROLLOUT] = step.state.value
    if step.partition != step.previous_partition:
        set_partition(sts, step.partition)


# =========================
# Reconcile
# =========================

def reconcile_rollout(apps: AppsV1Api, core: CoreV1Api, namespace: str, name: str,
                      logger: logging.Logger = log, now: Optional[float] = None,
                      on_transition: Optional[Callable[[RolloutStep], None]] = None) -> Optional[ReconcileResult]:
    """
    One pass of the state machine. Returns None when the StatefulSet is gone.
    ConflictError propagates so the caller retries against a fresh read.
    """
    now = time.time() if now is None else now
    steps = []

    def mutate(sts: V1StatefulSet) -> bool:
        step = plan_step(sts, now, lambda index: partition_pod_ready(core, sts, index))
        steps.append(step)
        if not step.changed:
            return False
        apply_step(sts, step)
        return True

    try:
        update_stateful_set(apps, namespace, name, mutate)
    except ApiException as exc:
        if is_not_found(exc):
            logger.debug(f"[{namespace}/{name}] StatefulSet not found; nothing to do.")
            return None
        raise

    step = steps[-1]
    if step.changed:
        message = (
            f"[{namespace}/{name}] Rollout {_label(step.previous_state)} -> {_label(step.state)}, "
            f"partition {step.previous_partition} -> {step.partition} ({step.reason})."
        )
        if step.state == RolloutState.FAILED:
            logger.warning(message)
        else:
            logger.info(message)
        if on_transition is not None:
            on_transition(step)

    if step.partition < step.previous_partition:
        for index in sorted({step.previous_partition, step.partition}, reverse=True):
            cleanup_non_ready_pod(core, namespace, name, index, logger)

    return ReconcileResult(requeue_after=step.requeue_after)


def _label(state: Optional[RolloutState]) -> str:
    return state.value if state else "none"
