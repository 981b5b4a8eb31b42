#!/usr/bin/env python3
"""
Rollout TUI - Terminal UI for monitoring a canary rollout.

Reads the StatefulSet's rollout annotations, partition and pod status from the
Kubernetes API and renders a live dashboard. Pods at or above the partition
are the ones the StatefulSet controller may move to the update revision.
"""

import argparse
import queue
import sys
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

import kubernetes
from kubernetes import watch
from kubernetes.client import AppsV1Api, CoreV1Api, V1Pod, V1StatefulSet
from rich import box
from rich.align import Align
from rich.columns import Columns
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from rollout_engine.annotations import (
    ANNOTATION_CANARY_ROLLOUT,
    ANNOTATION_CANARY_WATCH_TIME,
    ANNOTATION_UPDATE_START_TIME,
    ANNOTATION_UPDATE_WATCH_TIME,
    ANNOTATION_VERSION,
    LABEL_CONTROLLER_REVISION_HASH,
    RolloutState,
)
from rollout_engine.kube import extract_annotations, extract_labels, is_pod_ready, label_selector
from rollout_engine.rollout import get_partition, remaining_budget, spec_replicas

POD_INDEX_LABEL = "apps.kubernetes.io/pod-index"

STATE_STYLES = {
    RolloutState.PENDING: "bold white on blue",
    RolloutState.CANARY_UPSCALE: "bold black on cyan",
    RolloutState.CANARY: "bold black on bright_yellow",
    RolloutState.ROLLOUT: "bold black on yellow",
    RolloutState.DONE: "bold white on green",
    RolloutState.FAILED: "bold white on red",
}


def get_ordinal(pod: V1Pod, sts_name: str) -> Optional[int]:
    """Determine the ordinal of a pod."""
    labels = extract_labels(pod)
    if POD_INDEX_LABEL in labels:
        try:
            return int(labels[POD_INDEX_LABEL])
        except ValueError:
            return None

    if not pod.metadata:
        return None
    prefix = f"{sts_name}-"
    if not pod.metadata.name.startswith(prefix):
        return None
    try:
        return int(pod.metadata.name[len(prefix):])
    except ValueError:
        return None


def current_pods(core: CoreV1Api, sts: V1StatefulSet) -> List[V1Pod]:
    """List pods belonging to the StatefulSet."""
    selector: Dict[str, str] = (sts.spec.selector.match_labels if sts.spec and sts.spec.selector else None) or {}
    return core.list_namespaced_pod(
        namespace=sts.metadata.namespace if sts.metadata else "default",
        label_selector=label_selector(selector),
    ).items


def format_timestamp(ts_str: Optional[str]) -> str:
    """Format unix timestamp to human-readable."""
    if not ts_str:
        return "N/A"
    try:
        return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(int(ts_str)))
    except (ValueError, TypeError):
        return ts_str


def format_seconds(seconds: Optional[float]) -> str:
    if seconds is None:
        return "unlimited"
    if seconds <= 0:
        return "exceeded"
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


def short_revision(revision: Optional[str]) -> str:
    if not revision:
        return "N/A"
    return revision[:12] + "..." if len(revision) > 12 else revision


def get_pod_status(pods: List[V1Pod], sts_name: str, update_revision: Optional[str],
                   replicas: int) -> Dict[int, Dict[str, Any]]:
    """Get status for each pod ordinal."""
    status: Dict[int, Dict[str, Any]] = {}
    for pod in pods:
        ordinal = get_ordinal(pod, sts_name)
        if ordinal is None or ordinal >= replicas:
            continue
        # Skip pods being deleted
        if pod.metadata and pod.metadata.deletion_timestamp:
            continue

        revision = extract_labels(pod).get(LABEL_CONTROLLER_REVISION_HASH, "")
        updated: Optional[bool] = None
        if update_revision and revision:
            updated = revision == update_revision
        status[ordinal] = {
            "name": pod.metadata.name,
            "revision": revision,
            "updated": updated,
            "ready": is_pod_ready(pod),
        }
    return status


def pod_tile(ordinal: int, info: Optional[Dict[str, Any]], partition: int) -> Panel:
    if not info:
        emoji, border_style = "❌", "dim"
    elif info["updated"] is None:
        emoji, border_style = "❓", "dim"
    elif info["updated"] and info["ready"]:
        emoji, border_style = "✅", "green"
    elif info["updated"]:
        emoji, border_style = "🚧", "bright_yellow"
    elif info["ready"]:
        emoji, border_style = "🔒" if ordinal < partition else "🔄", "yellow"
    else:
        emoji, border_style = "⏳", "red"

    token = Text(f" {emoji} ", style="bold", justify="center")
    return Panel(
        Align.center(token, vertical="middle"),
        title=f"{ordinal:02d}",
        width=8,
        height=3,
        box=box.ROUNDED,
        border_style=border_style,
    )


def render_dashboard(sts: V1StatefulSet, pods: List[V1Pod], now: Optional[float] = None) -> Panel:
    """Render the rollout dashboard."""
    now = time.time() if now is None else now
    ann = extract_annotations(sts)
    status = sts.status
    sts_name = sts.metadata.name if sts.metadata else "unknown"
    namespace = sts.metadata.namespace if sts.metadata else "unknown"

    state = RolloutState.parse(ann.get(ANNOTATION_CANARY_ROLLOUT))
    partition = get_partition(sts)
    replicas = spec_replicas(sts)
    update_revision = status.update_revision if status else None
    pod_status = get_pod_status(pods, sts_name, update_revision, replicas)

    header_table = Table.grid(padding=(0, 2))
    header_table.add_column(style="bold cyan")
    header_table.add_column()
    header_table.add_row("StatefulSet:", f"{namespace}/{sts_name}")
    if ANNOTATION_VERSION in ann:
        header_table.add_row("Version:", ann[ANNOTATION_VERSION])

    if state is None:
        header_table.add_row("State:", Text("No rollout recorded", style="dim"))
    else:
        header_table.add_row("State:", Text(f" {state.value} ", style=STATE_STYLES[state]))
    header_table.add_row("Partition:", f"{partition} of {replicas} replicas")

    ready = (status.ready_replicas if status else None) or 0
    updated = (status.updated_replicas if status else None) or 0
    current = (status.replicas if status else None) or 0
    header_table.add_row("Summary:", f"Ready {ready}/{replicas}, Updated {updated}/{replicas}, Running {current}")
    header_table.add_row("Current Revision:", short_revision(status.current_revision if status else None))
    header_table.add_row("Update Revision:", short_revision(update_revision))
    header_table.add_row("Started:", format_timestamp(ann.get(ANNOTATION_UPDATE_START_TIME)))

    if state is not None and not state.terminal:
        header_table.add_row(
            "Update Budget:", format_seconds(remaining_budget(ann, ANNOTATION_UPDATE_WATCH_TIME, now)),
        )
        if state == RolloutState.CANARY:
            header_table.add_row(
                "Canary Budget:", format_seconds(remaining_budget(ann, ANNOTATION_CANARY_WATCH_TIME, now)),
            )

    held = [o for o in range(replicas) if o < partition]
    released = [o for o in range(replicas) if o >= partition]
    sections: List[Panel] = []
    if released:
        tiles = Columns([pod_tile(o, pod_status.get(o), partition) for o in released], padding=(0, 0))
        sections.append(Panel(tiles, title="At or above partition", border_style="yellow"))
    if held:
        tiles = Columns([pod_tile(o, pod_status.get(o), partition) for o in held], padding=(0, 0))
        sections.append(Panel(tiles, title="Held by partition", border_style="dim"))

    legend = Text()
    legend.append("Legend: ", style="bold")
    legend.append("✅ Updated (Ready)  ")
    legend.append("🚧 Updated (Not ready)  ")
    legend.append("🔄 Old (Ready)  ")
    legend.append("🔒 Held  ")
    legend.append("⏳ Not ready  ")
    legend.append("❓ Unknown  ")
    legend.append("❌ Missing pod")

    content_parts: List = [header_table, Text("")]
    for section in sections:
        content_parts.extend([section, Text("")])
    content_parts.append(legend)
    return Panel(Group(*content_parts), title="Canary Rollout", border_style="blue")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Monitor a canary rollout using the Kubernetes watch API")
    parser.add_argument("--namespace", required=True, help="Namespace of the StatefulSet")
    parser.add_argument("--sts", required=True, help="Name of the StatefulSet")
    args = parser.parse_args()

    try:
        kubernetes.config.load_incluster_config()
    except kubernetes.config.ConfigException:
        try:
            kubernetes.config.load_kube_config()
        except Exception as e:
            print(f"Failed to load Kubernetes config: {e}", file=sys.stderr)
            sys.exit(1)

    apps_api = AppsV1Api()
    core_api = CoreV1Api()
    console = Console()

    def get_data() -> Tuple[V1StatefulSet, List[V1Pod]]:
        sts = apps_api.read_namespaced_stateful_set(name=args.sts, namespace=args.namespace)
        return sts, current_pods(core_api, sts)

    def watch_updates(live):
        """Watch the StatefulSet and its pods, redrawing on every event."""
        w = watch.Watch()
        try:
            sts, pods = get_data()
            live.update(render_dashboard(sts, pods))

            selector = sts.spec.selector.match_labels if sts.spec and sts.spec.selector else {}
            streams = {
                "sts": w.stream(
                    apps_api.list_namespaced_stateful_set,
                    namespace=args.namespace,
                    field_selector=f"metadata.name={args.sts}",
                ),
                "pod": w.stream(
                    core_api.list_namespaced_pod,
                    namespace=args.namespace,
                    label_selector=label_selector(selector or {}),
                ),
            }
            event_queue: "queue.Queue" = queue.Queue()

            def stream_worker(stream, stream_name):
                try:
                    for event in stream:
                        event_queue.put((stream_name, event))
                except Exception as e:
                    event_queue.put(("error", e))

            for stream_name, stream in streams.items():
                threading.Thread(target=stream_worker, args=(stream, stream_name), daemon=True).start()

            while True:
                try:
                    stream_name, event = event_queue.get(timeout=1.0)
                    if stream_name == "error":
                        raise event
                except queue.Empty:
                    # Budgets count down without events.
                    pass
                sts, pods = get_data()
                live.update(render_dashboard(sts, pods))
        except Exception as e:
            live.update(Panel(f"[red]Error: {e}[/red]", title="Error"))
            time.sleep(5)  # Wait before retrying
        finally:
            w.stop()

    try:
        with Live(console=console, refresh_per_second=10, screen=True) as live:
            while True:
                watch_updates(live)
    except KeyboardInterrupt:
        console.print("\n[yellow]Exiting...[/yellow]")
        sys.exit(0)


if __name__ == "__main__":
    main()
