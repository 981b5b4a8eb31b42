"""Integration test fixtures using pytest-kubernetes for cluster management."""
import os
import subprocess
import time
from pathlib import Path
from typing import Callable

import pytest
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from pytest_kubernetes.providers import AClusterManager

from manifests import (
    ANNOTATION_CANARY_WATCH_TIME,
    ANNOTATION_ENABLED,
    ANNOTATION_STATE,
    DEMO_IMAGE,
    GROUP,
    NAMESPACE,
    OPERATOR,
    demo_statefulset_manifest,
)

# Generic image names for testing
OPERATOR_IMAGE = "rollout-engine:test"


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(item, call):
    """
    Expose test outcome on the test item so fixtures can react in teardown.

    Pattern:
      if request.node.rep_call.failed: ...
    """
    outcome = yield
    rep = outcome.get_result()
    setattr(item, f"rep_{rep.when}", rep)


def _debug_dump_operator(k8s: AClusterManager, namespace: str = NAMESPACE) -> None:
    """Best-effort debug dump of operator state (events + pod logs). Never raises."""

    def safe_kubectl(args: list[str]) -> str:
        try:
            return k8s.kubectl(args, as_dict=False)
        except Exception as e:  # noqa: BLE001 - best-effort debug helper
            return f"[debug-dump] failed: kubectl {' '.join(args)}: {e}"

    print("\n==================== DEBUG DUMP (rollout-engine) ====================")
    print(safe_kubectl(["get", "deploy", OPERATOR, "-n", namespace, "-o", "wide"]))
    print(safe_kubectl(["get", "statefulsets,pods", "-n", namespace, "-o", "wide", "--show-labels"]))
    print(safe_kubectl(["get", "extendedstatefulsets", "-n", namespace, "-o", "yaml"]))
    print("\n--- events (newest last) ---")
    print(safe_kubectl(["get", "events", "-n", namespace, "--sort-by=.lastTimestamp"]))

    pods = safe_kubectl(["get", "pods", "-n", namespace, "-l", f"app={OPERATOR}", "-o", "name"])
    pod_names = [line.strip() for line in pods.splitlines() if line.strip().startswith("pod/")]
    if not pod_names:
        print("[debug-dump] no operator pods found for logs")
        return

    for pod in pod_names[:2]:
        print(f"\n--- logs: {pod} (tail 400) ---")
        print(safe_kubectl(["logs", pod, "-n", namespace, "--tail=400"]))


def _build_image(image_name: str, dockerfile_path: Path, context_path: Path) -> None:
    """Build Docker image using subprocess to avoid credential store issues."""
    result = subprocess.run(
        ["docker", "images", "-q", image_name],
        capture_output=True, text=True
    )
    if result.stdout.strip():
        return  # Image already exists

    subprocess.run(
        ["docker", "build", "-t", image_name, "-f", str(dockerfile_path), str(context_path)],
        check=True
    )


def _create(fn: Callable, *args, **kwargs) -> None:
    """Create an object, tolerating one left over from a previous test."""
    try:
        fn(*args, **kwargs)
    except ApiException as e:
        if e.status != 409:  # Already exists
            raise


def _crd() -> dict:
    return {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {"name": f"extendedstatefulsets.{GROUP}"},
        "spec": {
            "group": GROUP,
            "scope": "Namespaced",
            "names": {
                "kind": "ExtendedStatefulSet",
                "plural": "extendedstatefulsets",
                "singular": "extendedstatefulset",
                "shortNames": ["ests"],
            },
            "versions": [{
                "name": "v1alpha1",
                "served": True,
                "storage": True,
                "subresources": {"status": {}},
                "schema": {"openAPIV3Schema": {
                    "type": "object",
                    "x-kubernetes-preserve-unknown-fields": True,
                }},
            }],
        },
    }


def _rules() -> list:
    return [
        client.V1PolicyRule(
            api_groups=["apps"],
            resources=["statefulsets"],
            verbs=["get", "list", "watch", "create", "update", "patch", "delete"],
        ),
        client.V1PolicyRule(
            api_groups=[""],
            resources=["pods", "events"],
            verbs=["get", "list", "watch", "delete", "create", "patch"],
        ),
        client.V1PolicyRule(
            api_groups=[""],
            resources=["configmaps", "secrets"],
            verbs=["get", "list", "watch"],
        ),
        client.V1PolicyRule(
            api_groups=["apiextensions.k8s.io"],
            resources=["customresourcedefinitions"],
            verbs=["get", "list", "watch"],
        ),
        client.V1PolicyRule(
            api_groups=[GROUP],
            resources=["extendedstatefulsets", "extendedstatefulsets/status"],
            verbs=["get", "list", "watch", "patch", "update"],
        ),
        client.V1PolicyRule(
            api_groups=["admissionregistration.k8s.io"],
            resources=["mutatingwebhookconfigurations"],
            verbs=["get", "list", "watch", "create", "update", "patch"],
        ),
    ]


def _wait_available(apps_v1: client.AppsV1Api, name: str, namespace: str, timeout: int = 120) -> None:
    deadline = time.time() + timeout
    while time.time() < deadline:
        try:
            deployment = apps_v1.read_namespaced_deployment(name, namespace)
            for condition in (deployment.status.conditions or []):
                if condition.type == "Available" and condition.status == "True":
                    return
        except ApiException:
            pass
        time.sleep(2)
    raise RuntimeError("Operator deployment did not become available within timeout")


@pytest.fixture
def cluster(k8s: AClusterManager, request):
    """
    Set up the rollout engine on a Kubernetes cluster managed by pytest-kubernetes.

    pytest-kubernetes creates the cluster with the first available provider
    (k3d, kind, minikube); override it with --k8s-provider=<name>.
    The engine runs with its webhook behind a Service, self-signed for that Service's DNS name.
    """
    project_root = Path(__file__).parent.parent.parent
    always = os.environ.get("RO_TEST_DEBUG") == "1"

    try:
        # Ensure cluster is created and ready (pytest-kubernetes doesn't auto-create)
        if not k8s.ready(timeout=5):
            print(f"[cluster] Creating cluster '{k8s.cluster_name}'...")
            k8s.create()
        else:
            print(f"[cluster] Cluster '{k8s.cluster_name}' already exists and is ready")

        _build_image(OPERATOR_IMAGE, project_root / "Dockerfile", project_root)
        _build_image(DEMO_IMAGE, project_root / "demo" / "Dockerfile", project_root / "demo")
        k8s.load_image(OPERATOR_IMAGE)
        k8s.load_image(DEMO_IMAGE)

        os.environ["KUBECONFIG"] = str(k8s.kubeconfig)
        config.load_kube_config(config_file=str(k8s.kubeconfig))
        core_v1 = client.CoreV1Api()
        apps_v1 = client.AppsV1Api()
        rbac_v1 = client.RbacAuthorizationV1Api()
        ext_v1 = client.ApiextensionsV1Api()
        custom = client.CustomObjectsApi()

        _create(core_v1.create_namespace, client.V1Namespace(metadata=client.V1ObjectMeta(name=NAMESPACE)))
        _create(ext_v1.create_custom_resource_definition, _crd())
        _create(
            core_v1.create_namespaced_service_account,
            namespace=NAMESPACE,
            body=client.V1ServiceAccount(metadata=client.V1ObjectMeta(name=OPERATOR)),
        )
        _create(rbac_v1.create_cluster_role, client.V1ClusterRole(
            metadata=client.V1ObjectMeta(name=OPERATOR),
            rules=_rules(),
        ))
        _create(rbac_v1.create_cluster_role_binding, client.V1ClusterRoleBinding(
            metadata=client.V1ObjectMeta(name=OPERATOR),
            role_ref=client.V1RoleRef(api_group="rbac.authorization.k8s.io", kind="ClusterRole", name=OPERATOR),
            subjects=[client.RbacV1Subject(kind="ServiceAccount", name=OPERATOR, namespace=NAMESPACE)],
        ))

        # The API server reaches the webhook through this Service.
        _create(core_v1.create_namespaced_service, namespace=NAMESPACE, body=client.V1Service(
            metadata=client.V1ObjectMeta(name=OPERATOR),
            spec=client.V1ServiceSpec(
                selector={"app": OPERATOR},
                ports=[client.V1ServicePort(port=2999, target_port=2999, name="webhook")],
            ),
        ))

        env = {
            "RO_WEBHOOK_HOST": f"{OPERATOR}.{NAMESPACE}.svc",
            "RO_WEBHOOK_PORT": "2999",
            "RO_REQUEUE_CAP_SECONDS": "5",
            "RO_VOLUME_REQUEUE_SECONDS": "2",
            "RO_JSON_LOGS": "false",
        }
        _create(
            apps_v1.create_namespaced_deployment,
            namespace=NAMESPACE,
            body=client.V1Deployment(
                metadata=client.V1ObjectMeta(name=OPERATOR),
                spec=client.V1DeploymentSpec(
                    replicas=1,
                    selector=client.V1LabelSelector(match_labels={"app": OPERATOR}),
                    template=client.V1PodTemplateSpec(
                        metadata=client.V1ObjectMeta(labels={"app": OPERATOR}),
                        spec=client.V1PodSpec(
                            service_account_name=OPERATOR,
                            containers=[client.V1Container(
                                name="operator",
                                image=OPERATOR_IMAGE,
                                image_pull_policy="Never",
                                env=[client.V1EnvVar(name=k, value=v) for k, v in env.items()],
                                ports=[client.V1ContainerPort(name="webhook", container_port=2999)],
                            )],
                        ),
                    ),
                ),
            ),
        )
        _wait_available(apps_v1, OPERATOR, NAMESPACE)
        # kopf registers the webhook configuration shortly after startup.
        time.sleep(10)

        # Extend k8s object with kubernetes client APIs for convenience
        k8s.core_v1 = core_v1
        k8s.apps_v1 = apps_v1
        k8s.custom = custom

        yield k8s

    except Exception:
        # On setup failure, also dump whatever we can (may be partial).
        if always:
            _debug_dump_operator(k8s)
        raise

    finally:
        # Dump operator logs/events on test failure (or when explicitly enabled).
        rep_call = getattr(request.node, "rep_call", None)
        failed = bool(rep_call and rep_call.failed)
        if always or failed:
            _debug_dump_operator(k8s)


@pytest.fixture
def demo_statefulset(cluster: AClusterManager):
    """Deploy a canary-enabled demo StatefulSet, cleanup after test."""
    apps_v1 = cluster.apps_v1
    name = "demo-sts"
    _create(
        apps_v1.create_namespaced_stateful_set,
        namespace=NAMESPACE,
        body=demo_statefulset_manifest(name, annotations={
            ANNOTATION_ENABLED: "true",
            ANNOTATION_CANARY_WATCH_TIME: "60000",
        }),
    )

    yield name

    try:
        apps_v1.delete_namespaced_stateful_set(name, NAMESPACE, propagation_policy="Background")
    except ApiException:
        pass


@pytest.fixture
def wait_for_rollout_state(cluster: AClusterManager):
    """Helper to wait for a StatefulSet's canary-rollout annotation."""
    def _wait(name: str, wanted: str, timeout: int = 300, namespace: str = NAMESPACE):
        apps_v1 = cluster.apps_v1
        deadline = time.time() + timeout
        state = None
        while time.time() < deadline:
            try:
                sts = apps_v1.read_namespaced_stateful_set(name, namespace)
                state = (sts.metadata.annotations or {}).get(ANNOTATION_STATE)
                if state == wanted:
                    return sts
                # Log progress every 30 seconds
                elapsed = int(time.time() - (deadline - timeout))
                if elapsed % 30 == 0:
                    status = sts.status
                    print(f"[ROLLOUT] State: {state}, Ready: {status.ready_replicas}/{status.replicas}, "
                          f"Updated: {status.updated_replicas}, Elapsed: {elapsed}s")
            except ApiException:
                pass
            time.sleep(2)
        raise TimeoutError(f"{namespace}/{name} did not reach {wanted} within {timeout}s (last state: {state})")
    return _wait
