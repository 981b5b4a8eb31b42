"""In-memory stand-in for the AppsV1/CoreV1 calls the engine makes."""
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional, Tuple

from kubernetes.client import ApiClient, Configuration
from kubernetes.client.exceptions import ApiException

_config = Configuration()
# Fixtures carry partial statuses (e.g. no status.replicas).
_config.client_side_validation = False
_client = ApiClient(configuration=_config)


def to_dict(obj: Any) -> Dict[str, Any]:
    return _client.sanitize_for_serialization(obj)


def to_model(obj: Dict[str, Any], kind: str) -> Any:
    # ApiClient.deserialize takes a response object whose signature varies by release.
    return _client._ApiClient__deserialize(obj, kind)


def _matches(labels: Dict[str, str], selector: Optional[str]) -> bool:
    if not selector:
        return True
    for term in selector.split(","):
        key, _, value = term.partition("=")
        if labels.get(key) != value:
            return False
    return True


def _not_found(kind: str, name: str) -> ApiException:
    return ApiException(status=404, reason=f"{kind} {name} not found")


class FakeCluster:
    def __init__(self):
        self.objects: Dict[str, Dict[Tuple[str, str], Dict[str, Any]]] = {
            "StatefulSet": {}, "Pod": {}, "ConfigMap": {}, "Secret": {},
        }
        self.writes: List[Tuple[str, str, str]] = []
        self.before_replace: Optional[Callable[[], None]] = None
        self._counter = 0
        self.apps = FakeAppsV1Api(self)
        self.core = FakeCoreV1Api(self)

    # --- storage ---

    def _next(self) -> str:
        self._counter += 1
        return str(self._counter)

    def put(self, kind: str, obj: Any) -> Dict[str, Any]:
        obj = to_dict(obj)
        metadata = obj.setdefault("metadata", {})
        metadata.setdefault("namespace", "default")
        metadata.setdefault("uid", f"uid-{metadata['name']}-{self._next()}")
        metadata["resourceVersion"] = self._next()
        self.objects[kind][(metadata["namespace"], metadata["name"])] = obj
        return obj

    def get(self, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return self.objects[kind].get((namespace, name))

    def read(self, kind: str, model: str, namespace: str, name: str) -> Any:
        obj = self.get(kind, namespace, name)
        if obj is None:
            raise _not_found(kind, name)
        return to_model(obj, model)

    def list(self, kind: str, model: str, namespace: str, label_selector: Optional[str]) -> SimpleNamespace:
        items = [
            to_model(obj, model)
            for (ns, _), obj in sorted(self.objects[kind].items())
            if ns == namespace and _matches(obj["metadata"].get("labels") or {}, label_selector)
        ]
        return SimpleNamespace(items=items)

    def delete(self, kind: str, namespace: str, name: str) -> None:
        if self.objects[kind].pop((namespace, name), None) is None:
            raise _not_found(kind, name)
        self.writes.append(("delete", kind, name))

    # --- test helpers ---

    def writes_of(self, verb: str, kind: str) -> List[str]:
        return [name for v, k, name in self.writes if v == verb and k == kind]

    def set_status(self, namespace: str, name: str, **status: Any) -> None:
        obj = self.get("StatefulSet", namespace, name)
        obj.setdefault("status", {}).update(status)

    def bump(self, kind: str, namespace: str, name: str) -> None:
        """Simulate a concurrent writer."""
        self.get(kind, namespace, name)["metadata"]["resourceVersion"] = self._next()


class FakeAppsV1Api:
    def __init__(self, cluster: FakeCluster):
        self.cluster = cluster

    def read_namespaced_stateful_set(self, name, namespace, **kwargs):
        return self.cluster.read("StatefulSet", "V1StatefulSet", namespace, name)

    def list_namespaced_stateful_set(self, namespace, label_selector=None, **kwargs):
        return self.cluster.list("StatefulSet", "V1StatefulSet", namespace, label_selector)

    def create_namespaced_stateful_set(self, namespace, body, **kwargs):
        body = to_dict(body)
        name = body["metadata"]["name"]
        if self.cluster.get("StatefulSet", namespace, name) is not None:
            raise ApiException(status=409, reason=f"StatefulSet {name} already exists")
        body["metadata"]["namespace"] = namespace
        stored = self.cluster.put("StatefulSet", body)
        self.cluster.writes.append(("create", "StatefulSet", name))
        return to_model(stored, "V1StatefulSet")

    def replace_namespaced_stateful_set(self, name, namespace, body, **kwargs):
        if self.cluster.before_replace is not None:
            self.cluster.before_replace()
        current = self.cluster.get("StatefulSet", namespace, name)
        if current is None:
            raise _not_found("StatefulSet", name)
        body = to_dict(body)
        if body["metadata"].get("resourceVersion") != current["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="the object has been modified")
        # Status is not writable through the main resource.
        body["status"] = current.get("status")
        stored = self.cluster.put("StatefulSet", body)
        self.cluster.writes.append(("replace", "StatefulSet", name))
        return to_model(stored, "V1StatefulSet")

    def delete_namespaced_stateful_set(self, name, namespace, body=None, **kwargs):
        self.cluster.delete("StatefulSet", namespace, name)


class FakeCoreV1Api:
    def __init__(self, cluster: FakeCluster):
        self.cluster = cluster

    def read_namespaced_pod(self, name, namespace, **kwargs):
        return self.cluster.read("Pod", "V1Pod", namespace, name)

    def list_namespaced_pod(self, namespace, label_selector=None, **kwargs):
        return self.cluster.list("Pod", "V1Pod", namespace, label_selector)

    def delete_namespaced_pod(self, name, namespace, **kwargs):
        self.cluster.delete("Pod", namespace, name)

    def read_namespaced_config_map(self, name, namespace, **kwargs):
        return self.cluster.read("ConfigMap", "V1ConfigMap", namespace, name)

    def read_namespaced_secret(self, name, namespace, **kwargs):
        return self.cluster.read("Secret", "V1Secret", namespace, name)

    def list_namespaced_secret(self, namespace, label_selector=None, **kwargs):
        return self.cluster.list("Secret", "V1Secret", namespace, label_selector)


# =========================
# Manifest builders
# =========================

def statefulset(name: str = "web", namespace: str = "default", replicas: int = 4,
                annotations: Optional[Dict[str, str]] = None, labels: Optional[Dict[str, str]] = None,
                partition: Optional[int] = None, status: Optional[Dict[str, Any]] = None,
                owner_uid: Optional[str] = None) -> Dict[str, Any]:
    sts: Dict[str, Any] = {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "annotations": dict(annotations or {}),
            "labels": dict(labels or {}),
        },
        "spec": {
            "replicas": replicas,
            "serviceName": name,
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {"labels": {"app": name}},
                "spec": {"containers": [{"name": "app", "image": "demo-app:1"}]},
            },
        },
    }
    if partition is not None:
        sts["spec"]["updateStrategy"] = {"type": "RollingUpdate", "rollingUpdate": {"partition": partition}}
    if status is not None:
        sts["status"] = dict(status)
    if owner_uid is not None:
        sts["metadata"]["ownerReferences"] = [{
            "apiVersion": "quarks.cloudfoundry.org/v1alpha1",
            "kind": "ExtendedStatefulSet",
            "name": "owner",
            "uid": owner_uid,
            "controller": True,
        }]
    return sts


def pod(sts_name: str, index: int, namespace: str = "default", revision: str = "rev-1",
        ready: bool = True, owner_uid: Optional[str] = None) -> Dict[str, Any]:
    obj: Dict[str, Any] = {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": f"{sts_name}-{index}",
            "namespace": namespace,
            "labels": {"app": sts_name, "controller-revision-hash": revision},
        },
        "spec": {"containers": [{"name": "app", "image": "demo-app:1"}]},
        "status": {"conditions": [{"type": "Ready", "status": "True" if ready else "False"}]},
    }
    if owner_uid is not None:
        obj["metadata"]["ownerReferences"] = [{
            "apiVersion": "apps/v1", "kind": "StatefulSet", "name": sts_name, "uid": owner_uid, "controller": True,
        }]
    return obj
