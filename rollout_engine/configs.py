"""
Config-change detection and versioned secret references.

Pod templates that reference ConfigMaps or Secrets get a SHA1 of that data in a
template annotation, so changing the data changes the template and mints a new
version. Versioned secrets (`<name>-v<N>`) are resolved to their latest version.
"""
import hashlib
import json
import logging
import re
from typing import Any, Dict, Iterator, Mapping, MutableMapping, Set, Tuple

from kubernetes.client import CoreV1Api
from kubernetes.client.exceptions import ApiException

from rollout_engine.annotations import LABEL_SECRET_KIND, LABEL_SECRET_VERSION, SECRET_KIND_VERSIONED
from rollout_engine.errors import VersionedSecretNotFound
from rollout_engine.kube import extract_labels, is_not_found, label_selector, request_timeout

log = logging.getLogger(__name__)

VERSIONED_NAME = re.compile(r"^(?P<name>.+)-v(?P<version>\d+)$")


def _containers(pod_spec: Mapping[str, Any]) -> Iterator[MutableMapping[str, Any]]:
    for key in ("initContainers", "containers"):
        for container in pod_spec.get(key) or []:
            yield container


def _secret_refs(pod_spec: Mapping[str, Any]) -> Iterator[Tuple[MutableMapping[str, Any], str]]:
    """(dict, key) pairs whose value is a referenced Secret name."""
    for volume in pod_spec.get("volumes") or []:
        if volume.get("secret") and volume["secret"].get("secretName"):
            yield volume["secret"], "secretName"
    for container in _containers(pod_spec):
        for env in container.get("env") or []:
            ref = (env.get("valueFrom") or {}).get("secretKeyRef")
            if ref and ref.get("name"):
                yield ref, "name"
        for env_from in container.get("envFrom") or []:
            ref = env_from.get("secretRef")
            if ref and ref.get("name"):
                yield ref, "name"


def _config_map_refs(pod_spec: Mapping[str, Any]) -> Iterator[str]:
    for volume in pod_spec.get("volumes") or []:
        if volume.get("configMap") and volume["configMap"].get("name"):
            yield volume["configMap"]["name"]
    for container in _containers(pod_spec):
        for env in container.get("env") or []:
            ref = (env.get("valueFrom") or {}).get("configMapKeyRef")
            if ref and ref.get("name"):
                yield ref["name"]
        for env_from in container.get("envFrom") or []:
            ref = env_from.get("configMapRef")
            if ref and ref.get("name"):
                yield ref["name"]


def get_config_names_from_spec(pod_spec: Mapping[str, Any]) -> Tuple[Set[str], Set[str]]:
    """Names of the ConfigMaps and Secrets a pod spec references."""
    config_maps = set(_config_map_refs(pod_spec))
    secrets = {ref[key] for ref, key in _secret_refs(pod_spec)}
    return config_maps, secrets


def compute_config_sha1(core: CoreV1Api, namespace: str, pod_spec: Mapping[str, Any]) -> str:
    """SHA1 over the data of every referenced ConfigMap and Secret that exists."""
    config_maps, secrets = get_config_names_from_spec(pod_spec)
    data: Dict[str, Dict[str, Any]] = {"configmaps": {}, "secrets": {}}

    for name in sorted(config_maps):
        try:
            cm = core.read_namespaced_config_map(name=name, namespace=namespace, _request_timeout=request_timeout())
        except ApiException as exc:
            if is_not_found(exc):
                continue
            raise
        data["configmaps"][name] = {"data": cm.data or {}, "binaryData": cm.binary_data or {}}

    for name in sorted(secrets):
        try:
            secret = core.read_namespaced_secret(name=name, namespace=namespace, _request_timeout=request_timeout())
        except ApiException as exc:
            if is_not_found(exc):
                continue
            raise
        data["secrets"][name] = secret.data or {}

    return hashlib.sha1(json.dumps(data, sort_keys=True).encode("utf-8")).hexdigest()


# =========================
# Versioned secrets
# =========================

class VersionedSecretStore:
    """Read side of the versioned secret store: latest version lookup and reference rewriting."""

    def __init__(self, core: CoreV1Api):
        self.core = core

    def _versions(self, namespace: str) -> Dict[str, Dict[int, Any]]:
        secrets = self.core.list_namespaced_secret(
            namespace=namespace,
            label_selector=label_selector({LABEL_SECRET_KIND: SECRET_KIND_VERSIONED}),
            _request_timeout=request_timeout(),
        ).items
        versions: Dict[str, Dict[int, Any]] = {}
        for secret in secrets:
            match = VERSIONED_NAME.match(secret.metadata.name)
            if not match:
                continue
            try:
                version = int(extract_labels(secret).get(LABEL_SECRET_VERSION, match.group("version")))
            except ValueError:
                log.warning(f"[{namespace}/{secret.metadata.name}] Ignoring versioned secret with bad version label.")
                continue
            versions.setdefault(match.group("name"), {})[version] = secret
        return versions

    def latest(self, namespace: str, name: str) -> Tuple[int, Dict[str, str]]:
        """Latest (version, data) of the versioned secret `name`."""
        versions = self._versions(namespace).get(name)
        if not versions:
            raise VersionedSecretNotFound(namespace, name)
        version = max(versions)
        return version, versions[version].data or {}

    def update_secret_references(self, namespace: str, pod_spec: Mapping[str, Any]) -> bool:
        """Point references to versioned secrets at their latest version. True if anything changed."""
        refs = list(_secret_refs(pod_spec))
        if not refs:
            return False

        latest = {name: max(versions) for name, versions in self._versions(namespace).items()}
        changed = False
        for ref, key in refs:
            current = ref[key]
            match = VERSIONED_NAME.match(current)
            logical = match.group("name") if match and match.group("name") in latest else current
            if logical not in latest:
                continue
            wanted = f"{logical}-v{latest[logical]}"
            if current != wanted:
                ref[key] = wanted
                changed = True
        return changed
