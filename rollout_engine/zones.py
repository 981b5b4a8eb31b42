"""Per-availability-zone injection into StatefulSet manifests."""
import json
from typing import Any, Dict, List, Mapping, MutableMapping, Optional

from rollout_engine.annotations import ANNOTATION_ZONES, LABEL_AZ_INDEX, LABEL_AZ_NAME
from rollout_engine.settings import settings

ENV_KUBE_AZ = "KUBE_AZ"
ENV_BOSH_AZ = "BOSH_AZ"
ENV_CF_OPERATOR_AZ = "CF_OPERATOR_AZ"
ENV_AZ_INDEX = "AZ_INDEX"
ENV_REPLICAS = "REPLICAS"


def zone_list(spec: Mapping[str, Any]) -> List[str]:
    return list(spec.get("zones") or [])


def zone_node_label(spec: Mapping[str, Any]) -> str:
    return spec.get("zoneNodeLabel") or settings.zone_node_label


def name_prefix(owner_name: str, zone_index: Optional[int]) -> str:
    """`<owner>` without zones, `<owner>-z<i>` for zone i."""
    if zone_index is None:
        return owner_name
    return f"{owner_name}-z{zone_index}"


def _section(obj: MutableMapping[str, Any], key: str) -> Dict[str, Any]:
    if obj.get(key) is None:
        obj[key] = {}
    return obj[key]


def apply_zone(sts: MutableMapping[str, Any], zone_index: int, zone_name: str,
               zones: List[str], node_label: str) -> None:
    """Label the StatefulSet and its pods with the zone and pin pods to it."""
    zones_json = json.dumps(zones)
    metadata = _section(sts, "metadata")
    _section(metadata, "labels").update({LABEL_AZ_INDEX: str(zone_index), LABEL_AZ_NAME: zone_name})
    _section(metadata, "annotations")[ANNOTATION_ZONES] = zones_json

    pod_template = _section(_section(sts, "spec"), "template")
    pod_metadata = _section(pod_template, "metadata")
    _section(pod_metadata, "labels").update({LABEL_AZ_INDEX: str(zone_index), LABEL_AZ_NAME: zone_name})
    _section(pod_metadata, "annotations")[ANNOTATION_ZONES] = zones_json

    update_affinity(_section(pod_template, "spec"), node_label, zone_name)


def update_affinity(pod_spec: MutableMapping[str, Any], node_label: str, zone_name: str) -> None:
    """
    Require nodes labelled with the zone. Node selector terms are ORed, so the
    requirement is added to every existing term rather than as a term of its own.
    """
    requirement = {"key": node_label, "operator": "In", "values": [zone_name]}
    node_affinity = _section(_section(pod_spec, "affinity"), "nodeAffinity")
    required = _section(node_affinity, "requiredDuringSchedulingIgnoredDuringExecution")
    terms = required.get("nodeSelectorTerms") or []
    if not terms:
        terms = [{}]
    for term in terms:
        term["matchExpressions"] = list(term.get("matchExpressions") or []) + [dict(requirement)]
    required["nodeSelectorTerms"] = terms


def upsert_envs(env: Optional[List[Dict[str, Any]]], values: Dict[str, str]) -> List[Dict[str, Any]]:
    """Set each name in values, replacing an existing entry of the same name."""
    result = [dict(e) for e in (env or []) if e.get("name") not in values]
    result.extend({"name": name, "value": value} for name, value in values.items())
    return result


def inject_container_env(pod_spec: MutableMapping[str, Any], zone_index: Optional[int],
                         zone_name: Optional[str], replicas: int) -> None:
    """Expose zone and replica count to every (init) container."""
    values: Dict[str, str] = {}
    if zone_index is not None and zone_name:
        values[ENV_KUBE_AZ] = zone_name
        values[ENV_BOSH_AZ] = zone_name
        values[ENV_CF_OPERATOR_AZ] = zone_name
        values[ENV_AZ_INDEX] = str(zone_index + 1)
    else:
        values[ENV_AZ_INDEX] = "1"
    values[ENV_REPLICAS] = str(replicas)

    for key in ("initContainers", "containers"):
        for container in pod_spec.get(key) or []:
            container["env"] = upsert_envs(container.get("env"), values)
