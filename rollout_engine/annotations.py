"""Annotation and label keys, and the rollout state enum stored in them."""
from enum import Enum
from typing import Dict, Optional

from rollout_engine.settings import settings


# =========================
# Constants / Annotations
# =========================

GROUP = settings.group_name

ANNOTATION_CANARY_ROLLOUT_ENABLED = f"{GROUP}/canary-rollout-enabled"
ANNOTATION_CANARY_ROLLOUT = f"{GROUP}/canary-rollout"
ANNOTATION_CANARY_WATCH_TIME = f"{GROUP}/canary-watch-time-ms"
ANNOTATION_UPDATE_WATCH_TIME = f"{GROUP}/update-watch-time-ms"
ANNOTATION_UPDATE_START_TIME = f"{GROUP}/update-start-time"

ANNOTATION_VERSION = f"{GROUP}/version"
ANNOTATION_STATEFULSET_SHA1 = f"{GROUP}/statefulsetsha1"
ANNOTATION_CONFIG_SHA1 = f"{GROUP}/configsha1"
ANNOTATION_ZONES = f"{GROUP}/zones"

LABEL_AZ_INDEX = f"{GROUP}/az-index"
LABEL_AZ_NAME = f"{GROUP}/az-name"
LABEL_EXTENDED_STATEFULSET_NAME = f"{GROUP}/extendedstatefulset-name"

LABEL_SECRET_KIND = f"{GROUP}/secret-kind"
LABEL_SECRET_VERSION = f"{GROUP}/secret-version"
SECRET_KIND_VERSIONED = "versionedSecret"

# Set by the StatefulSet controller on every pod.
LABEL_CONTROLLER_REVISION_HASH = "controller-revision-hash"


class RolloutState(str, Enum):
    PENDING = "Pending"
    CANARY_UPSCALE = "CanaryUpscale"
    CANARY = "Canary"
    ROLLOUT = "Rollout"
    DONE = "Done"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in (RolloutState.DONE, RolloutState.FAILED)

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["RolloutState"]:
        """Return the state for an annotation value, None if absent or unknown."""
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


def rollout_enabled(annotations: Optional[Dict[str, str]]) -> bool:
    return (annotations or {}).get(ANNOTATION_CANARY_ROLLOUT_ENABLED) == "true"
