"""Errors raised by the rollout engine."""
from typing import Optional

from kubernetes.client.exceptions import ApiException


class RolloutError(Exception):
    """Base class for rollout engine errors."""


class ConflictError(RolloutError):
    """The object changed since it was read; the caller retries with a fresh read."""

    def __init__(self, namespace: str, name: str, cause: Optional[ApiException] = None):
        super().__init__(f"conflict updating {namespace}/{name}: object was modified concurrently")
        self.namespace = namespace
        self.name = name
        self.cause = cause


class VersionAnnotationError(RolloutError):
    """An owned StatefulSet has a missing or non-numeric version annotation."""

    def __init__(self, name: str, value: Optional[str]):
        if value is None:
            msg = f"StatefulSet {name} has no version annotation"
        else:
            msg = f"StatefulSet {name} has a non-numeric version annotation: {value!r}"
        super().__init__(msg)
        self.name = name
        self.value = value


class WatchTimeError(RolloutError, ValueError):
    """A watch time in an ExtendedStatefulSet update block could not be parsed."""


class VersionedSecretNotFound(RolloutError, LookupError):
    """No version of the named versioned secret exists."""

    def __init__(self, namespace: str, name: str):
        super().__init__(f"versioned secret {namespace}/{name} not found")
        self.namespace = namespace
        self.name = name
