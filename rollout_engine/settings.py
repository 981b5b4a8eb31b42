"""Operator settings, read from RO_* environment variables."""
from typing import Optional

from pydantic import ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =========================
# Settings
# =========================

class RolloutSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RO_")

    group_name: str = "quarks.cloudfoundry.org"
    watch_namespace: Optional[str] = None

    # Deadline for a single API call; a rollout's own budget lives in annotations.
    reconcile_timeout_seconds: int = 30
    max_workers: int = 1
    requeue_cap_seconds: int = 60
    backoff_base_seconds: int = 1
    backoff_max_seconds: int = 300
    volume_requeue_seconds: int = 5

    zone_node_label: str = "failure-domain.beta.kubernetes.io/zone"
    volume_management_image: str = "busybox:1.36"

    webhook_enabled: bool = True
    webhook_host: Optional[str] = None
    webhook_port: int = 2999
    webhook_service_name: Optional[str] = None
    webhook_service_namespace: Optional[str] = None
    webhook_cert_dir: Optional[str] = None
    namespace_selector_label: str = "cf-operator-ns"
    operator_namespace: str = "default"

    json_logs: bool = False

    @field_validator("group_name", "zone_node_label", "namespace_selector_label")
    @classmethod
    def must_not_be_empty(cls, v: str, info: ValidationInfo) -> str:
        if not v or not v.strip():
            raise ValueError(f"{info.field_name} must not be empty")
        return v.strip()

    @field_validator(
        "reconcile_timeout_seconds",
        "max_workers",
        "requeue_cap_seconds",
        "backoff_base_seconds",
        "backoff_max_seconds",
        "volume_requeue_seconds",
        "webhook_port",
    )
    @classmethod
    def must_be_positive(cls, v: int, info: ValidationInfo) -> int:
        if v < 1:
            raise ValueError(f"{info.field_name} must be >= 1")
        return v

    @field_validator("watch_namespace", "webhook_host", "webhook_service_name",
                     "webhook_service_namespace", "webhook_cert_dir")
    @classmethod
    def blank_is_unset(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()


settings = RolloutSettings()
