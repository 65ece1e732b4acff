import json

from pydantic import Field, model_validator

from shared.config import BaseSettings, redis_url_field


class PoolManagerSettings(BaseSettings):
    service_name: str = "pool-manager"
    environment: str = "production"

    redis_url: str = redis_url_field()

    # Warm pool bounds
    min_warm_workers: int = Field(default=2, ge=0)
    max_warm_workers: int = Field(default=4, ge=0)
    pool_interval_seconds: int = Field(default=60, ge=1)
    # Disable when an external scheduler calls POST /api/pool/reconcile
    pool_schedule_enabled: bool = True

    # Seconds a STOPPED/KICKED record is kept before Redis expires it
    terminal_ttl_seconds: int = Field(default=3600, ge=1)
    # Seconds a KICKED/ERRORED worker may stay unchanged before its container is stopped
    reap_grace_seconds: int = Field(default=300, ge=0)

    # Worker containers
    worker_image: str = "virtual-participant:latest"
    worker_name_prefix: str = "vp"
    worker_docker_labels: str = "{}"  # JSON string, cost attribution
    stack_name: str = "vpool"
    # If set, workers attach to this Docker network; otherwise host networking
    docker_network: str = ""
    # Worker-visible Redis URL (for DIND where workers can't resolve compose DNS)
    worker_redis_url: str = ""
    docker_events_enabled: bool = True
    remove_stopped_workers: bool = True

    # Asset probe: base URL of the video assets bucket, e.g. https://bucket.s3.amazonaws.com
    video_assets_bucket_url: str = ""

    # Change notifier
    subscriber_urls: list[str] = Field(default_factory=list)
    notify_timeout_seconds: float = Field(default=10.0, gt=0)
    notify_retry_delay_seconds: float = Field(default=5.0, ge=0)

    @model_validator(mode="after")
    def check_pool_bounds(self) -> "PoolManagerSettings":
        if self.min_warm_workers > self.max_warm_workers:
            raise ValueError(
                f"min_warm_workers ({self.min_warm_workers}) must not exceed "
                f"max_warm_workers ({self.max_warm_workers})"
            )
        if self.reap_grace_seconds >= self.terminal_ttl_seconds:
            raise ValueError(
                f"reap_grace_seconds ({self.reap_grace_seconds}) must be below "
                f"terminal_ttl_seconds ({self.terminal_ttl_seconds})"
            )
        return self

    def docker_labels(self) -> dict[str, str]:
        labels = json.loads(self.worker_docker_labels or "{}")
        return {str(k): str(v) for k, v in labels.items()}


settings = PoolManagerSettings()
