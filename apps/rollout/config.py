import os


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "y")


class Settings:
    """
    Centralized rollout controller configuration.

    Backed by environment variables so we can tune behavior per environment
    (dev / stage / prod) without changing code.

    Base fields:
      - ROLLOUT_NAMESPACE: default namespace for AppRollout objects
      - ROLLOUT_LOG_LEVEL: controller log level
      - OTel_Endpoint: OTEL OTLP endpoint for traces
      - ROLLOUT_BACKEND: "kubernetes" (real cluster) or "memory" (dev/tests)

    Engine timing (all seconds):
      - RECONCILE_TIMEOUT_SECONDS: hard bound for one invocation
      - K8S_REQUEST_TIMEOUT_SECONDS: per API call timeout
      - BATCH_VERIFY_INTERVAL_SECONDS: poll interval while a batch rolls
      - WORKLOAD_NOT_FOUND_GRACE_SECONDS: how long a missing target may stay
        missing before the rollout fails (only before ownership is claimed)
      - HEALTH_GATE_TIMEOUT_SECONDS: max time for a batch to become ready
    """

    # ------------------------------------------------------------------
    # Base settings
    # ------------------------------------------------------------------
    K8S_NAMESPACE: str = os.getenv("ROLLOUT_NAMESPACE", "default")
    LOG_LEVEL: str = os.getenv("ROLLOUT_LOG_LEVEL", "INFO")

    OTel_Endpoint: str = os.getenv(
        "OTEL_EXPORTER_OTLP_ENDPOINT",
        "http://otel-collector:4317",
    )
    OTEL_ENABLED: bool = _env_bool("ROLLOUT_OTEL_ENABLED", "true")

    BACKEND: str = os.getenv("ROLLOUT_BACKEND", "kubernetes").lower()

    @property
    def OTEL_ENDPOINT(self) -> str:
        return self.OTel_Endpoint

    # ------------------------------------------------------------------
    # Reconciliation bounds
    # ------------------------------------------------------------------
    RECONCILE_TIMEOUT_SECONDS: float = float(os.getenv("RECONCILE_TIMEOUT_SECONDS", "60"))
    K8S_REQUEST_TIMEOUT_SECONDS: float = float(os.getenv("K8S_REQUEST_TIMEOUT_SECONDS", "30"))

    # Requeue delay while a source/target revision is not templated yet.
    REVISION_NOT_READY_REQUEUE_SECONDS: float = float(
        os.getenv("REVISION_NOT_READY_REQUEUE_SECONDS", "5")
    )

    # ------------------------------------------------------------------
    # State machine timing
    # ------------------------------------------------------------------
    BATCH_VERIFY_INTERVAL_SECONDS: float = float(os.getenv("BATCH_VERIFY_INTERVAL_SECONDS", "5"))
    WORKLOAD_NOT_FOUND_GRACE_SECONDS: float = float(
        os.getenv("WORKLOAD_NOT_FOUND_GRACE_SECONDS", "60")
    )
    WORKLOAD_NOT_FOUND_BACKOFF_SECONDS: float = float(
        os.getenv("WORKLOAD_NOT_FOUND_BACKOFF_SECONDS", "5")
    )
    OWNERSHIP_CONFLICT_BACKOFF_SECONDS: float = float(
        os.getenv("OWNERSHIP_CONFLICT_BACKOFF_SECONDS", "15")
    )
    HEALTH_GATE_TIMEOUT_SECONDS: float = float(os.getenv("HEALTH_GATE_TIMEOUT_SECONDS", "600"))

    # Bounded optimistic-concurrency retries for status writes.
    STATUS_UPDATE_MAX_ATTEMPTS: int = int(os.getenv("STATUS_UPDATE_MAX_ATTEMPTS", "5"))

    # ------------------------------------------------------------------
    # Driver (work queue)
    # ------------------------------------------------------------------
    DRIVER_WORKERS: int = int(os.getenv("DRIVER_WORKERS", "4"))
    DRIVER_BASE_BACKOFF_SECONDS: float = float(os.getenv("DRIVER_BASE_BACKOFF_SECONDS", "1"))
    DRIVER_MAX_BACKOFF_SECONDS: float = float(os.getenv("DRIVER_MAX_BACKOFF_SECONDS", "60"))

    # Periodic re-enqueue of every known plan. 0 disables it.
    RESYNC_INTERVAL_SECONDS: float = float(os.getenv("RESYNC_INTERVAL_SECONDS", "30"))

    def __init__(self) -> None:
        # Clamp obviously broken values instead of crashing at startup.
        if self.STATUS_UPDATE_MAX_ATTEMPTS < 1:
            self.STATUS_UPDATE_MAX_ATTEMPTS = 1
        if self.DRIVER_WORKERS < 1:
            self.DRIVER_WORKERS = 1
        if self.DRIVER_MAX_BACKOFF_SECONDS < self.DRIVER_BASE_BACKOFF_SECONDS:
            self.DRIVER_MAX_BACKOFF_SECONDS = self.DRIVER_BASE_BACKOFF_SECONDS
        if self.K8S_REQUEST_TIMEOUT_SECONDS > self.RECONCILE_TIMEOUT_SECONDS:
            self.K8S_REQUEST_TIMEOUT_SECONDS = self.RECONCILE_TIMEOUT_SECONDS


settings = Settings()
