# apps/rollout/app.py

from typing import Optional

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from apps.rollout.config import Settings, settings as default_settings
from apps.rollout.services.bootstrap import build_controller
from apps.rollout.services.driver import RolloutDriver
from apps.rollout.services.plan_controller import RolloutPlanController
from apps.rollout.utils.otel import configure_logging, setup_otel

# Routers (absolute imports)
from apps.rollout.routers.rollouts_router import router as rollouts_router
from apps.rollout.routers.metrics_router import router as metrics_router


def create_app(
    settings: Optional[Settings] = None,
    controller: Optional[RolloutPlanController] = None,
    start_driver: bool = True,
) -> FastAPI:
    settings = settings or default_settings

    app = FastAPI(
        title="Rollout Controller",
        description="Batch-based canary rollouts of AppRollout plans",
        version="0.1.0",
    )

    # ------------------------------------------------------------------
    # OpenTelemetry
    # ------------------------------------------------------------------
    if settings.OTEL_ENABLED:
        setup_otel(app, settings.OTEL_ENDPOINT, settings.LOG_LEVEL)
    else:
        configure_logging(settings.LOG_LEVEL)

    # ------------------------------------------------------------------
    # Prometheus Metrics
    # ------------------------------------------------------------------
    Instrumentator().instrument(app)
    app.include_router(metrics_router)

    # ------------------------------------------------------------------
    # Controller + driver (explicit wiring)
    # ------------------------------------------------------------------
    controller = controller or build_controller(settings)
    app.state.settings = settings
    app.state.controller = controller
    app.state.driver = RolloutDriver(controller, settings)

    # ------------------------------------------------------------------
    # Business Routers
    # ------------------------------------------------------------------
    app.include_router(rollouts_router, prefix="/v1")

    # ------------------------------------------------------------------
    # Lifecycle Events
    # ------------------------------------------------------------------
    @app.on_event("startup")
    async def startup_event():
        """Start the rollout work queue."""
        if start_driver:
            await app.state.driver.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        await app.state.driver.stop()

    @app.get("/healthz")
    def health_check():
        return {"status": "ok", "service": "rollout-controller"}

    return app


app = create_app()
