"""HTTP server for the Slurm cluster dashboard."""

import contextlib
import json
import logging
import os
import pathlib
from dataclasses import dataclass
from datetime import timedelta

import prometheus_client
import prometheus_client.core
import pydantic
import starlette.applications
import starlette.requests
import starlette.responses
import starlette.routing
import structlog

from . import cache, prometheusapi, slurmrestapi
from .aggregators import cluster_status, nodes, power
from .aggregators._common import iso_timestamp
from .collector import NodeCacheCollector

CONFIG_ENV_VAR = "SLURM_DASHBOARD_CONFIG_PATH"
logger = structlog.get_logger(__name__)


class DashboardConfig(pydantic.BaseModel):
    """Configuration for the Slurm cluster dashboard."""

    slurm_api_url: str = pydantic.Field(description="Base URL for SLURM REST API")
    slurm_api_account: str = pydantic.Field(
        "",
        description="Account name sent as X-SLURM-USER-NAME",
    )
    slurm_api_token: str | None = pydantic.Field(
        None,
        description="API auth token, takes precedence over the token file",
    )
    slurm_api_token_file: str | None = pydantic.Field(
        None,
        description="Path to file containing API auth token",
    )
    slurm_api_version: str = pydantic.Field(
        slurmrestapi.DEFAULT_API_VERSION,
        description="SLURM REST API version",
    )
    slurm_api_timeout: float = pydantic.Field(
        slurmrestapi.DEFAULT_TIMEOUT,
        description="Request timeout in seconds",
        gt=0,
    )
    prometheus_url: str | None = pydantic.Field(
        None,
        description="Prometheus base URL; power telemetry is disabled if unset",
    )
    prometheus_timeout: float = pydantic.Field(
        prometheusapi.DEFAULT_TIMEOUT,
        description="Prometheus request timeout in seconds",
        gt=0,
    )
    node_cache_ttl: float = pydantic.Field(
        cache.DEFAULT_TTL,
        description="Seconds the cached node list stays fresh",
        gt=0,
    )
    power_window: float = pydantic.Field(
        power.DEFAULT_WINDOW.total_seconds(),
        description="Seconds of power history to return",
        gt=0,
    )
    power_step: float = pydantic.Field(
        power.DEFAULT_STEP.total_seconds(),
        description="Seconds between power data points",
        gt=0,
    )
    metrics_path: str = pydantic.Field(
        "/metrics",
        description="URL path for the self-metrics endpoint",
    )
    log_level: str = pydantic.Field("INFO", description="Logging level")


@dataclass
class Dashboard:
    """Shared dependencies handed to every request."""

    slurm: slurmrestapi.SlurmRestApiClient
    node_cache: cache.NodeCache
    prometheus: prometheusapi.PrometheusClient | None = None
    power_window: timedelta = power.DEFAULT_WINDOW
    power_step: timedelta = power.DEFAULT_STEP

    async def aclose(self) -> None:
        await self.slurm.aclose()
        if self.prometheus is not None:
            await self.prometheus.aclose()


def configure_logging(log_level_name: str) -> None:
    """Configure structlog for logfmt output."""
    log_level = getattr(logging, log_level_name.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.EventRenamer("msg"),
            structlog.processors.format_exc_info,
            structlog.processors.LogfmtRenderer(
                key_order=("timestamp", "level", "msg"),
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def load_config(config_path: str) -> DashboardConfig:
    """Load configuration from JSON file."""
    path = pathlib.Path(config_path)
    if not path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    with path.open("r") as f:
        data = json.load(f)

    return DashboardConfig(**data)


def _error_response(message: str) -> starlette.responses.JSONResponse:
    return starlette.responses.JSONResponse(
        {"error": message, "timestamp": iso_timestamp()},
        status_code=500,
    )


def _log_request(request: starlette.requests.Request) -> None:
    logger.info(
        "HTTP request",
        client_ip=request.client.host if request.client else "unknown",
        method=request.method,
        path=request.url.path,
    )


def create_registry(dashboard: Dashboard) -> prometheus_client.core.CollectorRegistry:
    """Create a registry (not the global one) with the node cache collector."""
    registry = prometheus_client.core.CollectorRegistry()
    registry.register(NodeCacheCollector(dashboard.node_cache))
    return registry


def create_starlette_app(
    dashboard: Dashboard,
    metrics_path: str = "/metrics",
) -> starlette.applications.Starlette:
    """Create the Starlette application serving the dashboard API.

    Args:
        dashboard: Clients and cache shared by all requests.
        metrics_path: URL path for the self-metrics endpoint.

    Returns:
        Configured Starlette application. Clients are closed on shutdown.
    """
    registry = create_registry(dashboard)

    async def nodes_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        _log_request(request)
        try:
            entry = await nodes.list_nodes(dashboard.slurm, dashboard.node_cache)
            return starlette.responses.JSONResponse(nodes.to_response(entry))
        except Exception:
            logger.exception("Failed to list nodes")
            return _error_response("Failed to fetch node data")

    async def refresh_nodes_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        _log_request(request)
        try:
            entry = await nodes.refresh_nodes(dashboard.slurm, dashboard.node_cache)
            return starlette.responses.JSONResponse(nodes.to_response(entry))
        except Exception:
            logger.exception("Failed to refresh nodes")
            return _error_response("Failed to refresh node data")

    async def power_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        _log_request(request)
        try:
            report = await power.get_power_series(
                dashboard.prometheus,
                dashboard.slurm,
                dashboard.node_cache,
                window=dashboard.power_window,
                step=dashboard.power_step,
            )
        except Exception:
            logger.exception("Failed to build power series")
            return _error_response("Failed to fetch power data")
        return starlette.responses.JSONResponse(report.to_response())

    async def cluster_status_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        _log_request(request)
        try:
            status = await cluster_status.get_cluster_status(dashboard.slurm)
        except Exception:
            logger.exception("Failed to fetch cluster status")
            return _error_response("Failed to fetch cluster status")
        return starlette.responses.JSONResponse(
            status.to_response(),
            headers={"Cache-Control": "public, max-age=30, s-maxage=30"},
        )

    async def reservations_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        _log_request(request)
        try:
            data = await dashboard.slurm.get_reservations()
        except Exception:
            logger.exception("Failed to fetch reservations")
            return _error_response("Failed to fetch reservations")
        return starlette.responses.JSONResponse(
            data,
            headers={"Cache-Control": "no-store"},
        )

    async def user_jobs_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        _log_request(request)
        # Anything after the first segment is ignored.
        user = request.path_params["user"].split("/")[0]
        try:
            data = await dashboard.slurm.get_user_jobs(user)
        except Exception:
            logger.exception("Failed to fetch user jobs", user=user)
            return _error_response("Failed to fetch user jobs")
        return starlette.responses.JSONResponse(data)

    def metrics_endpoint(
        request: starlette.requests.Request,
    ) -> starlette.responses.Response:
        return starlette.responses.PlainTextResponse(
            content=prometheus_client.generate_latest(registry),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    @contextlib.asynccontextmanager
    async def lifespan(app: starlette.applications.Starlette):
        yield
        await dashboard.aclose()
        logger.info("Closed upstream clients")

    routes = [
        starlette.routing.Route("/api/slurm/nodes", nodes_endpoint, methods=["GET"]),
        starlette.routing.Route(
            "/api/slurm/nodes/refresh", refresh_nodes_endpoint, methods=["POST"]
        ),
        starlette.routing.Route("/api/slurm/power", power_endpoint, methods=["GET"]),
        starlette.routing.Route("/api/prometheus/ipmi", power_endpoint, methods=["GET"]),
        starlette.routing.Route(
            "/api/cluster-status", cluster_status_endpoint, methods=["GET"]
        ),
        starlette.routing.Route(
            "/api/slurm/reservations", reservations_endpoint, methods=["GET"]
        ),
        starlette.routing.Route(
            "/api/slurm/jobs/user/{user:path}", user_jobs_endpoint, methods=["GET"]
        ),
        starlette.routing.Route(metrics_path, metrics_endpoint, methods=["GET"]),
    ]

    return starlette.applications.Starlette(routes=routes, lifespan=lifespan)


def create_dashboard(config: DashboardConfig) -> starlette.applications.Starlette:
    """Construct the dashboard ASGI app from validated config."""
    slurm = slurmrestapi.SlurmRestApiClient(
        base_url=config.slurm_api_url,
        account=config.slurm_api_account,
        token=config.slurm_api_token,
        token_file=config.slurm_api_token_file,
        api_version=config.slurm_api_version,
        timeout=config.slurm_api_timeout,
    )
    logger.info("Created SLURM REST client", base_url=config.slurm_api_url)

    prometheus = None
    if config.prometheus_url:
        prometheus = prometheusapi.PrometheusClient(
            base_url=config.prometheus_url,
            timeout=config.prometheus_timeout,
        )
        logger.info("Created Prometheus client", base_url=config.prometheus_url)
    else:
        logger.warning("No Prometheus URL configured, power telemetry disabled")

    dashboard = Dashboard(
        slurm=slurm,
        node_cache=cache.NodeCache(ttl=config.node_cache_ttl),
        prometheus=prometheus,
        power_window=timedelta(seconds=config.power_window),
        power_step=timedelta(seconds=config.power_step),
    )
    return create_starlette_app(dashboard, metrics_path=config.metrics_path)


def create_app(config_path: str | None = None) -> starlette.applications.Starlette:
    """Create the dashboard ASGI app using a config path or environment default."""
    resolved_path = config_path or os.environ.get(CONFIG_ENV_VAR, "/config.json")
    config = load_config(resolved_path)
    configure_logging(config.log_level)
    return create_dashboard(config)
