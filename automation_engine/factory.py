"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .api.endpoints import init_dependencies, router
from .config import AppConfig, get_config, validate_config
from .core.analytics import AnalyticsAggregator
from .core.delivery import AdapterRegistry, RecordingAdapter, StaticTemplateResolver, WebhookDeliveryAdapter
from .core.error_recovery import health_checker
from .core.execution_engine import ExecutionEngine
from .core.graph_store import GraphStore
from .core.logging import get_logger, setup_logging
from .core.middleware import ErrorHandlingMiddleware, PerformanceMonitoringMiddleware
from .core.permissions import AllowAllPermissionChecker, PermissionChecker
from .core.scheduler import SchedulerService
from .core.state_manager import ExecutionStateManager
from .core.trigger_evaluator import TriggerEvaluator
from .core.websocket_manager import WebSocketManager
from .handlers import HandlerRegistry, create_default_registry
from .storage import database
from .storage.migrations import run_migrations

logger = get_logger(__name__)


class ApplicationState:
    """Container for the wired application components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.graph_store: Optional[GraphStore] = None
        self.state_manager: Optional[ExecutionStateManager] = None
        self.handler_registry: Optional[HandlerRegistry] = None
        self.websocket_manager: Optional[WebSocketManager] = None
        self.execution_engine: Optional[ExecutionEngine] = None
        self.trigger_evaluator: Optional[TriggerEvaluator] = None
        self.analytics: Optional[AnalyticsAggregator] = None
        self.scheduler: Optional[SchedulerService] = None
        self.permission_checker: PermissionChecker = AllowAllPermissionChecker()


app_state = ApplicationState()


def initialize_database(config: AppConfig) -> None:
    """Bind the configured database, create tables and run migrations."""
    database.configure_database(config.database_url, echo=config.database_echo)
    database.create_tables()
    logger.info("Database tables created")
    try:
        run_migrations()
    except Exception as e:
        # Indexes only speed up queries; startup continues without them
        logger.warning(f"Database migrations failed: {str(e)}")


def build_handler_registry(config: AppConfig) -> HandlerRegistry:
    if config.webhook_delivery_url:
        default_adapter = WebhookDeliveryAdapter(config.webhook_delivery_url, timeout=config.webhook_timeout)
        logger.info(f"Action delivery via webhook {config.webhook_delivery_url}")
    else:
        default_adapter = RecordingAdapter()
        logger.warning("No webhook delivery URL configured; actions are recorded in memory only")
    return create_default_registry(
        adapters=AdapterRegistry(default=default_adapter),
        template_resolver=StaticTemplateResolver()
    )


def build_components(
    config: AppConfig,
    handler_registry: Optional[HandlerRegistry] = None,
    permission_checker: Optional[PermissionChecker] = None,
    run_inline: bool = False
) -> ApplicationState:
    """
    Wire the engine components for a configuration.

    Args:
        config: Application configuration
        handler_registry: Node handlers; built from the config when omitted
        permission_checker: Tenant permission capability for API callers
        run_inline: Walk executions on the calling thread

    Returns:
        ApplicationState: The wired components
    """
    state = ApplicationState()
    state.config = config
    state.graph_store = GraphStore()
    state.state_manager = ExecutionStateManager()
    state.handler_registry = handler_registry or build_handler_registry(config)
    state.websocket_manager = WebSocketManager(max_connections=config.websocket_max_connections)
    state.execution_engine = ExecutionEngine(
        graph_store=state.graph_store,
        state_manager=state.state_manager,
        handler_registry=state.handler_registry,
        max_concurrent_executions=config.max_concurrent_executions,
        queue_size=config.execution_queue_size,
        node_retry_base_delay=config.node_retry_base_delay,
        loop_max_concurrency=config.loop_max_concurrency,
        execution_max_retries=config.default_execution_max_retries,
        websocket_manager=state.websocket_manager,
        run_inline=run_inline,
    )
    state.trigger_evaluator = TriggerEvaluator(state.execution_engine)
    state.analytics = AnalyticsAggregator(
        default_days=config.analytics_default_days,
        error_default_days=config.error_analytics_default_days,
    )
    state.scheduler = SchedulerService(
        state.execution_engine,
        state.trigger_evaluator,
        poll_interval=config.scheduler_poll_interval,
    )
    if permission_checker is not None:
        state.permission_checker = permission_checker
    logger.info("Core components initialized")
    return state


def setup_health_checks(state: ApplicationState) -> None:
    """Register component health checks."""

    def check_database():
        with database.session_scope() as db:
            db.execute(text("SELECT 1"))
        return {"message": "Database connection successful"}

    def check_execution_engine():
        queue = state.execution_engine.get_execution_queue_status()
        if not state.execution_engine.run_inline and not queue["queue_processor_running"]:
            raise RuntimeError("Execution queue processor is not running")
        return {"message": "Execution engine operational", **queue}

    def check_scheduler():
        if not state.config.scheduler_enabled:
            return {"message": "Scheduler disabled"}
        if not state.scheduler.is_running:
            raise RuntimeError("Scheduler thread is not running")
        last_tick = state.scheduler.last_tick_at
        return {"message": "Scheduler running", "last_tick_at": last_tick.isoformat() if last_tick else None}

    def check_websocket_manager():
        info = state.websocket_manager.get_connection_info()
        return {"message": "WebSocket manager operational", "total_connections": info["total_connections"]}

    health_checker.register_check("database", check_database, timeout=5.0)
    health_checker.register_check("execution_engine", check_execution_engine, timeout=3.0)
    health_checker.register_check("scheduler", check_scheduler, timeout=2.0)
    health_checker.register_check("websocket_manager", check_websocket_manager, timeout=2.0)


def graceful_shutdown(state: ApplicationState) -> None:
    logger.info("Shutting down automation engine")
    try:
        state.scheduler.stop()
    except Exception as e:
        logger.error(f"Error stopping scheduler: {str(e)}")
    try:
        state.websocket_manager.stop_broadcast_processor()
    except Exception as e:
        logger.error(f"Error stopping WebSocket broadcast processor: {str(e)}")
    try:
        state.execution_engine.shutdown()
        logger.info("Execution engine shutdown completed")
    except Exception as e:
        logger.error(f"Error during execution engine shutdown: {str(e)}")


def build_lifespan(config: AppConfig, components: Optional[ApplicationState] = None):
    """Create the lifespan handler that starts and stops the engine."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        global app_state
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        if components is None:
            initialize_database(config)
            state = build_components(config)
        else:
            state = components

        app_state = state
        app.state.components = state
        init_dependencies(
            graph_store=state.graph_store,
            execution_engine=state.execution_engine,
            trigger_evaluator=state.trigger_evaluator,
            analytics=state.analytics,
            websocket_manager=state.websocket_manager,
            permission_checker=state.permission_checker,
        )
        setup_health_checks(state)

        if not state.execution_engine.run_inline:
            state.execution_engine.start()
            state.execution_engine.recover_executions()
        state.websocket_manager.start_broadcast_processor()
        if config.scheduler_enabled:
            state.scheduler.start()

        logger.info("Application startup completed")
        yield
        graceful_shutdown(state)

    return lifespan


def create_app(config: Optional[AppConfig] = None, components: Optional[ApplicationState] = None) -> FastAPI:
    """
    Create and configure a FastAPI application.

    Args:
        config: Configuration; loaded from the environment when omitted
        components: Pre-wired components; when omitted they are built at
            startup against the configured database

    Returns:
        FastAPI: The application
    """
    if config is None:
        config = get_config()
    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Event-driven workflow automation engine",
        version=config.app_version,
        debug=config.debug,
        lifespan=build_lifespan(config, components)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )
    if config.enable_performance_monitoring:
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)
    app.add_middleware(ErrorHandlingMiddleware)

    app.include_router(router)
    add_health_endpoints(app, config)
    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    service = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": service, "version": config.app_version}

    @app.get("/health/detailed")
    async def detailed_health_check():
        """Run every registered component check."""
        results = await health_checker.run_all_checks()
        status_code = 200 if results["overall_status"] == "healthy" else 503
        return JSONResponse(
            status_code=status_code,
            content={"service": service, "version": config.app_version, **results}
        )

    @app.get("/health/ready")
    async def readiness_check():
        """Readiness check for container orchestration; only critical components count."""
        results = {}
        for check_name in ("database", "execution_engine"):
            if check_name in health_checker.checks:
                results[check_name] = await health_checker.run_check(check_name)
        ready = all(result.get("status") == "healthy" for result in results.values())
        return JSONResponse(
            status_code=200 if ready else 503,
            content={"ready": ready, "checks": results, "timestamp": datetime.utcnow().isoformat()}
        )

    @app.get("/health/live")
    async def liveness_check():
        return {"alive": True, "timestamp": datetime.utcnow().isoformat()}


def get_app_state() -> ApplicationState:
    return app_state
