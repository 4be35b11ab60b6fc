from __future__ import annotations

import atexit
import logging as std_logging
from typing import Mapping, MutableMapping

from apscheduler.schedulers.background import BackgroundScheduler
from dotenv import load_dotenv
from flask import Flask

from agent_client import AgentClient, AgentClientConfig
from pools.creation_monitor import BackoffPolicy, CreationMonitor, CreationMonitorRegistry
from pools.events import PoolEventBus
from pools.orchestrator import PoolOrchestrator
from pools.reconciler import DriveReconciler, start_reconciler
from pools.store import PoolStore

from .config import Config
from .logging import init_logging
from .routes.pools import pools_api

logger = std_logging.getLogger(__name__)


def create_app(config_object: object | Mapping[str, object] | None = None) -> Flask:
    load_dotenv()
    app = Flask(__name__)

    app.config.from_object(Config)
    if config_object:
        if isinstance(config_object, Mapping):
            app.config.from_mapping(config_object)
        else:
            app.config.from_object(config_object)

    init_logging(app)
    _initialise_extensions(app)
    _register_blueprints(app)

    if app.config.get('ENABLE_BACKGROUND_JOBS'):
        _start_background_jobs(app)

    return app


def _initialise_extensions(app: Flask) -> None:
    config: MutableMapping[str, object] = app.config

    store = PoolStore(str(config['BACKY_DB_PATH']))
    agent = AgentClient(AgentClientConfig.from_mapping(config))
    events = PoolEventBus()
    monitor = CreationMonitor(
        store,
        agent,
        events,
        backoff=BackoffPolicy.from_mapping(config),
        timeout=float(config.get('POOL_MONITOR_TIMEOUT', 1800.0)),
    )
    registry = CreationMonitorRegistry(monitor)
    orchestrator = PoolOrchestrator(store, agent, events, registry)
    reconciler = DriveReconciler(
        store,
        agent,
        events,
        status_timeout=float(config.get('POOL_STATUS_TIMEOUT', 5.0)),
    )

    app.extensions['agent_client'] = agent
    app.extensions['pool_store'] = store
    app.extensions['pool_events'] = events
    app.extensions['pool_monitors'] = registry
    app.extensions['pool_orchestrator'] = orchestrator
    app.extensions['drive_reconciler'] = reconciler


def _register_blueprints(app: Flask) -> None:
    app.register_blueprint(pools_api)


def _start_background_jobs(app: Flask) -> None:
    orchestrator: PoolOrchestrator = app.extensions['pool_orchestrator']
    reconciler: DriveReconciler = app.extensions['drive_reconciler']
    registry: CreationMonitorRegistry = app.extensions['pool_monitors']

    scheduler = BackgroundScheduler(daemon=True)
    start_reconciler(scheduler, reconciler, int(app.config.get('DRIVE_REFRESH_INTERVAL', 60)))
    scheduler.start()
    app.extensions['scheduler'] = scheduler

    result = orchestrator.resume_creation_monitors()
    if not result.success:
        logger.error(f"Could not resume creation monitors: {result.message}")

    atexit.register(lambda: scheduler.shutdown(wait=False))
    atexit.register(registry.shutdown)
    atexit.register(reconciler.shutdown)
    logger.info("Background jobs started")
