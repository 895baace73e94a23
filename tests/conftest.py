"""Pytest configuration and fixtures."""

import os
import tempfile

import pytest
from fastapi.testclient import TestClient

from automation_engine.config import get_testing_config
from automation_engine.core.analytics import AnalyticsAggregator
from automation_engine.core.delivery import AdapterRegistry, RecordingAdapter
from automation_engine.core.execution_engine import ExecutionEngine
from automation_engine.core.graph_store import GraphStore
from automation_engine.core.permissions import RequestContext
from automation_engine.core.state_manager import ExecutionStateManager
from automation_engine.core.trigger_evaluator import TriggerEvaluator
from automation_engine.factory import build_components, create_app
from automation_engine.handlers import create_default_registry
from automation_engine.handlers.data import InMemoryDataSource
from automation_engine.models.core import ConnectionInput, NodeInput, WorkflowCreate, WorkflowStatus
from automation_engine.storage import database


@pytest.fixture
def temp_db():
    """Bind the storage layer to a temporary SQLite database."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)

    database.configure_database(f"sqlite:///{db_path}")
    database.create_tables()

    yield db_path

    database.reset_database_engine()
    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def context():
    """Caller in the default test organization."""
    return RequestContext(organization_id="org-1", user_id="user-1")


@pytest.fixture
def other_context():
    """Caller in a second organization."""
    return RequestContext(organization_id="org-2", user_id="user-2")


@pytest.fixture
def recording_adapter():
    return RecordingAdapter()


@pytest.fixture
def data_source():
    return InMemoryDataSource()


@pytest.fixture
def adapters(recording_adapter):
    return AdapterRegistry(default=recording_adapter)


@pytest.fixture
def handler_registry(data_source, adapters):
    return create_default_registry(data_source=data_source, adapters=adapters)


@pytest.fixture
def graph_store(temp_db):
    return GraphStore()


@pytest.fixture
def state_manager(temp_db):
    return ExecutionStateManager()


@pytest.fixture
def execution_engine(graph_store, state_manager, handler_registry):
    """Engine whose queue processor is never started; tests walk executions explicitly."""
    engine = ExecutionEngine(
        graph_store=graph_store,
        state_manager=state_manager,
        handler_registry=handler_registry,
        max_concurrent_executions=2,
        node_retry_base_delay=0.0,
    )
    yield engine
    engine.shutdown()


@pytest.fixture
def trigger_evaluator(execution_engine):
    return TriggerEvaluator(execution_engine)


@pytest.fixture
def analytics(temp_db):
    return AnalyticsAggregator()


@pytest.fixture
def make_workflow(graph_store, context):
    """Create a workflow with nodes and connections given as plain dicts."""

    def factory(nodes, connections=(), status=WorkflowStatus.ACTIVE, name="Test workflow", owner=None):
        owner = owner or context
        workflow = graph_store.create_workflow(WorkflowCreate(name=name, status=status), owner)
        for node in nodes:
            graph_store.add_node(workflow.id, NodeInput(**node), owner)
        for connection in connections:
            graph_store.add_connection(workflow.id, ConnectionInput(**connection), owner)
        return workflow

    return factory


@pytest.fixture
def client(temp_db, handler_registry):
    """API client whose executions run on the request thread."""
    config = get_testing_config()
    components = build_components(config, handler_registry=handler_registry, run_inline=True)
    app = create_app(config, components=components)
    with TestClient(app) as test_client:
        yield test_client
