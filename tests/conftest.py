"""Test configuration and fixtures."""

from typing import Callable, Generator, List, Optional, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from production_workflow.core.transitions import StageTransitionEngine
from production_workflow.db.base import drop_database, init_database
from production_workflow.db.models import BatchModel, WorkerModel, WorkflowTemplateModel
from production_workflow.db.services import (
    BatchService,
    WorkerService,
    WorkflowTemplateService,
)
from production_workflow.schemas import BatchCreate, WorkerCreate, WorkflowTemplateCreate


STANDARD_STAGES = [
    {
        "stage_code": "sanding",
        "display_name": "Sanding",
        "description": "Sand all surfaces",
        "estimated_hours": 1.5,
        "required_skills": ["sanding"],
        "auto_assign_rule": "least_busy",
    },
    {
        "stage_code": "finishing",
        "display_name": "Finishing",
        "required_skills": ["finishing"],
    },
    {
        "stage_code": "qc",
        "display_name": "Quality Control",
        "required_skills": ["qc"],
        "tasks": [{"type": "inspection", "title": "Final inspection", "estimated_minutes": 30}],
    },
]

STANDARD_TRANSITIONS = [
    {"from_stage_code": None, "to_stage_code": "sanding"},
    {"from_stage_code": "sanding", "to_stage_code": "finishing"},
    {"from_stage_code": "finishing", "to_stage_code": "qc"},
    {"from_stage_code": "qc", "to_stage_code": "completed"},
]


class RecordingNotifier:
    """Notifier that remembers what it was asked to send."""

    def __init__(self, delivered: bool = True):
        self.delivered = delivered
        self.sent: List[Tuple[str, str]] = []

    async def notify(self, channel: str, message: str) -> bool:
        self.sent.append((channel, message))
        return self.delivered


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables created."""
    test_engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_database(test_engine)
    yield test_engine
    drop_database(test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_worker(db) -> Callable[..., WorkerModel]:
    """Factory for workers; emails are generated from the name."""

    def _make(
        name: str,
        skills: Optional[List[str]] = None,
        role: str = "worker",
        is_active: bool = True,
    ) -> WorkerModel:
        return WorkerService(db).create_worker(
            WorkerCreate(
                name=name,
                email=f"{name.lower().replace(' ', '.')}@example.com",
                role=role,
                skills=skills or [],
                is_active=is_active,
            )
        )

    return _make


@pytest.fixture
def manager(make_worker) -> WorkerModel:
    return make_worker("Morgan Manager", role="manager")


@pytest.fixture
def make_template(db) -> Callable[..., WorkflowTemplateModel]:
    def _make(
        name: str = "Standard Build",
        stages: Optional[list] = None,
        transitions: Optional[list] = None,
        **kwargs,
    ) -> WorkflowTemplateModel:
        return WorkflowTemplateService(db).create_template(
            WorkflowTemplateCreate(
                name=name,
                stages=STANDARD_STAGES if stages is None else stages,
                stage_transitions=STANDARD_TRANSITIONS if transitions is None else transitions,
                **kwargs,
            )
        )

    return _make


@pytest.fixture
def template(make_template) -> WorkflowTemplateModel:
    return make_template()


@pytest.fixture
def make_batch(db) -> Callable[..., BatchModel]:
    """Factory for batches, optionally assigned to a workflow."""

    def _make(
        order_item_ids: Optional[List[str]] = None,
        workflow: Optional[WorkflowTemplateModel] = None,
        start_at_stage: Optional[str] = None,
        name: str = "Batch A",
        batch_type: str = "custom",
    ) -> BatchModel:
        batch = BatchService(db).create_batch(
            BatchCreate(
                name=name,
                batch_type=batch_type,
                order_item_ids=["item-1", "item-2", "item-3"]
                if order_item_ids is None
                else order_item_ids,
            )
        )
        if workflow is not None:
            StageTransitionEngine(db).assign_workflow(
                batch.id, workflow.id, start_at_stage=start_at_stage
            )
            db.refresh(batch)
        return batch

    return _make


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
