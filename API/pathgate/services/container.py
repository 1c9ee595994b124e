"""Builds the service graph from a Settings instance.

Every collaborator is constructed here and passed in explicitly; the app keeps
the resulting container on ``app.state``.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncEngine

from pathgate.content.catalog import ContentCatalog
from pathgate.core.advisor import ResilientAdvisor, build_advisor
from pathgate.core.event_bus import EventBus
from pathgate.core.settings import Settings
from pathgate.data.sample_catalog import SAMPLE_CATALOG
from pathgate.persistence.database import create_session_factory, initialize_database
from pathgate.persistence.sql_store import SqlProgressStore
from pathgate.persistence.store import InMemoryProgressStore, ProgressStore
from pathgate.services.assessment import AssessmentEngine
from pathgate.services.learners import LearnerService
from pathgate.services.locks import LearnerLocks
from pathgate.services.progression import ProgressionGate
from pathgate.services.roadmap import RoadmapEngine
from pathgate.services.workflow import LearningWorkflow


@dataclass
class ServiceContainer:
    catalog: ContentCatalog
    store: ProgressStore
    events: EventBus
    advisor: ResilientAdvisor
    learners: LearnerService
    gate: ProgressionGate
    assessments: AssessmentEngine
    roadmaps: RoadmapEngine
    workflow: LearningWorkflow
    db_engine: AsyncEngine | None = None

    async def startup(self) -> None:
        if self.db_engine is not None:
            await initialize_database(self.db_engine)

    async def shutdown(self) -> None:
        if self.db_engine is not None:
            await self.db_engine.dispose()


def load_catalog(config: Settings) -> ContentCatalog:
    if config.catalog_path:
        return ContentCatalog.from_file(config.catalog_path)
    return ContentCatalog(SAMPLE_CATALOG)


def build_container(
    config: Settings,
    *,
    catalog: ContentCatalog | None = None,
    store: ProgressStore | None = None,
    advisor: ResilientAdvisor | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ServiceContainer:
    catalog = catalog or load_catalog(config)
    db_engine = None
    if store is None:
        if config.storage_backend == "sql":
            db_engine, session_factory = create_session_factory(config.database_url)
            store = SqlProgressStore(session_factory)
        else:
            store = InMemoryProgressStore()
    advisor = advisor or build_advisor(config, sleep=sleep)
    events = EventBus(history_size=config.event_history_size, queue_size=config.event_queue_size)
    locks = LearnerLocks()

    gate = ProgressionGate(catalog, store, events, locks)
    assessments = AssessmentEngine(
        catalog, store, gate, events, locks, knowledge_gap_threshold=config.knowledge_gap_threshold
    )
    roadmaps = RoadmapEngine(catalog, store, gate, assessments, advisor, events)
    return ServiceContainer(
        catalog=catalog,
        store=store,
        events=events,
        advisor=advisor,
        learners=LearnerService(catalog, store),
        gate=gate,
        assessments=assessments,
        roadmaps=roadmaps,
        workflow=LearningWorkflow(gate, assessments, roadmaps),
        db_engine=db_engine,
    )
