"""
Unit tests for IntegrationRunner.

Tests verify:
- A run takes approved resources to a terminal state via the confirm callback
- Without a callback, analyzed resources wait for a decision
- Progress events are emitted in run order
"""

import pytest

from weaver.application.factory import OrchestratorFactory
from weaver.application.runner import IntegrationRunner
from weaver.core.domain.executor import ProjectLockRegistry
from weaver.core.domain.lifecycle import ResourceState
from weaver.core.domain.models import Decision, Resource, ResourceKind

RESOURCES = [
    Resource(id="lib", kind=ResourceKind.PACKAGE, locator="pypi:example-lib"),
    Resource(id="repo", kind=ResourceKind.REPOSITORY, locator="github.com/example/repo"),
]


@pytest.fixture
def make_session(config_factory, project, research_transport, fake_inference):
    def factory(inference=None, locks=None, **config_overrides):
        return OrchestratorFactory().build_session(
            config_factory(**config_overrides),
            project_id="proj",
            locks=locks,
            inference=inference or fake_inference,
            transports={"research": research_transport, "workspace": project.transport()},
        )

    return factory


@pytest.mark.asyncio
async def test_accepted_plans_are_executed(make_session, project):
    updates = []
    async with make_session() as session:
        summary = await IntegrationRunner(session).run(
            RESOURCES,
            confirm_callback=lambda record: Decision.ACCEPT,
            progress_callback=updates.append,
        )

    assert summary.by_state == {"Completed": 2}
    assert summary.count(ResourceState.COMPLETED) == 2
    events = [update.event_type for update in updates]
    assert events[:2] == ["started", "discovered"]
    assert events.count("analyzed") == 2
    assert events.count("executed") == 2
    assert events[-1] == "complete"
    assert project.state["dependencies"] == {"example-lib"}


@pytest.mark.asyncio
async def test_async_callback_can_reject(make_session):
    async def reject(record):
        return "reject"

    async with make_session() as session:
        summary = await IntegrationRunner(session).run(RESOURCES[:1], confirm_callback=reject)

    assert summary.by_state == {"Failed": 1}


@pytest.mark.asyncio
async def test_without_callback_resources_await_review(make_session):
    updates = []
    async with make_session() as session:
        summary = await IntegrationRunner(session).run(RESOURCES, progress_callback=updates.append)

    assert summary.by_state == {"Analyzed": 2}
    assert [u.event_type for u in updates].count("awaiting_review") == 2


@pytest.mark.asyncio
async def test_needs_review_is_not_offered_to_callback(make_session, inference_factory):
    offered = []
    inference = inference_factory(review={"decision": "needs_review", "reasons": ["new vendor"]})

    async with make_session(inference=inference) as session:
        summary = await IntegrationRunner(session).run(
            RESOURCES[:1], confirm_callback=lambda record: offered.append(record) or Decision.ACCEPT
        )

    assert offered == []
    assert summary.by_state == {"Analyzed": 1}


@pytest.mark.asyncio
async def test_failed_execution_is_rolled_back(make_session, project):
    project.fail["write_file"] = 99

    async with make_session() as session:
        summary = await IntegrationRunner(session).run(
            RESOURCES[:1], confirm_callback=lambda record: Decision.ACCEPT
        )

    assert summary.by_state == {"RolledBack": 1}
    assert summary.to_dict()["resources"][0]["execution"]["final_state"] == "rolled_back"


@pytest.mark.asyncio
async def test_lock_contention_is_reported_as_blocked(make_session):
    locks = ProjectLockRegistry()
    await locks.acquire("proj")
    updates = []

    async with make_session(locks=locks, execution={"lock_wait_seconds": 0.01}) as session:
        summary = await IntegrationRunner(session).run(
            RESOURCES[:1],
            confirm_callback=lambda record: Decision.ACCEPT,
            progress_callback=updates.append,
        )

    assert summary.by_state == {"PlanAccepted": 1}
    blocked = [u for u in updates if u.event_type == "blocked"]
    assert blocked[0].details["kind"] == "LockContention"
