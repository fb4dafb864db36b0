"""
Unit tests for OrchestrationSession.

Tests verify:
- The resource lifecycle from discovery to a terminal state
- Confirmation rules (only approved plans can be accepted)
- Requeueing terminal resources
- Snapshots are copies and every operation is persisted
"""

import asyncio

import pytest

from weaver.application.factory import OrchestratorFactory
from weaver.core.domain.errors import ExecutionError, ExecutionErrorKind, InvalidTransitionError
from weaver.core.domain.executor import ProjectLockRegistry
from weaver.core.domain.lifecycle import ResourceState
from weaver.core.domain.models import (
    AnalysisStatus,
    Decision,
    FinalState,
    Resource,
    ResourceKind,
    ToolProvider,
    VerdictDecision,
)
from weaver.core.prompts.analysis_prompts import PLAN_PROMPT
from weaver.infrastructure.persistence.file_session_store import InMemorySessionStore
from weaver.infrastructure.tools.local_transport import LocalProviderTransport

LIB = Resource(id="lib", kind=ResourceKind.PACKAGE, locator="pypi:example-lib")
OTHER = Resource(id="other", kind=ResourceKind.REPOSITORY, locator="github.com/example/other")


@pytest.fixture
def make_session(config_factory, project, research_transport, fake_inference):
    """Factory for sessions wired to the fake project and inference."""

    def factory(inference=None, research=None, store=None, locks=None, **config_overrides):
        return OrchestratorFactory().build_session(
            config_factory(**config_overrides),
            project_id="proj",
            user_intent="add retries",
            store=store,
            locks=locks,
            inference=inference or fake_inference,
            transports={
                "research": research or research_transport,
                "workspace": project.transport(),
                "vcs": project.transport(),
            },
        )

    return factory


def states(snapshot):
    return [transition.to_state for transition in snapshot.transitions]


async def wait_for_state(session, resource_id, state):
    while session.get_state(resource_id).state is not state:
        await asyncio.sleep(0)


class TestAnalysis:
    @pytest.mark.asyncio
    async def test_discover_and_analyze(self, make_session):
        session = await make_session().open()
        await session.discover([LIB])

        record = await session.analyze("lib")

        snapshot = session.get_state("lib")
        assert record.status is AnalysisStatus.COMPLETED
        assert snapshot.state is ResourceState.ANALYZED
        assert states(snapshot) == [
            ResourceState.DISCOVERED,
            ResourceState.ANALYZING,
            ResourceState.ANALYZED,
        ]
        assert snapshot.analysis.research_facts["language"] == "x"
        assert snapshot.analysis.user_intent == "add retries"

    @pytest.mark.asyncio
    async def test_duplicate_discovery_is_ignored(self, make_session):
        session = await make_session().open()

        assert await session.discover([LIB, OTHER]) == [LIB, OTHER]
        assert await session.discover([LIB]) == []
        assert [s.resource.id for s in session.states()] == ["lib", "other"]

    @pytest.mark.asyncio
    async def test_concurrent_analysis_shares_one_record(self, make_session, fake_inference):
        session = await make_session().open()
        await session.discover([LIB])

        first, second = await asyncio.gather(session.analyze("lib"), session.analyze("lib"))

        assert first is second
        assert states(session.get_state("lib")).count(ResourceState.ANALYZING) == 1
        assert fake_inference.prompts.count(PLAN_PROMPT) == 1

    @pytest.mark.asyncio
    async def test_research_failure_fails_resource(self, make_session, scripted_transport):
        research = scripted_transport(default={"status": "error", "kind": "Rejected", "message": "gone"})
        session = await make_session(research=research).open()
        await session.discover([LIB])

        record = await session.analyze("lib")

        assert record.status is AnalysisStatus.RESEARCH_FAILED
        assert session.get_state("lib").state is ResourceState.FAILED

    @pytest.mark.asyncio
    async def test_security_rejection_fails_resource(self, make_session, inference_factory):
        inference = inference_factory(review={"decision": "rejected", "reasons": ["malware"]})
        session = await make_session(inference=inference).open()
        await session.discover([LIB])

        await session.analyze("lib")

        snapshot = session.get_state("lib")
        assert snapshot.state is ResourceState.FAILED
        assert "malware" in snapshot.transitions[-1].reason
        assert snapshot.analysis.security_verdict.decision is VerdictDecision.REJECTED

    @pytest.mark.asyncio
    async def test_analyze_pending_isolates_failures(self, make_session, scripted_transport):
        research = scripted_transport(
            [{"status": "error", "kind": "Rejected", "message": "private"}],
            default={"status": "ok", "result": {"language": "x"}},
        )
        session = await make_session(research=research).open()
        await session.discover([LIB, OTHER])

        records = await session.analyze_pending()

        assert len(records) == 2
        final = sorted(s.state.value for s in session.states())
        assert final == ["Analyzed", "Failed"]

    @pytest.mark.asyncio
    async def test_analyzed_resource_cannot_be_reanalyzed(self, make_session):
        session = await make_session().open()
        await session.discover([LIB])
        await session.analyze("lib")

        with pytest.raises(InvalidTransitionError):
            await session.analyze("lib")

    @pytest.mark.asyncio
    async def test_cancelled_caller_still_commits_analysis(self, make_session):
        gate = asyncio.Event()

        async def facts(params):
            await gate.wait()
            return {"language": "x"}

        research = LocalProviderTransport({"repository_facts": facts}, name="research")
        session = await make_session(research=research).open()
        await session.discover([LIB])

        caller = asyncio.create_task(session.analyze("lib"))
        await wait_for_state(session, "lib", ResourceState.ANALYZING)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        gate.set()
        await session.drain()

        snapshot = session.get_state("lib")
        assert snapshot.state is ResourceState.ANALYZED
        assert snapshot.analysis.status is AnalysisStatus.COMPLETED
        assert snapshot.analysis.research_facts["language"] == "x"

    @pytest.mark.asyncio
    async def test_malformed_plan_reply_fails_resource(self, make_session, inference_factory):
        plan = {"steps": [{"id": "install", "kind": "installDependency", "compensation_parameters": "oops"}]}
        session = await make_session(inference=inference_factory(plan=plan)).open()
        await session.discover([LIB])

        record = await session.analyze("lib")

        assert record.status is AnalysisStatus.PLAN_FAILED
        assert record.errors[-1]["kind"] == "InvalidResponse"
        assert session.get_state("lib").state is ResourceState.FAILED
        assert (await session.requeue("lib")).state is ResourceState.DISCOVERED


class TestConfirmation:
    @pytest.mark.asyncio
    async def test_accept_and_execute(self, make_session, project):
        session = await make_session().open()
        await session.discover([LIB])
        await session.analyze("lib")

        accepted = await session.confirm("lib", Decision.ACCEPT)
        result = await session.execute("lib")

        assert accepted.state is ResourceState.PLAN_ACCEPTED
        assert result.final_state is FinalState.SUCCEEDED
        snapshot = session.get_state("lib")
        assert snapshot.state is ResourceState.COMPLETED
        assert states(snapshot)[-3:] == [
            ResourceState.PLAN_ACCEPTED,
            ResourceState.EXECUTING,
            ResourceState.COMPLETED,
        ]
        assert project.state["dependencies"] == {"example-lib"}

    @pytest.mark.asyncio
    async def test_reject_fails_resource(self, make_session):
        session = await make_session().open()
        await session.discover([LIB])
        await session.analyze("lib")

        snapshot = await session.confirm("lib", "reject")

        assert snapshot.state is ResourceState.FAILED
        assert snapshot.transitions[-1].reason == "rejected by reviewer"

    @pytest.mark.asyncio
    async def test_needs_review_cannot_be_accepted(self, make_session, inference_factory):
        inference = inference_factory(review={"decision": "needs_review", "reasons": ["unclear"]})
        session = await make_session(inference=inference).open()
        await session.discover([LIB])
        await session.analyze("lib")

        with pytest.raises(InvalidTransitionError, match="needs_review"):
            await session.confirm("lib", Decision.ACCEPT)

        assert session.get_state("lib").state is ResourceState.ANALYZED
        assert (await session.confirm("lib", Decision.REJECT)).state is ResourceState.FAILED

    @pytest.mark.asyncio
    async def test_confirm_before_analysis_is_refused(self, make_session):
        session = await make_session().open()
        await session.discover([LIB])

        with pytest.raises(InvalidTransitionError):
            await session.confirm("lib", Decision.ACCEPT)
        with pytest.raises(InvalidTransitionError):
            await session.confirm("lib", Decision.REJECT)

    @pytest.mark.asyncio
    async def test_reject_during_execution_is_refused(self, make_session, project):
        project.delay = 0.02
        session = await make_session().open()
        await session.discover([LIB])
        await session.analyze("lib")
        await session.confirm("lib", Decision.ACCEPT)

        execution = asyncio.create_task(session.execute("lib"))
        await wait_for_state(session, "lib", ResourceState.EXECUTING)
        with pytest.raises(InvalidTransitionError):
            await session.confirm("lib", Decision.REJECT)

        result = await execution

        assert result.final_state is FinalState.SUCCEEDED
        assert session.get_state("lib").state is ResourceState.COMPLETED
        assert project.state["dependencies"] == {"example-lib"}

    @pytest.mark.asyncio
    async def test_execute_requires_accepted_plan(self, make_session):
        session = await make_session().open()
        await session.discover([LIB])
        await session.analyze("lib")

        with pytest.raises(InvalidTransitionError):
            await session.execute("lib")

    @pytest.mark.asyncio
    async def test_unknown_resource(self, make_session):
        session = await make_session().open()

        with pytest.raises(KeyError, match="Unknown resource"):
            session.get_state("ghost")
        with pytest.raises(KeyError):
            await session.confirm("ghost", Decision.ACCEPT)


class TestExecution:
    async def accepted(self, session):
        await session.discover([LIB])
        await session.analyze("lib")
        await session.confirm("lib", Decision.ACCEPT)

    @pytest.mark.asyncio
    async def test_failed_step_rolls_back(self, make_session, project):
        session = await make_session().open()
        await self.accepted(session)
        project.fail["write_file"] = 99

        result = await session.execute("lib")

        assert result.final_state is FinalState.ROLLED_BACK
        assert session.get_state("lib").state is ResourceState.ROLLED_BACK
        assert project.state["dependencies"] == set()

    @pytest.mark.asyncio
    async def test_lock_contention_keeps_plan_accepted(self, make_session):
        locks = ProjectLockRegistry()
        session = await make_session(locks=locks, execution={"lock_wait_seconds": 0.01}).open()
        await self.accepted(session)
        await locks.acquire("proj")

        with pytest.raises(ExecutionError) as exc_info:
            await session.execute("lib")

        assert exc_info.value.kind is ExecutionErrorKind.LOCK_CONTENTION
        assert session.get_state("lib").state is ResourceState.PLAN_ACCEPTED

    @pytest.mark.asyncio
    async def test_cancelled_session_rolls_back(self, make_session, project):
        session = await make_session().open()
        await self.accepted(session)

        session.cancel("user abort")
        result = await session.execute("lib")

        assert result.cancelled is True
        assert session.get_state("lib").state is ResourceState.ROLLED_BACK
        assert project.log == []

    @pytest.mark.asyncio
    async def test_cancelled_caller_rolls_back_execution(self, make_session, project):
        session = await make_session().open()
        await self.accepted(session)
        before = project.snapshot()
        project.delay = 0.05

        caller = asyncio.create_task(session.execute("lib"))
        while not any(op == "write_file" for op, _ in project.log):
            await asyncio.sleep(0.005)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        await session.drain()

        snapshot = session.get_state("lib")
        assert snapshot.state is ResourceState.ROLLED_BACK
        assert snapshot.execution.cancelled is True
        assert snapshot.execution.failed_step_id == "modify"
        assert project.snapshot() == before
        assert not session.cancel_token.cancelled


class TestRequeue:
    @pytest.mark.asyncio
    async def test_terminal_resource_restarts(self, make_session):
        session = await make_session().open()
        await session.discover([LIB])
        await session.analyze("lib")
        await session.confirm("lib", Decision.REJECT)

        snapshot = await session.requeue("lib")

        assert snapshot.state is ResourceState.DISCOVERED
        assert snapshot.attempt == 2
        assert snapshot.analysis is None
        assert len(snapshot.transitions) == 5

        await session.analyze("lib")
        assert session.get_state("lib").state is ResourceState.ANALYZED

    @pytest.mark.asyncio
    async def test_active_resource_cannot_be_requeued(self, make_session):
        session = await make_session().open()
        await session.discover([LIB])

        with pytest.raises(InvalidTransitionError):
            await session.requeue("lib")


class TestSessionState:
    @pytest.mark.asyncio
    async def test_snapshots_are_copies(self, make_session):
        session = await make_session().open()
        await session.discover([LIB])
        await session.analyze("lib")

        snapshot = session.get_state("lib")
        snapshot.analysis.research_facts["language"] = "tampered"

        assert session.get_state("lib").analysis.research_facts["language"] == "x"

    @pytest.mark.asyncio
    async def test_operations_are_persisted(self, make_session):
        store = InMemorySessionStore()
        session = await make_session(store=store).open()
        await session.discover([LIB])
        await session.analyze("lib")

        saved = await store.load_session(session.session_id)

        assert saved["project_id"] == "proj"
        assert saved["resources"][0]["state"] == "Analyzed"
        assert [t["to"] for t in saved["resources"][0]["transitions"]] == [
            "Discovered",
            "Analyzing",
            "Analyzed",
        ]

    @pytest.mark.asyncio
    async def test_close_persists_and_closes(self, make_session):
        store = InMemorySessionStore()
        async with make_session(store=store) as session:
            await session.discover([LIB])

        saved = await store.load_session(session.session_id)
        assert saved["closed"] is True
        with pytest.raises(RuntimeError):
            await session.discover([OTHER])

    @pytest.mark.asyncio
    async def test_session_must_be_open(self, make_session):
        session = make_session()

        with pytest.raises(RuntimeError, match="not open"):
            await session.discover([LIB])

    @pytest.mark.asyncio
    async def test_providers_are_fixed_after_open(self, make_session, scripted_transport):
        session = await make_session().open()

        with pytest.raises(RuntimeError):
            session.register_provider(ToolProvider("late", frozenset({"x"})), scripted_transport())

    @pytest.mark.asyncio
    async def test_error_in_context_cancels_session(self, make_session):
        session = make_session()

        with pytest.raises(ValueError):
            async with session:
                raise ValueError("boom")

        assert session.cancel_token.cancelled
        assert "ValueError" in session.cancel_token.reason
