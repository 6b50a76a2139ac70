# =============================================================================
# Unit Tests — AgentService (SQLite, fake vector store, mocked Celery)
# =============================================================================

from pathlib import Path
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from backoffice_agent.agents.service import AgentService
from backoffice_agent.db.models import Agent, KnowledgeBase
from backoffice_agent.errors import (
    AgentNotFound,
    KnowledgeBaseNotFound,
    UnsupportedFileType,
    UnsupportedModel,
    ValidationFailure,
)
from backoffice_agent.models.requests import (
    CreateAgentRequest,
    KnowledgeFileUpload,
    SystemPromptRequest,
    TurnInput,
)


class _FakeVectorStore:
    def __init__(self):
        self.ensured: list[str] = []
        self.dropped: list[str] = []
        self.deleted: list[tuple[str, str | None]] = []

    def ensure_collection(self, owner_id):
        self.ensured.append(owner_id)

    def drop_collection(self, owner_id):
        self.dropped.append(owner_id)

    def delete_owner(self, owner_id, knowledge_base_id=None):
        self.deleted.append((owner_id, knowledge_base_id))


class _FakeExecutor:
    def __init__(self):
        self.calls = []

    async def execute(self, agent, turn):
        self.calls.append((agent, turn))
        return "reply"


def _service(factory, tmp_path, store=None, executor=None):
    return AgentService(
        session_factory=factory,
        executor=executor or _FakeExecutor(),
        vector_store=store or _FakeVectorStore(),
        upload_dir=str(tmp_path / "uploads"),
    )


def _create_request(**overrides) -> CreateAgentRequest:
    data = {
        "name": "Ledger Bot",
        "model_name": "gpt-4o-mini",
        "system_prompt": SystemPromptRequest(content="You help {{company}}."),
    }
    data.update(overrides)
    return CreateAgentRequest(**data)


def _upload(name="terms.txt", mime_type="text/plain", content=b"Net 30 payment terms."):
    return KnowledgeFileUpload(file_name=name, mime_type=mime_type, content=content)


async def _count(factory, model):
    async with factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


class TestAgents:
    def test_create_agent(self, with_db, tmp_path):
        store = _FakeVectorStore()

        async def scenario(factory):
            return await _service(factory, tmp_path, store=store).create_agent(_create_request())

        profile = with_db(scenario)

        assert profile.provider == "openai"
        assert profile.status == "active"
        assert profile.system_prompt.version_label == "v1"
        assert store.ensured == [profile.id]

    def test_unsupported_model_writes_nothing(self, with_db, tmp_path):
        store = _FakeVectorStore()

        async def scenario(factory):
            with pytest.raises(UnsupportedModel):
                await _service(factory, tmp_path, store=store).create_agent(
                    _create_request(model_name="llama-3-70b"),
                )
            return await _count(factory, Agent)

        assert with_db(scenario) == 0
        assert store.ensured == []

    def test_new_prompt_version_becomes_active(self, with_db, tmp_path):
        async def scenario(factory):
            service = _service(factory, tmp_path)
            profile = await service.create_agent(_create_request())
            version = await service.set_system_prompt(
                profile.id, SystemPromptRequest(content="Be terse."),
            )
            return version, await service.get_profile(profile.id)

        version, profile = with_db(scenario)

        assert version.version_label == "v2"
        assert profile.system_prompt.content == "Be terse."

    def test_execute_hands_profile_to_executor(self, with_db, tmp_path):
        executor = _FakeExecutor()

        async def scenario(factory):
            service = _service(factory, tmp_path, executor=executor)
            profile = await service.create_agent(_create_request())
            return profile, await service.execute(profile.id, TurnInput(message="hi"))

        profile, reply = with_db(scenario)

        assert reply == "reply"
        agent, turn = executor.calls[0]
        assert agent.id == profile.id
        assert turn.message == "hi"

    def test_delete_agent(self, with_db, tmp_path):
        store = _FakeVectorStore()

        async def scenario(factory):
            service = _service(factory, tmp_path, store=store)
            profile = await service.create_agent(_create_request())
            await service.delete_agent(profile.id)
            with pytest.raises(AgentNotFound):
                await service.get_profile(profile.id)
            return profile.id

        agent_id = with_db(scenario)
        assert store.dropped == [agent_id]

    def test_start_conversation_requires_agent(self, with_db, tmp_path):
        async def scenario(factory):
            await _service(factory, tmp_path).start_conversation("missing", "user-1")

        with pytest.raises(AgentNotFound):
            with_db(scenario)


class TestIngest:
    @pytest.mark.parametrize(
        ("files", "error"),
        [
            ([], ValidationFailure),
            ([_upload(name="logo.png", mime_type="image/png")], UnsupportedFileType),
            ([_upload(), _upload(name="empty.txt", content=b"")], ValidationFailure),
        ],
    )
    def test_rejected_before_side_effects(self, with_db, tmp_path, files, error):
        async def scenario(factory):
            service = _service(factory, tmp_path)
            profile = await service.create_agent(_create_request())
            with patch("backoffice_agent.agents.service.ingest_knowledge_base") as task:
                with pytest.raises(error):
                    await service.ingest(profile.id, files)
            return task, await _count(factory, KnowledgeBase)

        task, kb_count = with_db(scenario)

        assert kb_count == 0
        task.apply_async.assert_not_called()
        assert not (tmp_path / "uploads").exists()

    def test_queues_pending_knowledge_base(self, with_db, tmp_path):
        async def scenario(factory):
            service = _service(factory, tmp_path)
            profile = await service.create_agent(_create_request())
            with patch("backoffice_agent.agents.service.ingest_knowledge_base") as task:
                response = await service.ingest(
                    profile.id,
                    [_upload(), _upload(name="policy.md", mime_type="text/markdown")],
                    name="Finance",
                )
            stored = await service.get_knowledge_base(profile.id, response.id)
            return profile.id, task, response, stored

        agent_id, task, response, stored = with_db(scenario)

        assert response.status == "pending"
        assert response.name == "Finance"
        assert [f.file_name for f in response.files] == ["terms.txt", "policy.md"]
        assert all(f.status == "pending" for f in response.files)
        assert stored.task_id == response.task_id

        task.apply_async.assert_called_once()
        call = task.apply_async.call_args
        assert call.kwargs["task_id"] == response.task_id
        kwargs = call.kwargs["kwargs"]
        assert kwargs["knowledge_base_id"] == response.id
        assert kwargs["agent_id"] == agent_id
        assert [f["file_id"] for f in kwargs["files"]] == [f.id for f in response.files]

        first = Path(kwargs["files"][0]["path"])
        assert first.parent == tmp_path / "uploads" / agent_id
        assert first.read_bytes() == b"Net 30 payment terms."

    def test_unknown_agent(self, with_db, tmp_path):
        async def scenario(factory):
            with patch("backoffice_agent.agents.service.ingest_knowledge_base") as task:
                with pytest.raises(AgentNotFound):
                    await _service(factory, tmp_path).ingest("missing", [_upload()])
            return task

        with_db(scenario).apply_async.assert_not_called()

    def test_list_and_delete_knowledge_base(self, with_db, tmp_path):
        store = _FakeVectorStore()

        async def scenario(factory):
            service = _service(factory, tmp_path, store=store)
            profile = await service.create_agent(_create_request())
            with patch("backoffice_agent.agents.service.ingest_knowledge_base"):
                first = await service.ingest(profile.id, [_upload()], name="first")
                second = await service.ingest(profile.id, [_upload()], name="second")

            await service.delete_knowledge_base(profile.id, first.id)
            with pytest.raises(KnowledgeBaseNotFound):
                await service.get_knowledge_base(profile.id, first.id)

            remaining = await service.list_knowledge_bases(profile.id)
            return profile.id, first.id, second.id, remaining

        agent_id, first_id, second_id, remaining = with_db(scenario)

        assert store.deleted == [(agent_id, first_id)]
        assert [kb.id for kb in remaining] == [second_id]
