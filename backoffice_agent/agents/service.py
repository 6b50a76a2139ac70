# =============================================================================
# Agent Service — Entry Points for the Controller Layer
# =============================================================================
#
# The (out-of-scope) HTTP controllers call these coroutines. Each one owns
# its transaction boundary:
#
#   create_agent       validate model family → insert agent + prompt v1
#                      → ensure vector collection
#   set_system_prompt  append prompt v{n}, deactivate the previous one
#   execute            load AgentProfile → AgentExecutor.execute()
#   ingest             validate files → write uploads → insert PENDING
#                      knowledge base → commit → dispatch Celery task
#   delete_*           vector cleanup + soft delete
#
# DESIGN DECISION: Commit before dispatching the ingestion task. The task id
# is generated up front and stored on the knowledge base, so the worker
# never races the request transaction for the rows it updates.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Sequence
from pathlib import Path

from sqlalchemy.ext.asyncio import async_sessionmaker

from backoffice_agent.agents.executor import AgentExecutor
from backoffice_agent.config import settings
from backoffice_agent.db import repository
from backoffice_agent.db.engine import async_session_factory, get_async_session
from backoffice_agent.db.models import KnowledgeBase
from backoffice_agent.errors import UnsupportedFileType, ValidationFailure
from backoffice_agent.models.agent import AgentProfile, PromptVersion
from backoffice_agent.models.requests import (
    CreateAgentRequest,
    KnowledgeFileUpload,
    SystemPromptRequest,
    TurnInput,
)
from backoffice_agent.models.responses import (
    AgentReply,
    KnowledgeBaseResponse,
    KnowledgeFileResponse,
)
from backoffice_agent.services.extractor import is_supported
from backoffice_agent.services.llm import resolve_model_family
from backoffice_agent.services.vectorstore import VectorStore, get_vector_store
from backoffice_agent.workers.tasks import ingest_knowledge_base

logger = logging.getLogger(__name__)


class AgentService:
    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        executor: AgentExecutor | None = None,
        vector_store: VectorStore | None = None,
        upload_dir: str | None = None,
    ) -> None:
        self._session_factory = session_factory or async_session_factory
        self._vector_store = vector_store or get_vector_store()
        self._executor = executor or AgentExecutor(
            vector_store=self._vector_store,
            conversation_store=repository.ConversationRepository(self._session_factory),
        )
        self._upload_dir = Path(upload_dir or settings.upload_dir)

    # -----------------------------------------------------------------------
    # Agents
    # -----------------------------------------------------------------------

    async def create_agent(self, request: CreateAgentRequest) -> AgentProfile:
        """
        Raises:
            UnsupportedModel: No provider family serves request.model_name.
        """
        family = resolve_model_family(request.model_name)

        async with get_async_session(self._session_factory) as session:
            agent = await repository.create_agent(
                session,
                name=request.name,
                description=request.description,
                model_name=request.model_name,
                provider=family.value,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
                max_input_tokens=request.max_input_tokens,
                stop_sequences=request.stop_sequences,
                integrations=[i.model_dump() for i in request.integrations],
                knowledge_search=request.knowledge_search.model_dump(),
                created_by=request.created_by,
            )
            if request.system_prompt is not None:
                await self._add_prompt(session, agent, request.system_prompt)

            await asyncio.to_thread(self._vector_store.ensure_collection, agent.id)
            return AgentProfile.from_orm_agent(agent)

    async def set_system_prompt(
        self,
        agent_id: str,
        request: SystemPromptRequest,
    ) -> PromptVersion:
        async with get_async_session(self._session_factory) as session:
            agent = await repository.get_agent(session, agent_id)
            prompt = await self._add_prompt(session, agent, request)
            return PromptVersion(
                id=prompt.id,
                content=prompt.content,
                variables=prompt.variables or [],
                version_label=prompt.version_label,
            )

    async def get_profile(self, agent_id: str) -> AgentProfile:
        async with get_async_session(self._session_factory) as session:
            agent = await repository.get_agent(session, agent_id)
            return AgentProfile.from_orm_agent(agent)

    async def execute(self, agent_id: str, turn: TurnInput) -> AgentReply:
        profile = await self.get_profile(agent_id)
        return await self._executor.execute(profile, turn)

    async def start_conversation(
        self,
        agent_id: str,
        user_id: str,
        title: str | None = None,
    ) -> str:
        await self.get_profile(agent_id)
        store = repository.ConversationRepository(self._session_factory)
        return await store.create_conversation(agent_id, user_id, title)

    async def delete_agent(self, agent_id: str) -> None:
        """
        Soft-delete the agent and its children, then drop its collection.

        The deletion is committed before the vectors go, so an ingestion
        still running for this agent either sees it and discards its own
        points or has already written them before the drop.
        """
        async with get_async_session(self._session_factory) as session:
            agent = await repository.get_agent(session, agent_id)
            await repository.soft_delete_agent(session, agent)
        await asyncio.to_thread(self._vector_store.drop_collection, agent_id)
        logger.info("Deleted agent %s", agent_id)

    # -----------------------------------------------------------------------
    # Knowledge Bases
    # -----------------------------------------------------------------------

    async def ingest(
        self,
        agent_id: str,
        files: Sequence[KnowledgeFileUpload],
        name: str | None = None,
        description: str | None = None,
    ) -> KnowledgeBaseResponse:
        """
        Queue a new knowledge base for ingestion.

        Every file is validated before anything is written; one bad file
        rejects the whole upload.

        Raises:
            ValidationFailure: No files, or an empty file.
            UnsupportedFileType: A file's MIME type cannot be extracted.
            AgentNotFound: Unknown or deleted agent.
        """
        if not files:
            raise ValidationFailure("At least one file is required", identifier=agent_id)
        for upload in files:
            if not is_supported(upload.mime_type):
                raise UnsupportedFileType(upload.mime_type, upload.file_name)
            if upload.size == 0:
                raise ValidationFailure("Uploaded file is empty", identifier=upload.file_name)

        task_id = str(uuid.uuid4())
        async with get_async_session(self._session_factory) as session:
            await repository.get_agent(session, agent_id)

            target_dir = self._upload_dir / agent_id
            target_dir.mkdir(parents=True, exist_ok=True)

            file_rows = []
            for upload in files:
                file_id = str(uuid.uuid4())
                path = target_dir / f"{file_id}_{Path(upload.file_name).name}"
                path.write_bytes(upload.content)
                file_rows.append({
                    "id": file_id,
                    "file_name": upload.file_name,
                    "mime_type": upload.mime_type,
                    "file_size": upload.size,
                    "storage_path": str(path),
                })
                logger.info(
                    "Saved upload: %s (%d bytes) → %s",
                    upload.file_name, upload.size, path,
                )

            knowledge_base = await repository.create_knowledge_base(
                session,
                agent_id=agent_id,
                name=name or files[0].file_name,
                description=description,
                files=file_rows,
                celery_task_id=task_id,
            )
            response = knowledge_base_response(knowledge_base)

        ingest_knowledge_base.apply_async(
            kwargs={
                "knowledge_base_id": response.id,
                "agent_id": agent_id,
                "files": [
                    {
                        "file_id": row["id"],
                        "file_name": row["file_name"],
                        "mime_type": row["mime_type"],
                        "path": row["storage_path"],
                    }
                    for row in file_rows
                ],
            },
            task_id=task_id,
        )
        logger.info(
            "Dispatched ingestion task: knowledge_base=%s, files=%d, task_id=%s",
            response.id, len(file_rows), task_id,
        )
        return response

    async def get_knowledge_base(
        self,
        agent_id: str,
        knowledge_base_id: str,
    ) -> KnowledgeBaseResponse:
        async with get_async_session(self._session_factory) as session:
            knowledge_base = await repository.get_knowledge_base(
                session, knowledge_base_id, agent_id=agent_id,
            )
            return knowledge_base_response(knowledge_base)

    async def list_knowledge_bases(self, agent_id: str) -> list[KnowledgeBaseResponse]:
        async with get_async_session(self._session_factory) as session:
            await repository.get_agent(session, agent_id)
            return [
                knowledge_base_response(kb)
                for kb in await repository.list_knowledge_bases(session, agent_id)
            ]

    async def delete_knowledge_base(self, agent_id: str, knowledge_base_id: str) -> None:
        """Soft-delete the knowledge base, then remove its vectors."""
        async with get_async_session(self._session_factory) as session:
            knowledge_base = await repository.get_knowledge_base(
                session, knowledge_base_id, agent_id=agent_id,
            )
            await repository.soft_delete_knowledge_base(session, knowledge_base)
        await asyncio.to_thread(
            self._vector_store.delete_owner, agent_id, knowledge_base_id,
        )
        logger.info("Deleted knowledge base %s of agent %s", knowledge_base_id, agent_id)

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    @staticmethod
    async def _add_prompt(session, agent, request: SystemPromptRequest):
        return await repository.add_system_prompt(
            session,
            agent,
            content=request.content,
            variables=[v.model_dump() for v in request.variables],
            examples=request.examples,
            constraints=request.constraints,
        )


def knowledge_base_response(knowledge_base: KnowledgeBase) -> KnowledgeBaseResponse:
    return KnowledgeBaseResponse(
        id=knowledge_base.id,
        agent_id=knowledge_base.agent_id,
        name=knowledge_base.name,
        status=knowledge_base.status.value,
        total_chunks=knowledge_base.total_chunks,
        total_tokens=knowledge_base.total_tokens,
        task_id=knowledge_base.celery_task_id,
        files=[
            KnowledgeFileResponse(
                id=f.id,
                file_name=f.file_name,
                mime_type=f.mime_type,
                file_size=f.file_size,
                status=f.status.value,
                chunk_count=f.chunk_count,
                error_message=f.error_message,
            )
            for f in knowledge_base.files
        ],
        created_at=knowledge_base.created_at,
    )
