"""
Streaming Session Controller.

Drives one chat turn from request to persisted reply:

    IDLE -> THINKING -> STREAMING -> PERSISTING -> COMPLETE

THINKING and STREAMING may end in CANCELLED; any non-terminal state may end
in ERROR.

A conversation has at most one active turn. The slot is taken in
open_session() and released the moment the turn reaches a terminal state.
"""

import asyncio
import logging
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from coach.core.attachments import normalize
from coach.core.context import ContextAssembler
from coach.core.errors import (
    CoachError,
    PersistenceError,
    ProviderError,
    SessionBusyError,
    TurnCancelled,
    ValidationError,
)
from coach.core.interfaces import PersistenceCoordinator
from coach.core.retrieval import MemoryRetrievalEngine
from coach.core.tasks import BackgroundTaskSupervisor
from coach.llm.client_factory import ProviderRegistry
from coach.models.memory import RankedMemory
from coach.models.message import Message, Role, conversation_title
from coach.models.session import (
    ChunkEvent,
    DoneEvent,
    ErrorEvent,
    ErrorKind,
    SessionState,
    StreamEvent,
    StreamingSession,
    TurnRequest,
)
from coach.services.memory_extraction import MemoryExtractor
from server.config import config
from server.logging_config import get_logger

BUSY_POLICIES = ("reject", "queue")

_END = object()


async def _anext(stream: AsyncIterator[str]):
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _END


class ConversationLocks:
    """One mutex per conversation id. Entries are dropped when unused."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def is_busy(self, conversation_id: str) -> bool:
        lock = self._locks.get(conversation_id)
        return lock is not None and lock.locked()

    async def acquire(self, conversation_id: str, wait: bool = False, timeout: Optional[float] = None) -> None:
        """
        Take the conversation's slot.

        Raises:
            SessionBusyError: if the slot is held and `wait` is False, or it
                is still held after `timeout` seconds
        """
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        if not wait:
            if lock.locked():
                raise SessionBusyError(conversation_id)
            # A free lock is taken without suspending, so a same-tick rival sees it held
            await lock.acquire()
            self._users[conversation_id] = self._users.get(conversation_id, 0) + 1
            return

        self._users[conversation_id] = self._users.get(conversation_id, 0) + 1
        try:
            await asyncio.wait_for(lock.acquire(), timeout)
        except asyncio.TimeoutError:
            self._drop(conversation_id)
            raise SessionBusyError(conversation_id)
        except asyncio.CancelledError:
            self._drop(conversation_id)
            raise

    def release(self, conversation_id: str) -> None:
        lock = self._locks.get(conversation_id)
        if lock is None or not lock.locked():
            return
        lock.release()
        self._drop(conversation_id)

    def _drop(self, conversation_id: str) -> None:
        remaining = self._users.get(conversation_id, 1) - 1
        if remaining <= 0:
            self._users.pop(conversation_id, None)
            self._locks.pop(conversation_id, None)
        else:
            self._users[conversation_id] = remaining


class SessionController:
    """Owns the streaming state machine for every in-flight turn."""

    def __init__(
        self,
        store: PersistenceCoordinator,
        registry: ProviderRegistry,
        assembler: ContextAssembler,
        engine: MemoryRetrievalEngine,
        supervisor: BackgroundTaskSupervisor,
        extractor: Optional[MemoryExtractor] = None,
        busy_policy: Optional[str] = None,
        queue_timeout: Optional[float] = None,
        persist_retry_min: Optional[float] = None,
        persist_retry_max: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.registry = registry
        self.assembler = assembler
        self.engine = engine
        self.supervisor = supervisor
        self.extractor = extractor
        self.busy_policy = busy_policy or config.CHAT.BUSY_POLICY
        if self.busy_policy not in BUSY_POLICIES:
            raise ValueError(f"Unknown busy policy: {self.busy_policy}. Supported: {', '.join(BUSY_POLICIES)}")
        self.queue_timeout = config.CHAT.QUEUE_TIMEOUT_SECONDS if queue_timeout is None else queue_timeout
        self.persist_retry_min = config.CHAT.PERSIST_RETRY_MIN_SECONDS if persist_retry_min is None else persist_retry_min
        self.persist_retry_max = config.CHAT.PERSIST_RETRY_MAX_SECONDS if persist_retry_max is None else persist_retry_max
        self.logger = logger or get_logger(__name__)

        self.locks = ConversationLocks()
        self._active: Dict[str, StreamingSession] = {}

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    def validate(self, request: TurnRequest) -> None:
        """Reject malformed turns before anything is persisted or sent."""
        if not (request.user_id or "").strip():
            raise ValidationError("user_id is required")
        if not (request.content or "").strip() and not request.attachments:
            raise ValidationError("Message must have text or at least one attachment")
        if request.attachments and not (request.content or "").strip():
            normalized = normalize(request.content, request.attachments, logger=self.logger)
            if normalized.is_empty:
                raise ValidationError(
                    f"No usable attachments: {'; '.join(normalized.dropped)}"
                )

    async def open_session(self, request: TurnRequest) -> StreamingSession:
        """
        Validate the turn, resolve its conversation and take the conversation slot.

        Raises:
            ValidationError: malformed request, unknown conversation or
                provider
            SessionBusyError: the conversation already has an active turn
        """
        self.validate(request)
        adapter, model = self.registry.select(
            content=request.content,
            attachments=request.attachments,
            provider=request.provider,
            model=request.model,
            automatic=request.automatic_model_selection,
        )

        conversation_id = request.conversation_id
        if conversation_id:
            if not await self.store.conversation_exists(conversation_id):
                raise ValidationError(f"Conversation {conversation_id} not found")
        else:
            conversation_id = await self.store.create_conversation(
                request.user_id, conversation_title(request.content, request.attachments)
            )
            self.logger.info(f"Created conversation {conversation_id} for user {request.user_id}")

        session = StreamingSession(
            user_id=request.user_id,
            provider=adapter.get_provider_name(),
            model=model,
        )
        session.bind_conversation(conversation_id)

        queue = self.busy_policy == "queue"
        await self.locks.acquire(
            conversation_id,
            wait=queue,
            timeout=self.queue_timeout if queue else None,
        )
        self._active[conversation_id] = session
        self.logger.info(
            f"Session {session.id} opened on {conversation_id} ({session.provider}/{session.model})"
        )
        return session

    def active_session(self, conversation_id: str) -> Optional[StreamingSession]:
        return self._active.get(conversation_id)

    def cancel(self, conversation_id: str) -> bool:
        """Ask the active turn of a conversation to stop. Returns False if none is running."""
        session = self._active.get(conversation_id)
        if session is None or session.is_terminal:
            return False
        session.request_cancel()
        self.logger.info(f"Cancel requested for session {session.id} on {conversation_id}")
        self.release_unstarted(session)
        return True

    def release_unstarted(self, session: StreamingSession) -> bool:
        """
        Free the slot of a session whose turn never began running.

        Called when the response carrying the session ends or the turn is
        cancelled before run() was entered. A session that already started
        is left to run(). Returns True if the slot was freed.
        """
        if session.state != SessionState.IDLE:
            return False
        session.request_cancel()
        session.transition(SessionState.ERROR)
        self._release(session)
        self.logger.info(f"Session {session.id} on {session.conversation_id} discarded before it started")
        return True

    def _release(self, session: StreamingSession) -> None:
        conversation_id = session.conversation_id
        if self._active.get(conversation_id) is session:
            del self._active[conversation_id]
            self.locks.release(conversation_id)

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    async def _retrieve(self, session: StreamingSession, query: str) -> List[RankedMemory]:
        try:
            return await self.engine.retrieve(
                session.user_id, query, conversation_id=session.conversation_id
            )
        except CoachError as e:
            self.logger.warning(f"Memory retrieval failed, continuing without memories: {e}")
            return []

    async def _next_chunk(self, stream: AsyncIterator[str], session: StreamingSession):
        """Wait for the next token or a cancel request, whichever comes first."""
        if session.cancel_requested:
            raise TurnCancelled()
        next_chunk = asyncio.ensure_future(_anext(stream))
        cancelled = asyncio.ensure_future(session.cancel_event.wait())
        try:
            done, _ = await asyncio.wait({next_chunk, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [t for t in (next_chunk, cancelled) if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        if next_chunk in done:
            return next_chunk.result()
        raise TurnCancelled()

    async def persist(self, message: Message) -> str:
        """Write a message, retrying once with backoff on PersistenceError."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(2),
            wait=wait_exponential(multiplier=1, min=self.persist_retry_min, max=self.persist_retry_max),
            retry=retry_if_exception_type(PersistenceError),
            before_sleep=before_sleep_log(self.logger, logging.WARNING),
            reraise=True
        ):
            with attempt:
                return await self.store.write_message(message)

    def _assistant_message(self, session: StreamingSession, cancelled: bool = False) -> Message:
        metadata = {"provider": session.provider, "model": session.model}
        if cancelled:
            metadata["cancelled"] = True
        return Message(
            conversation_id=session.conversation_id,
            role=Role.ASSISTANT,
            content=session.buffer,
            created_at=datetime.utcnow(),
            metadata=metadata,
        )

    async def _persist_detached(self, message: Message) -> None:
        try:
            await self.persist(message)
        except PersistenceError as e:
            self.logger.critical(f"Lost assistant message {message.id} for {message.conversation_id}: {e}")
            raise

    def _schedule_extraction(
        self, session: StreamingSession, request: TurnRequest, history: Optional[List[Message]] = None
    ) -> None:
        if self.extractor is None or not (request.content or "").strip():
            return
        self.supervisor.submit(
            self.extractor.process(session.user_id, request.content, session.conversation_id, history=history),
            name=f"memory-extraction-{session.id}",
        )

    def _fail(self, session: StreamingSession, kind: ErrorKind, message: str) -> ErrorEvent:
        if not session.is_terminal:
            session.transition(SessionState.ERROR)
        self._release(session)
        return ErrorEvent(kind=kind, message=message, conversation_id=session.conversation_id)

    async def run(self, session: StreamingSession, request: TurnRequest) -> AsyncIterator[StreamEvent]:
        """
        Execute an opened turn, yielding chunk events and exactly one
        terminal event (done or error).

        If the consuming task is cancelled (client disconnect), the slot is
        released, any partial reply is persisted in a detached task, and
        the cancellation propagates.
        """
        conversation_id = session.conversation_id
        if session.is_terminal:
            # Discarded before it started
            yield DoneEvent(conversation_id=conversation_id, cancelled=True)
            return

        stream: Optional[AsyncIterator[str]] = None
        assistant: Optional[Message] = None
        try:
            adapter = self.registry.get(session.provider)
            session.transition(SessionState.THINKING)

            user_message = Message(
                conversation_id=conversation_id,
                role=Role.USER,
                content=request.content,
                attachments=request.attachments,
            )
            await self.store.write_message(user_message)

            context, memories = await asyncio.gather(
                self.assembler.build(
                    adapter,
                    conversation_id,
                    request.content,
                    request.attachments,
                    exclude_ids=[user_message.id],
                ),
                self._retrieve(session, request.content),
            )
            self.assembler.inject_memories(context, memories)
            if context.dropped_attachments:
                self.logger.warning(
                    f"Session {session.id}: dropped attachments: {'; '.join(context.dropped_attachments)}"
                )

            provider_request = adapter.translate(context, session.model)
            stream = adapter.stream_tokens(provider_request)
            while True:
                chunk = await self._next_chunk(stream, session)
                if chunk is _END:
                    break
                if session.state == SessionState.THINKING:
                    session.transition(SessionState.STREAMING)
                session.append(chunk)
                yield ChunkEvent(content=chunk)

            if session.state != SessionState.STREAMING:
                raise ProviderError(session.provider, "empty response")

            session.transition(SessionState.PERSISTING)
            assistant = self._assistant_message(session)
            try:
                message_id = await self.persist(assistant)
            except PersistenceError as e:
                self.logger.critical(
                    f"Failed to persist assistant message for {conversation_id} after retry: {e}"
                )
                yield self._fail(session, ErrorKind.PERSISTENCE, "The response could not be saved")
                return

            self._schedule_extraction(session, request, context.history)
            session.transition(SessionState.COMPLETE)
            self._release(session)
            self.logger.info(
                f"Session {session.id} complete: {session.chunks_delivered} chunks, message {message_id}"
            )
            yield DoneEvent(message_id=message_id, conversation_id=conversation_id)

        except TurnCancelled:
            if stream is not None:
                await stream.aclose()
            session.transition(SessionState.CANCELLED)
            self._release(session)
            message_id = None
            if session.buffer:
                partial = self._assistant_message(session, cancelled=True)
                try:
                    message_id = await self.persist(partial)
                except PersistenceError as e:
                    self.logger.critical(f"Failed to persist cancelled reply for {conversation_id}: {e}")
            self.logger.info(f"Session {session.id} cancelled after {session.chunks_delivered} chunks")
            yield DoneEvent(message_id=message_id, conversation_id=conversation_id, cancelled=True)

        except ValidationError as e:
            self.logger.warning(f"Session {session.id} rejected: {e}")
            yield self._fail(session, ErrorKind.VALIDATION, str(e))

        except ProviderError as e:
            self.logger.error(f"Session {session.id} provider failure: {e}")
            yield self._fail(session, ErrorKind.PROVIDER, str(e))

        except PersistenceError as e:
            self.logger.error(f"Session {session.id} persistence failure: {e}")
            yield self._fail(session, ErrorKind.PERSISTENCE, str(e))

        except (asyncio.CancelledError, GeneratorExit):
            self._abandon(session, assistant)
            raise

        except Exception as e:
            self.logger.error(f"Session {session.id} failed: {e}", exc_info=True)
            yield self._fail(session, ErrorKind.INTERNAL, "Internal error")

        finally:
            if stream is not None:
                await stream.aclose()
            self._release(session)

    def _abandon(self, session: StreamingSession, final: Optional[Message] = None) -> None:
        """The client went away mid-turn."""
        if session.state in (SessionState.THINKING, SessionState.STREAMING):
            session.transition(SessionState.CANCELLED)
            self._release(session)
            if session.buffer:
                self.supervisor.submit(
                    self._persist_detached(self._assistant_message(session, cancelled=True)),
                    name=f"persist-cancelled-{session.id}",
                )
            self.logger.info(f"Session {session.id} abandoned by client after {session.chunks_delivered} chunks")
        elif session.state == SessionState.PERSISTING and final is not None:
            # The write may not have landed; rewrite the same message id
            session.transition(SessionState.COMPLETE)
            self._release(session)
            self.supervisor.submit(
                self._persist_detached(final),
                name=f"persist-final-{session.id}",
            )
        else:
            self._release(session)

    async def stream_turn(self, request: TurnRequest) -> AsyncIterator[StreamEvent]:
        """Open and run a turn in one call. Open-time errors are raised, not yielded."""
        session = await self.open_session(request)
        async for event in self.run(session, request):
            yield event

    async def shutdown(self) -> None:
        for session in list(self._active.values()):
            session.request_cancel()
        await self.supervisor.drain()
