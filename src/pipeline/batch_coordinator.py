"""Debounce coordinator turning a burst of client messages into one AI reply.

Every inbound client message enqueues a processing job. After a short
buffer wait, each job re-reads committed state and elects the burst's
representative: the newest client message newer than the last AI reply.
Only the job triggered by that message proceeds; every other job skips.

Two guards close the window between election and persistence:

- an optional per-conversation Redis lock, taken only by a job that won
  the first election, held while the election is repeated on fresh state
  and the reply is committed (a busy lock raises ``ConversationBusyError``
  so the queue retries the job later);
- a compare-and-swap on ``Conversation.last_dispatched_message_id`` in
  the same transaction as the reply, so a redelivered job can never
  record a second reply for the same representative.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import time
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.orm import Session, sessionmaker

from src.ai.responder import AIResponder, HistoryMessage
from src.channels.base import DeliveryChannel, DeliveryCredentials, DeliveryResult
from src.conversations.store import (
    EPOCH,
    as_utc,
    bump_last_message_at,
    claim_dispatch,
    find_latest_ai_message,
    get_conversation,
    get_first_follow_up_rule,
    list_client_messages_after,
    load_history,
    record_message,
    update_message_status,
)
from src.core.logger import get_logger
from src.core.metrics import record_ai_reply, record_delivery_failure
from src.jobs.payloads import (
    SKIP_AI_INACTIVE,
    SKIP_ALREADY_DISPATCHED,
    SKIP_NO_NEW_CLIENT_MESSAGES,
    SKIP_NOT_FOUND,
    SKIP_SUPERSEDED_BY_LATER_MESSAGE,
    InactivityJob,
    JobOutcome,
    ProcessingJob,
)
from src.pipeline.locks import ConversationLockManager
from src.queue.job_queue import JobQueue
from src.realtime.publisher import EventPublisher
from src.storage.models import (
    MESSAGE_STATUS_FAILED,
    MESSAGE_STATUS_PENDING,
    MESSAGE_STATUS_SENT,
    SENDER_AI,
    Conversation,
    Message,
)
from src.storage.tenant import workspace_context


logger = get_logger("relaydesk.pipeline.batch")

# Ingress stamps client messages at least 1 ms after the last activity, so a
# reply this close to its representative sorts before any message that
# arrived while it was being generated.
REPLY_OFFSET = timedelta(microseconds=1)


class ConversationBusyError(RuntimeError):
    """Raised when another job holds the conversation's dispatch lock."""


@dataclass(frozen=True)
class _Election:
    representative: Message
    batch_size: int


@dataclass(frozen=True)
class _Dispatch:
    conversation: Conversation
    message: Message
    batch_size: int


class BatchCoordinator:
    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        ai_responder: AIResponder,
        delivery_channel: DeliveryChannel,
        inactivity_queue: JobQueue,
        publisher: EventPublisher,
        lock_manager: ConversationLockManager | None = None,
        buffer_seconds: float = 3.0,
        history_limit: int = 20,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._ai_responder = ai_responder
        self._delivery_channel = delivery_channel
        self._inactivity_queue = inactivity_queue
        self._publisher = publisher
        self._lock_manager = lock_manager
        self._buffer_seconds = max(0.0, buffer_seconds)
        self._history_limit = max(1, history_limit)
        self._sleep = sleep

    def handle_payload(self, payload: Mapping[str, Any]) -> JobOutcome:
        return self.handle(ProcessingJob.from_payload(payload))

    def handle(self, job: ProcessingJob) -> JobOutcome:
        if self._buffer_seconds > 0:
            self._sleep(self._buffer_seconds)

        with self._session_factory() as session, workspace_context(session, job.workspace_id):
            conversation = get_conversation(session, job.conversation_id)
            if conversation is None:
                return self._skip(job, SKIP_NOT_FOUND)
            if not conversation.is_ai_active:
                return self._skip(job, SKIP_AI_INACTIVE)

            election = self._elect(session, job, conversation)
            if isinstance(election, JobOutcome):
                return election

            lock = None
            if self._lock_manager is not None:
                lock = self._lock_manager.acquire(conversation.id)
                if lock is None:
                    raise ConversationBusyError(f"conversation_busy:{conversation.id}")
            try:
                # Re-run the election on fresh state now that no other job can record a reply.
                session.expire_all()
                election = self._elect(session, job, conversation)
                if isinstance(election, JobOutcome):
                    return election
                decision = self._generate_and_record(session, conversation, election)
            finally:
                if lock is not None:
                    lock.release()

            if isinstance(decision, JobOutcome):
                return decision
            return self._dispatch(session, job, decision)

    def _elect(self, session: Session, job: ProcessingJob, conversation: Conversation) -> JobOutcome | _Election:
        latest_ai = find_latest_ai_message(session, conversation_id=conversation.id)
        reference_point = as_utc(latest_ai.timestamp) if latest_ai is not None else EPOCH

        pending = list_client_messages_after(session, conversation_id=conversation.id, after=reference_point)
        if not pending:
            return self._skip(job, SKIP_NO_NEW_CLIENT_MESSAGES)

        representative = pending[-1]
        if job.triggering_message_id != representative.id:
            return self._skip(
                job,
                SKIP_SUPERSEDED_BY_LATER_MESSAGE,
                representative_message_id=representative.id,
            )
        if conversation.last_dispatched_message_id == representative.id:
            return self._skip(job, SKIP_ALREADY_DISPATCHED, representative_message_id=representative.id)
        return _Election(representative=representative, batch_size=len(pending))

    def _generate_and_record(
        self,
        session: Session,
        conversation: Conversation,
        election: _Election,
    ) -> JobOutcome | _Dispatch:
        representative = election.representative
        workspace = conversation.workspace
        history = [
            HistoryMessage(sender_type=item.sender_type, content=item.content or "")
            for item in load_history(session, conversation_id=conversation.id, limit=self._history_limit)
        ]
        reply_text = self._ai_responder.complete(
            history,
            system_prompt=workspace.ai_default_system_prompt if workspace is not None else None,
            model=workspace.ai_model_preference if workspace is not None else None,
        )
        if not reply_text or not reply_text.strip():
            logger.info(
                "batch_ai_reply_empty",
                conversation_id=conversation.id,
                representative_message_id=representative.id,
            )
            return JobOutcome.completed(replied=False)

        # Right after the representative, never at generation time.
        reply_at = as_utc(representative.timestamp) + REPLY_OFFSET
        message = record_message(
            session,
            conversation_id=conversation.id,
            sender_type=SENDER_AI,
            content=reply_text.strip(),
            timestamp=reply_at,
            status=MESSAGE_STATUS_PENDING,
            metadata={
                "representative_message_id": representative.id,
                "batch_size": election.batch_size,
            },
        )
        if not claim_dispatch(session, conversation_id=conversation.id, message_id=representative.id):
            session.rollback()
            logger.info(
                "batch_job_skipped",
                conversation_id=conversation.id,
                reason=SKIP_ALREADY_DISPATCHED,
                representative_message_id=representative.id,
            )
            return JobOutcome.skip(SKIP_ALREADY_DISPATCHED, representative_message_id=representative.id)
        bump_last_message_at(session, conversation_id=conversation.id, timestamp=reply_at)
        session.commit()
        session.refresh(conversation)

        record_ai_reply(workspace_id=conversation.workspace_id)
        logger.info(
            "batch_ai_reply_recorded",
            conversation_id=conversation.id,
            message_id=message.id,
            representative_message_id=representative.id,
            batch_size=election.batch_size,
        )
        return _Dispatch(conversation=conversation, message=message, batch_size=election.batch_size)

    def _dispatch(self, session: Session, job: ProcessingJob, dispatch: _Dispatch) -> JobOutcome:
        conversation = dispatch.conversation
        message = dispatch.message

        result = self._deliver(conversation, message)
        if result.success:
            update_message_status(
                session,
                message=message,
                status=MESSAGE_STATUS_SENT,
                provider_message_id=result.provider_message_id,
            )
        else:
            record_delivery_failure(workspace_id=conversation.workspace_id, source="batch")
            logger.warning(
                "batch_delivery_failed",
                conversation_id=conversation.id,
                message_id=message.id,
                error=result.error_detail,
            )
            update_message_status(
                session,
                message=message,
                status=MESSAGE_STATUS_FAILED,
                error_detail=result.error_detail or "delivery_failed",
            )
        session.commit()

        followup_job_id = self._schedule_inactivity(session, conversation, as_utc(message.timestamp))

        self._publisher.publish_message(conversation, message)
        self._publisher.publish_message_status(conversation, message)

        return JobOutcome.completed(
            replied=True,
            message_id=message.id,
            delivered=result.success,
            batch_size=dispatch.batch_size,
            followup_job_id=followup_job_id,
            triggering_message_id=job.triggering_message_id,
        )

    def _deliver(self, conversation: Conversation, message: Message) -> DeliveryResult:
        credentials = DeliveryCredentials.from_workspace(conversation.workspace)
        try:
            return self._delivery_channel.send(
                credentials,
                conversation.channel_conversation_id or "",
                message.content or "",
            )
        except Exception as exc:
            logger.error(
                "batch_delivery_raised",
                conversation_id=conversation.id,
                message_id=message.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return DeliveryResult.failed(f"delivery_exception:{type(exc).__name__}")

    def _schedule_inactivity(
        self,
        session: Session,
        conversation: Conversation,
        reply_at: datetime,
    ) -> Optional[str]:
        rule = get_first_follow_up_rule(session, workspace_id=conversation.workspace_id)
        if rule is None:
            logger.info("batch_followup_not_scheduled_no_rule", conversation_id=conversation.id)
            return None

        followup = InactivityJob(
            conversation_id=conversation.id,
            workspace_id=conversation.workspace_id,
            ai_message_timestamp=reply_at,
        )
        return self._inactivity_queue.enqueue(
            followup.to_payload(),
            job_id=followup.job_id,
            delay_seconds=max(0, rule.delay_milliseconds) / 1000.0,
        )

    def _skip(self, job: ProcessingJob, reason: str, **details: object) -> JobOutcome:
        logger.info(
            "batch_job_skipped",
            conversation_id=job.conversation_id,
            triggering_message_id=job.triggering_message_id,
            reason=reason,
            **details,
        )
        return JobOutcome.skip(reason, **details)
