"""Inactivity follow-up scheduler.

A follow-up job carries the timestamp of the AI reply it was scheduled
for. When it runs, it re-reads the conversation: any activity after that
checkpoint means the job is stale and it completes without sending.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from src.channels.base import DeliveryChannel, DeliveryCredentials
from src.conversations.store import (
    as_utc,
    bump_last_message_at,
    get_conversation,
    get_first_follow_up_rule,
    record_message,
    update_message_status,
    utc_now,
)
from src.conversations.templates import build_placeholder_values, resolve_placeholders
from src.core.logger import get_logger
from src.core.metrics import record_delivery_failure, record_followup_sent
from src.core.observability import capture_exception
from src.jobs.payloads import (
    SKIP_CONVERSATION_NOT_ACTIVE,
    SKIP_DELIVERY_CREDENTIALS_MISSING,
    SKIP_NO_FOLLOW_UP_RULE,
    SKIP_NOT_FOUND,
    SKIP_SUPERSEDED,
    InactivityJob,
    JobOutcome,
)
from src.realtime.publisher import EventPublisher
from src.storage.models import CONVERSATION_STATUS_ACTIVE, MESSAGE_STATUS_SENT, SENDER_SYSTEM
from src.storage.tenant import workspace_context


logger = get_logger("relaydesk.pipeline.inactivity")

FOLLOWUP_METADATA_TYPE = "inactive_followup_sent"


class InactivityDeliveryError(RuntimeError):
    """Raised when the follow-up could not be delivered; the queue retries the job."""


class InactivityFollowUpScheduler:
    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        delivery_channel: DeliveryChannel,
        publisher: EventPublisher,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._delivery_channel = delivery_channel
        self._publisher = publisher
        self._clock = clock

    def handle_payload(self, payload: Mapping[str, Any]) -> JobOutcome:
        return self.handle(InactivityJob.from_payload(payload))

    def handle(self, job: InactivityJob) -> JobOutcome:
        with self._session_factory() as session, workspace_context(session, job.workspace_id):
            conversation = get_conversation(session, job.conversation_id)
            if conversation is None:
                return self._skip(job, SKIP_NOT_FOUND)
            if conversation.status != CONVERSATION_STATUS_ACTIVE:
                return self._skip(job, SKIP_CONVERSATION_NOT_ACTIVE, status=conversation.status)

            last_activity = as_utc(conversation.last_message_at)
            if last_activity is not None and last_activity > job.ai_message_timestamp:
                return self._skip(
                    job,
                    SKIP_SUPERSEDED,
                    last_message_at=last_activity.isoformat(),
                )

            rule = get_first_follow_up_rule(session, workspace_id=conversation.workspace_id)
            if rule is None:
                return self._skip(job, SKIP_NO_FOLLOW_UP_RULE)

            credentials = DeliveryCredentials.from_workspace(conversation.workspace)
            destination = (conversation.channel_conversation_id or "").strip()
            if not credentials.complete or not destination:
                return self._skip(job, SKIP_DELIVERY_CREDENTIALS_MISSING)

            client = conversation.client
            workspace = conversation.workspace
            text = resolve_placeholders(
                rule.message_content,
                build_placeholder_values(
                    client_name=client.name if client is not None else None,
                    client_phone=client.phone_number if client is not None else None,
                    workspace_name=workspace.name if workspace is not None else None,
                ),
            )

            result = self._delivery_channel.send(credentials, destination, text)
            if not result.success:
                record_delivery_failure(workspace_id=conversation.workspace_id, source="followup")
                raise InactivityDeliveryError(result.error_detail or "delivery_failed")

            sent_at = self._clock()
            if last_activity is not None and sent_at <= last_activity:
                sent_at = last_activity + timedelta(milliseconds=1)

            try:
                message = record_message(
                    session,
                    conversation_id=conversation.id,
                    sender_type=SENDER_SYSTEM,
                    content=text,
                    timestamp=sent_at,
                    status=MESSAGE_STATUS_SENT,
                    metadata={"type": FOLLOWUP_METADATA_TYPE, "ruleId": rule.id},
                )
                update_message_status(
                    session,
                    message=message,
                    status=MESSAGE_STATUS_SENT,
                    provider_message_id=result.provider_message_id,
                )
                bump_last_message_at(session, conversation_id=conversation.id, timestamp=sent_at)
                session.commit()
            except SQLAlchemyError as exc:
                # Already delivered; a retry would send the nudge twice.
                session.rollback()
                capture_exception(exc)
                logger.error(
                    "followup_persist_failed_after_send",
                    conversation_id=conversation.id,
                    rule_id=rule.id,
                    error=str(exc),
                )
                return JobOutcome.completed(sent=True, recorded=False, rule_id=rule.id)

            session.refresh(conversation)
            record_followup_sent(workspace_id=conversation.workspace_id)
            logger.info(
                "followup_sent",
                conversation_id=conversation.id,
                rule_id=rule.id,
                message_id=message.id,
            )
            self._publisher.publish_message(conversation, message)
            return JobOutcome.completed(sent=True, recorded=True, rule_id=rule.id, message_id=message.id)

    def _skip(self, job: InactivityJob, reason: str, **details: object) -> JobOutcome:
        logger.info(
            "followup_job_skipped",
            conversation_id=job.conversation_id,
            reason=reason,
            **details,
        )
        return JobOutcome.skip(reason, **details)
