from __future__ import annotations

from datetime import timedelta
import json

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from src.jobs.payloads import InactivityJob
from src.pipeline.inactivity import (
    FOLLOWUP_METADATA_TYPE,
    InactivityDeliveryError,
    InactivityFollowUpScheduler,
)
from src.storage.models import SENDER_AI, SENDER_SYSTEM, Conversation, Message
from tests.conftest import BASE_TIME, FakeDeliveryChannel, add_message, seed_conversation


def _scheduler(session_factory, delivery, publisher, *, now=BASE_TIME + timedelta(minutes=2)):
    return InactivityFollowUpScheduler(
        session_factory=session_factory,
        delivery_channel=delivery,
        publisher=publisher,
        clock=lambda: now,
    )


def _seed_with_reply(session_factory, **kwargs):
    ids = seed_conversation(session_factory, **kwargs)
    add_message(session_factory, conversation_id=ids["conversation_id"], timestamp=BASE_TIME - timedelta(seconds=3))
    add_message(
        session_factory,
        conversation_id=ids["conversation_id"],
        sender_type=SENDER_AI,
        content="How can I help?",
        timestamp=BASE_TIME,
    )
    return ids


def _job(ids, *, ai_at=BASE_TIME) -> InactivityJob:
    return InactivityJob(
        conversation_id=ids["conversation_id"],
        workspace_id=ids["workspace_id"],
        ai_message_timestamp=ai_at,
    )


def _system_messages(session_factory, conversation_id: str):
    with session_factory() as session:
        return list(
            session.scalars(
                select(Message).where(
                    Message.conversation_id == conversation_id,
                    Message.sender_type == SENDER_SYSTEM,
                )
            ).all()
        )


def test_followup_resolves_name_and_records_system_message(
    session_factory, fake_delivery, fake_publisher
) -> None:
    ids = _seed_with_reply(session_factory)
    scheduler = _scheduler(session_factory, fake_delivery, fake_publisher)

    outcome = scheduler.handle(_job(ids))

    assert outcome.status == "completed"
    assert outcome.details["sent"] is True
    assert outcome.details["recorded"] is True
    assert outcome.details["rule_id"] == ids["rule_id"]

    credentials, destination, text = fake_delivery.sent[0]
    assert (credentials.account_id, credentials.api_token) == ("42", "token-abc")
    assert destination == "chatwoot-77"
    assert text == "Hi Maria, are you still there?"

    [system_message] = _system_messages(session_factory, ids["conversation_id"])
    assert system_message.content == "Hi Maria, are you still there?"
    assert system_message.status == "SENT"
    assert system_message.provider_message_id == "provider-1"
    assert json.loads(system_message.metadata_json) == {
        "type": FOLLOWUP_METADATA_TYPE,
        "ruleId": ids["rule_id"],
    }
    assert fake_publisher.messages == [(ids["conversation_id"], system_message.id)]

    with session_factory() as session:
        conversation = session.get(Conversation, ids["conversation_id"])
        assert conversation.last_message_at.replace(tzinfo=None) == (BASE_TIME + timedelta(minutes=2)).replace(
            tzinfo=None
        )


def test_activity_after_reply_makes_job_stale(session_factory, fake_delivery, fake_publisher) -> None:
    ids = _seed_with_reply(session_factory)
    add_message(
        session_factory,
        conversation_id=ids["conversation_id"],
        content="one more thing",
        timestamp=BASE_TIME + timedelta(seconds=30),
    )
    scheduler = _scheduler(session_factory, fake_delivery, fake_publisher)

    outcome = scheduler.handle(_job(ids))

    assert outcome.skipped
    assert outcome.reason == "superseded"
    assert fake_delivery.sent == []
    assert _system_messages(session_factory, ids["conversation_id"]) == []


def test_job_with_equal_checkpoint_is_not_stale(session_factory, fake_delivery, fake_publisher) -> None:
    ids = _seed_with_reply(session_factory)
    scheduler = _scheduler(session_factory, fake_delivery, fake_publisher)

    outcome = scheduler.handle(_job(ids, ai_at=BASE_TIME))

    assert outcome.status == "completed"
    assert len(fake_delivery.sent) == 1


def test_second_run_after_followup_is_stale(session_factory, fake_delivery, fake_publisher) -> None:
    ids = _seed_with_reply(session_factory)
    scheduler = _scheduler(session_factory, fake_delivery, fake_publisher)

    assert scheduler.handle(_job(ids)).status == "completed"
    rerun = scheduler.handle(_job(ids))

    assert rerun.skipped
    assert rerun.reason == "superseded"
    assert len(fake_delivery.sent) == 1


def test_send_failure_raises_for_retry(session_factory, fake_publisher) -> None:
    ids = _seed_with_reply(session_factory)
    scheduler = _scheduler(session_factory, FakeDeliveryChannel(succeed=False), fake_publisher)

    with pytest.raises(InactivityDeliveryError, match="provider_rejected"):
        scheduler.handle(_job(ids))

    assert _system_messages(session_factory, ids["conversation_id"]) == []
    assert fake_publisher.messages == []


def test_closed_conversation_is_skipped(session_factory, fake_delivery, fake_publisher) -> None:
    ids = _seed_with_reply(session_factory, status="CLOSED")
    scheduler = _scheduler(session_factory, fake_delivery, fake_publisher)

    outcome = scheduler.handle(_job(ids))

    assert outcome.skipped
    assert outcome.reason == "conversation not active"
    assert fake_delivery.sent == []


def test_workspace_without_rule_is_skipped(session_factory, fake_delivery, fake_publisher) -> None:
    ids = _seed_with_reply(session_factory, rule_delay_ms=None)
    scheduler = _scheduler(session_factory, fake_delivery, fake_publisher)

    outcome = scheduler.handle(_job(ids))

    assert outcome.skipped
    assert outcome.reason == "no follow-up rule"


def test_missing_credentials_are_skipped(session_factory, fake_delivery, fake_publisher) -> None:
    ids = _seed_with_reply(session_factory, with_credentials=False)
    scheduler = _scheduler(session_factory, fake_delivery, fake_publisher)

    outcome = scheduler.handle(_job(ids))

    assert outcome.skipped
    assert outcome.reason == "delivery credentials missing"
    assert fake_delivery.sent == []


def test_unknown_conversation_is_skipped(session_factory, fake_delivery, fake_publisher) -> None:
    ids = _seed_with_reply(session_factory)
    scheduler = _scheduler(session_factory, fake_delivery, fake_publisher)

    outcome = scheduler.handle(
        InactivityJob(conversation_id="missing", workspace_id=ids["workspace_id"], ai_message_timestamp=BASE_TIME)
    )

    assert outcome.skipped
    assert outcome.reason == "not found"


def test_unknown_placeholders_are_left_as_written(session_factory, fake_delivery, fake_publisher) -> None:
    ids = _seed_with_reply(session_factory, client_name=None, rule_content="Hello [Name], from [Workspace]")
    scheduler = _scheduler(session_factory, fake_delivery, fake_publisher)

    scheduler.handle(_job(ids))

    assert fake_delivery.sent[0][2] == "Hello [Name], from Acme Support"


def test_persistence_failure_after_send_completes_unrecorded(
    session_factory, fake_delivery, fake_publisher, monkeypatch
) -> None:
    ids = _seed_with_reply(session_factory)
    scheduler = _scheduler(session_factory, fake_delivery, fake_publisher)

    def _broken_record(*args, **kwargs):
        raise OperationalError("INSERT INTO messages", {}, Exception("database is locked"))

    monkeypatch.setattr("src.pipeline.inactivity.record_message", _broken_record)

    outcome = scheduler.handle(_job(ids))

    assert outcome.status == "completed"
    assert outcome.details == {"sent": True, "recorded": False, "rule_id": ids["rule_id"]}
    assert len(fake_delivery.sent) == 1
    assert fake_publisher.messages == []
