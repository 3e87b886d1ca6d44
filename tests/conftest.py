from __future__ import annotations

from datetime import datetime, timedelta, timezone
import threading
from typing import Any, Dict, List, Optional, Tuple
import uuid

import fakeredis
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.channels.base import DeliveryCredentials, DeliveryResult
from src.pipeline.locks import RELEASE_LOCK_SCRIPT
from src.queue.job_queue import INACTIVITY_TASK, PROCESSING_TASK, JobQueue, build_job_queue
from src.storage.db import Base, load_models
from src.storage.models import (
    MESSAGE_STATUS_RECEIVED,
    SENDER_CLIENT,
    Client,
    Conversation,
    FollowUpRule,
    Message,
    Workspace,
)


BASE_TIME = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class FakeRedis:
    """In-memory subset of redis-py used by the conversation lock and the publisher."""

    def __init__(self) -> None:
        self._strings: Dict[str, str] = {}
        self.published: List[Tuple[str, str]] = []
        self._lock = threading.RLock()

    def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):
        del ex
        with self._lock:
            if nx and key in self._strings:
                return False
            self._strings[key] = str(value)
            return True

    def get(self, key: str):
        return self._strings.get(key)

    def delete(self, key: str):
        with self._lock:
            return 1 if self._strings.pop(key, None) is not None else 0

    def eval(self, script: str, numkeys: int, *keys_and_args):
        keys = list(keys_and_args[:numkeys])
        args = list(keys_and_args[numkeys:])
        with self._lock:
            if script == RELEASE_LOCK_SCRIPT:
                if self._strings.get(keys[0]) == args[0]:
                    del self._strings[keys[0]]
                    return 1
                return 0
        raise AssertionError("unexpected script")

    def publish(self, channel: str, message: str):
        with self._lock:
            self.published.append((channel, message))
        return 0


def build_processing_queue(*, max_attempts: int = 3, backoff_seconds: float = 1.0, task=PROCESSING_TASK) -> JobQueue:
    return build_job_queue(
        "message-processing",
        task=task,
        max_attempts=max_attempts,
        backoff_seconds=backoff_seconds,
        connection=fakeredis.FakeRedis(),
    )


def build_inactivity_queue(*, max_attempts: int = 2, backoff_seconds: float = 5.0) -> JobQueue:
    return build_job_queue(
        "inactive-follow-up",
        task=INACTIVITY_TASK,
        max_attempts=max_attempts,
        backoff_seconds=backoff_seconds,
        connection=fakeredis.FakeRedis(),
    )


class FakeResponder:
    def __init__(self, reply: str = "Thanks for reaching out!") -> None:
        self.reply = reply
        self.calls: List[Dict[str, Any]] = []

    def complete(self, history, *, system_prompt=None, model=None) -> str:
        self.calls.append({"history": list(history), "system_prompt": system_prompt, "model": model})
        return self.reply


class FakeDeliveryChannel:
    def __init__(self, *, succeed: bool = True) -> None:
        self.succeed = succeed
        self.sent: List[Tuple[DeliveryCredentials, str, str]] = []

    def send(self, credentials: DeliveryCredentials, destination: str, text: str) -> DeliveryResult:
        self.sent.append((credentials, destination, text))
        if self.succeed:
            return DeliveryResult.sent(f"provider-{len(self.sent)}")
        return DeliveryResult.failed("provider_rejected")


class FakePublisher:
    def __init__(self) -> None:
        self.messages: List[Tuple[str, str]] = []
        self.statuses: List[Tuple[str, str]] = []
        self.ai_statuses: List[Tuple[str, bool]] = []

    def publish_message(self, conversation, message) -> None:
        self.messages.append((conversation.id, message.id))

    def publish_message_status(self, conversation, message) -> None:
        self.statuses.append((message.id, message.status))

    def publish_ai_status(self, conversation) -> None:
        self.ai_statuses.append((conversation.id, conversation.is_ai_active))


def build_sqlite_session_factory() -> sessionmaker:
    load_models()
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def build_file_session_factory(path) -> sessionmaker:
    """File-backed SQLite so concurrent threads get their own connections."""

    load_models()
    engine = create_engine(
        f"sqlite+pysqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def seed_conversation(
    session_factory: sessionmaker,
    *,
    client_name: Optional[str] = "Maria",
    is_ai_active: bool = True,
    status: str = "ACTIVE",
    with_credentials: bool = True,
    rule_delay_ms: Optional[int] = 60_000,
    rule_content: str = "Hi [Name], are you still there?",
) -> Dict[str, str]:
    with session_factory() as session:
        workspace = Workspace(
            id=str(uuid.uuid4()),
            name="Acme Support",
            ai_default_system_prompt="You are Acme's assistant.",
            ai_model_preference="gpt-4o-mini",
            lumibot_account_id="42" if with_credentials else None,
            lumibot_api_token="token-abc" if with_credentials else None,
        )
        session.add(workspace)
        session.flush()
        client = Client(
            id=str(uuid.uuid4()),
            workspace_id=workspace.id,
            external_id="5511999990000",
            channel="WHATSAPP",
            name=client_name,
            phone_number="5511999990000",
        )
        session.add(client)
        session.flush()
        conversation = Conversation(
            id=str(uuid.uuid4()),
            workspace_id=workspace.id,
            client_id=client.id,
            channel="WHATSAPP",
            status=status,
            is_ai_active=is_ai_active,
            channel_conversation_id="chatwoot-77",
            created_at=BASE_TIME - timedelta(days=1),
            updated_at=BASE_TIME - timedelta(days=1),
        )
        session.add(conversation)
        rule_id = ""
        if rule_delay_ms is not None:
            rule = FollowUpRule(
                id=str(uuid.uuid4()),
                workspace_id=workspace.id,
                delay_milliseconds=rule_delay_ms,
                message_content=rule_content,
            )
            session.add(rule)
            rule_id = rule.id
        session.commit()
        return {
            "workspace_id": workspace.id,
            "client_id": client.id,
            "conversation_id": conversation.id,
            "rule_id": rule_id,
        }


def add_message(
    session_factory: sessionmaker,
    *,
    conversation_id: str,
    sender_type: str = SENDER_CLIENT,
    content: str = "hello",
    timestamp: datetime,
    status: str = MESSAGE_STATUS_RECEIVED,
) -> str:
    with session_factory() as session:
        message = Message(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            sender_type=sender_type,
            content=content,
            timestamp=timestamp,
            status=status,
        )
        session.add(message)
        conversation = session.get(Conversation, conversation_id)
        if conversation.last_message_at is None or conversation.last_message_at.replace(tzinfo=timezone.utc) < timestamp:
            conversation.last_message_at = timestamp
        session.commit()
        return message.id


@pytest.fixture
def session_factory() -> sessionmaker:
    return build_sqlite_session_factory()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def fake_responder() -> FakeResponder:
    return FakeResponder()


@pytest.fixture
def fake_delivery() -> FakeDeliveryChannel:
    return FakeDeliveryChannel()


@pytest.fixture
def fake_publisher() -> FakePublisher:
    return FakePublisher()
