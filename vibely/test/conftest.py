import pytest
from datetime import datetime, timedelta, timezone

from vibely.models.chat import Message, MessageStatus
from vibely.services.memory_store import InMemoryMessageStore

BASE_TIME = datetime(2025, 11, 5, 9, 30, tzinfo=timezone.utc)


def make_message(message_id: str, sender_id: str, status: MessageStatus = MessageStatus.sent,
                 offset: int = 0, text: str = "hey") -> Message:
    return Message(
        id=message_id,
        text=text,
        sender_id=sender_id,
        timestamp=BASE_TIME + timedelta(seconds=offset),
        status=status,
    )


@pytest.fixture
def store():
    """A fresh in-memory store for each test."""
    return InMemoryMessageStore()
