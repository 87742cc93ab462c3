import pytest

from dmsync.client.stores import ConversationStore, MessageStore

from fakes import FakeChatApi, MemoryBus, RecordingNotifier


@pytest.fixture
def conversations():
    return ConversationStore()


@pytest.fixture
def messages():
    return MessageStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def bus():
    return MemoryBus()


@pytest.fixture
def api():
    return FakeChatApi()
