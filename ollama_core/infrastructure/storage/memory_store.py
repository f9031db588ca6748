import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Dict, Iterator, List, Optional

from ollama_core.domain.conversation import Conversation, ConversationStore
from ollama_core.domain.models import Message


def copy_message(m: Message) -> Message:
    return replace(m, images=list(m.images))


class ConversationLocks:
    """按会话 id 分配的互斥锁，保证同一会话的“读历史-请求-追加”独占执行。"""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    @contextmanager
    def lock(self, conversation_id: str) -> Iterator[None]:
        with self._guard:
            lk = self._locks.setdefault(conversation_id, threading.Lock())
        with lk:
            yield


class InMemoryConversationStore(ConversationStore):
    """进程内会话存储，由调用方（通常是 OllamaClient 实例）持有。"""

    def __init__(self) -> None:
        self._chats: Dict[str, Conversation] = {}
        self._mutex = threading.RLock()
        self._locks = ConversationLocks()

    def get_or_create(self, conversation_id: str) -> Conversation:
        with self._mutex:
            conv = self._chats.get(conversation_id)
            if conv is None:
                conv = Conversation(id=conversation_id)
                self._chats[conversation_id] = conv
            return conv

    def get(self, conversation_id: str) -> Optional[Conversation]:
        with self._mutex:
            return self._chats.get(conversation_id)

    def preload(self, conversation: Conversation) -> None:
        with self._mutex:
            self._chats[conversation.id] = conversation

    def history(self, conversation_id: str) -> List[Message]:
        with self._mutex:
            conv = self.get_or_create(conversation_id)
            return [copy_message(m) for m in conv.messages]

    def append(self, conversation_id: str, *messages: Message) -> None:
        with self._mutex:
            conv = self.get_or_create(conversation_id)
            for m in messages:
                conv.add_message(m)

    def delete(self, conversation_id: str) -> None:
        with self._mutex:
            self._chats.pop(conversation_id, None)

    def delete_all(self) -> None:
        with self._mutex:
            self._chats = {}

    def ids(self) -> List[str]:
        with self._mutex:
            return list(self._chats)

    def lock(self, conversation_id: str):
        return self._locks.lock(conversation_id)
