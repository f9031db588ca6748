from dataclasses import dataclass, field
from typing import ContextManager, List, Optional, Protocol

from .models import Message


@dataclass
class Conversation:
    """按时间顺序保存一段对话的消息（最早在前）。"""

    id: str
    messages: List[Message] = field(default_factory=list)

    def add_message(self, m: Message) -> None:
        self.messages.append(m)

    def add_message_to(self, index: int, m: Message) -> None:
        self.messages.insert(index, m)

    def delete_message(self, index: int) -> None:
        del self.messages[index]

    def delete_all_messages(self) -> None:
        self.messages = []


class ConversationStore(Protocol):
    def get_or_create(self, conversation_id: str) -> Conversation:
        ...

    def get(self, conversation_id: str) -> Optional[Conversation]:
        ...

    def preload(self, conversation: Conversation) -> None:
        ...

    def history(self, conversation_id: str) -> List[Message]:
        ...

    def append(self, conversation_id: str, *messages: Message) -> None:
        ...

    def delete(self, conversation_id: str) -> None:
        ...

    def delete_all(self) -> None:
        ...

    def lock(self, conversation_id: str) -> ContextManager:
        ...
