import json
import os
import shutil
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from ollama_core.config.settings import settings
from ollama_core.domain.conversation import Conversation, ConversationStore
from ollama_core.domain.exceptions import BusinessError, ValidationError
from ollama_core.domain.models import Message
from ollama_core.infrastructure.logging.logger import logger
from ollama_core.infrastructure.storage.memory_store import ConversationLocks


class JsonConversationStore(ConversationStore):
    """把会话持久化为 <root>/conversations/<id>/messages.jsonl。

    调用方对消息的插入/删除（Conversation.add_message_to / delete_message）
    需要再调用 preload() 整体写回。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)
        self._locks = ConversationLocks()

    def get_or_create(self, conversation_id: str) -> Conversation:
        conv = self.get(conversation_id)
        if conv is not None:
            return conv
        cdir = self._conv_dir(conversation_id)
        try:
            cdir.mkdir(parents=True, exist_ok=True)
            (cdir / "messages.jsonl").touch()
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
        return Conversation(id=conversation_id)

    def get(self, conversation_id: str) -> Optional[Conversation]:
        msgs_path = self._conv_dir(conversation_id) / "messages.jsonl"
        if not msgs_path.exists():
            return None
        try:
            lines = msgs_path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))
        messages: List[Message] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                messages.append(self._to_message(json.loads(line)))
            except (ValueError, KeyError, TypeError):
                logger.warning(
                    "store.skip_bad_line",
                    extra={"extra": {"conversation_id": conversation_id}},
                )
                continue
        return Conversation(id=conversation_id, messages=messages)

    def preload(self, conversation: Conversation) -> None:
        cdir = self._conv_dir(conversation.id)
        cdir.mkdir(parents=True, exist_ok=True)
        msgs_path = cdir / "messages.jsonl"
        tmp_path = cdir / f"messages.{uuid4().hex}.jsonl.tmp"
        body = "".join(json.dumps(asdict(m), ensure_ascii=False) + "\n" for m in conversation.messages)
        try:
            tmp_path.write_text(body, encoding="utf-8")
            os.replace(tmp_path, msgs_path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))

    def history(self, conversation_id: str) -> List[Message]:
        return self.get_or_create(conversation_id).messages

    def append(self, conversation_id: str, *messages: Message) -> None:
        self.get_or_create(conversation_id)
        msgs_path = self._conv_dir(conversation_id) / "messages.jsonl"
        try:
            with msgs_path.open("a", encoding="utf-8") as f:
                for m in messages:
                    f.write(json.dumps(asdict(m), ensure_ascii=False) + "\n")
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))

    def delete(self, conversation_id: str) -> None:
        cdir = self._conv_dir(conversation_id)
        if not cdir.exists():
            return
        try:
            shutil.rmtree(cdir)
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))

    def delete_all(self) -> None:
        try:
            shutil.rmtree(self._conv_root, ignore_errors=False)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))
        self._conv_root.mkdir(parents=True, exist_ok=True)

    def ids(self) -> List[str]:
        return sorted(p.name for p in self._conv_root.iterdir() if p.is_dir())

    def lock(self, conversation_id: str):
        return self._locks.lock(conversation_id)

    def _conv_dir(self, conversation_id: str) -> Path:
        if not conversation_id or conversation_id in {".", ".."} or any(c in conversation_id for c in "/\\"):
            raise ValidationError(code="INVALID_CONVERSATION_ID", message=repr(conversation_id))
        return self._conv_root / conversation_id

    @staticmethod
    def _to_message(data: Dict[str, Any]) -> Message:
        return Message(
            role=data["role"],
            content=data.get("content") or "",
            images=list(data.get("images") or []),
        )
