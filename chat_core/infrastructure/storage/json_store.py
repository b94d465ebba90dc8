import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, SessionStore
from chat_core.domain.exceptions import BusinessError, StoreError
from chat_core.domain.models import Message


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso(raw: str) -> datetime:
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


def write_json_atomic(path: Path, obj: Dict[str, Any]) -> None:
    """先写临时文件再 os.replace，保证读者看到的要么是旧文件要么是新文件。"""

    tmp_path = path.parent / f"{path.stem}.{uuid4().hex}.json.tmp"
    try:
        tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError as e:
        raise StoreError(code="STORE_WRITE_ERROR", message=str(e))


class JsonSessionStore(SessionStore):
    """每个会话一个 JSON 文件，外加记录当前活跃会话的 user.json。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._sessions_root = self._root / "sessions"
        self._sessions_root.mkdir(parents=True, exist_ok=True)
        self._user_path = self._root / "user.json"

    def get_session(self, session_id: str) -> Conversation:
        path = self._session_path(session_id)
        if not path.exists():
            raise StoreError(code="SESSION_NOT_FOUND", message=session_id, http_status=404)
        return self._to_conversation(self._read(path))

    def update_messages(self, session_id: str, messages: List[Message]) -> None:
        data = self._read_existing(session_id)
        data["messages"] = [m.to_payload() for m in messages]
        write_json_atomic(self._session_path(session_id), data)

    def update_token_counts(self, session_id: str, prompt_tokens: int, completion_tokens: int) -> None:
        data = self._read_existing(session_id)
        data["prompt_token_count"] = int(prompt_tokens)
        data["completion_token_count"] = int(completion_tokens)
        write_json_atomic(self._session_path(session_id), data)

    def insert_session(self, name: str, messages: List[Message]) -> Conversation:
        conv = Conversation(
            id=f"s-{uuid4().hex}",
            name=name,
            created_at=datetime.now(timezone.utc),
            messages=list(messages),
        )
        write_json_atomic(self._session_path(conv.id), self._to_payload(conv))
        return conv

    def delete_session(self, session_id: str) -> None:
        path = self._session_path(session_id)
        if not path.exists():
            raise StoreError(code="SESSION_NOT_FOUND", message=session_id, http_status=404)
        try:
            path.unlink()
        except OSError as e:
            raise StoreError(code="STORE_DELETE_ERROR", message=str(e))
        if self.get_active_session_id() == session_id:
            self._write_user({"current_active_session_id": None})

    def list_sessions(self) -> List[Conversation]:
        """按创建时间倒序列出会话，损坏的文件直接跳过。"""

        items: List[Conversation] = []
        for path in self._sessions_root.glob("*.json"):
            try:
                items.append(self._to_conversation(self._read(path)))
            except BusinessError:
                continue
        items.sort(key=lambda c: c.created_at, reverse=True)
        return items

    def rename_session(self, session_id: str, name: str) -> None:
        data = self._read_existing(session_id)
        data["name"] = name
        write_json_atomic(self._session_path(session_id), data)

    def get_most_recent_session(self) -> Optional[Conversation]:
        sessions = self.list_sessions()
        return sessions[0] if sessions else None

    def get_active_session_id(self) -> Optional[str]:
        if not self._user_path.exists():
            return None
        return self._read(self._user_path).get("current_active_session_id")

    def set_active_session_id(self, session_id: str) -> None:
        self._write_user({"current_active_session_id": session_id})

    def _session_path(self, session_id: str) -> Path:
        return self._sessions_root / f"{session_id}.json"

    def _read(self, path: Path) -> Dict[str, Any]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e))
        if not isinstance(data, dict):
            raise StoreError(code="STORE_READ_ERROR", message=f"{path.name} is not a JSON object")
        return data

    def _read_existing(self, session_id: str) -> Dict[str, Any]:
        path = self._session_path(session_id)
        if not path.exists():
            raise StoreError(code="SESSION_NOT_FOUND", message=session_id, http_status=404)
        return self._read(path)

    def _write_user(self, obj: Dict[str, Any]) -> None:
        write_json_atomic(self._user_path, obj)

    @staticmethod
    def _to_payload(conv: Conversation) -> Dict[str, Any]:
        return {
            "id": conv.id,
            "name": conv.name,
            "created_at": _iso(conv.created_at),
            "messages": [m.to_payload() for m in conv.messages],
            "prompt_token_count": conv.prompt_token_count,
            "completion_token_count": conv.completion_token_count,
        }

    @staticmethod
    def _to_conversation(data: Dict[str, Any]) -> Conversation:
        try:
            return Conversation(
                id=data["id"],
                name=data.get("name") or "",
                created_at=_parse_iso(data["created_at"]),
                messages=[Message.from_payload(m) for m in data.get("messages") or []],
                prompt_token_count=int(data.get("prompt_token_count", 0)),
                completion_token_count=int(data.get("completion_token_count", 0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e))
