from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol

from .models import GenerationSettings, Message


@dataclass
class Conversation:
    id: str
    name: str
    created_at: datetime
    messages: List[Message] = field(default_factory=list)
    prompt_token_count: int = 0
    completion_token_count: int = 0


class SessionStore(Protocol):
    def get_session(self, session_id: str) -> Conversation:
        ...

    def update_messages(self, session_id: str, messages: List[Message]) -> None:
        ...

    def update_token_counts(self, session_id: str, prompt_tokens: int, completion_tokens: int) -> None:
        ...

    def insert_session(self, name: str, messages: List[Message]) -> Conversation:
        ...

    def delete_session(self, session_id: str) -> None:
        ...

    def list_sessions(self) -> List[Conversation]:
        ...

    def rename_session(self, session_id: str, name: str) -> None:
        ...

    def get_most_recent_session(self) -> Optional[Conversation]:
        ...

    def get_active_session_id(self) -> Optional[str]:
        ...

    def set_active_session_id(self, session_id: str) -> None:
        ...


class SettingsStore(Protocol):
    def get_settings(self, defaults: GenerationSettings) -> GenerationSettings:
        ...

    def update_settings(self, new_settings: GenerationSettings) -> GenerationSettings:
        ...
