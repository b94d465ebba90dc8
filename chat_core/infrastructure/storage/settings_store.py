"""生成参数的持久化。

设置保存在 storage_root/settings.json 中；文件不存在时使用调用方给出的默认值
（来自配置项 default_model / default_max_tokens），并不立即写盘。
"""

import json
from pathlib import Path

from chat_core.config.settings import settings
from chat_core.domain.conversation import SettingsStore
from chat_core.domain.exceptions import StoreError
from chat_core.domain.models import GenerationSettings
from chat_core.domain.validators import validate_generation_settings
from chat_core.infrastructure.storage.json_store import write_json_atomic


class JsonSettingsStore(SettingsStore):
    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._path = self._root / "settings.json"

    def get_settings(self, defaults: GenerationSettings) -> GenerationSettings:
        if not self._path.exists():
            return defaults
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e))
        merged = {**defaults.to_dict(), **(data if isinstance(data, dict) else {})}
        try:
            return GenerationSettings.from_dict(merged)
        except TypeError as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e))

    def update_settings(self, new_settings: GenerationSettings) -> GenerationSettings:
        validate_generation_settings(new_settings)
        write_json_atomic(self._path, new_settings.to_dict())
        return new_settings
