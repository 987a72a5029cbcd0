"""本地凭据存储。

以 JSON 键值文件模拟客户端的持久化存储，API 密钥保存在
固定的键名下（默认 "chatgpt_api_key"）。写入采用临时文件 + os.replace，
避免进程中断时留下半截文件。
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.exceptions import BusinessError


class CredentialStore:
    def __init__(self, root: str | Path | None = None, key: Optional[str] = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._path = self._root / "local_storage.json"
        self._key = key or settings.credential_key

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Optional[str]:
        value = self._read_all().get(self._key)
        if isinstance(value, str) and value.strip():
            return value
        return None

    def save(self, credential: str) -> None:
        data = self._read_all()
        data[self._key] = credential
        self._write_all(data)

    def clear(self) -> None:
        data = self._read_all()
        if data.pop(self._key, None) is not None:
            self._write_all(data)

    def _read_all(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: Dict[str, Any]) -> None:
        tmp_path = self._root / f"local_storage.{uuid4().hex}.json.tmp"
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
