from __future__ import annotations
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from json_store import JsonFileStore
from ozon_api import OzonCredentials, mask_client_id
from supply_state import now_ts

logger = logging.getLogger(__name__)


class CredentialsStore:
    """Ключи Ozon по chat_id. Пустые значения не сохраняются и не отдаются."""

    def __init__(self, path: Union[str, Path] = "user_credentials.json",
                 default: Optional[OzonCredentials] = None):
        self.store = JsonFileStore(path, root_key="credentials")
        self.default = default if default and default.is_complete() else None

    def get(self, chat_id: Any) -> Optional[OzonCredentials]:
        for r in self.store.read_all():
            if r.get("chatId") == str(chat_id):
                creds = OzonCredentials(str(r.get("clientId") or "").strip(), str(r.get("apiKey") or "").strip())
                return creds if creds.is_complete() else None
        return None

    def has(self, chat_id: Any) -> bool:
        return self.get(chat_id) is not None

    def resolve(self, chat_id: Any) -> Optional[OzonCredentials]:
        return self.get(chat_id) or self.default

    def set(self, chat_id: Any, credentials: OzonCredentials, verified_at: Optional[int] = None):
        if not credentials.is_complete():
            raise ValueError("client_id и api_key не должны быть пустыми")
        with self.store.lock:
            records = [r for r in self.store.read_all() if r.get("chatId") != str(chat_id)]
            records.append({
                "chatId": str(chat_id),
                "clientId": credentials.client_id.strip(),
                "apiKey": credentials.api_key.strip(),
                "verifiedAt": verified_at,
                "updatedAt": now_ts(),
            })
            self.store.write_all(records)
        logger.info("Credentials saved for chat %s (client %s)", chat_id, mask_client_id(credentials.client_id))

    def clear(self, chat_id: Any) -> bool:
        with self.store.lock:
            records = self.store.read_all()
            kept = [r for r in records if r.get("chatId") != str(chat_id)]
            if len(kept) == len(records):
                return False
            self.store.write_all(kept)
        logger.info("Credentials cleared for chat %s", chat_id)
        return True

    def entries(self, chat_id: Any = None) -> List[Dict[str, Any]]:
        rows = [r for r in self.store.read_all() if chat_id is None or r.get("chatId") == str(chat_id)]
        return sorted(rows, key=lambda r: r.get("updatedAt") or 0, reverse=True)
