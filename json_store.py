from __future__ import annotations
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Union

logger = logging.getLogger(__name__)


class JsonFileStore:
    """
    Список записей в одном JSON-файле: {"<root_key>": [...]}.
    Запись атомарная (tmp + os.replace), чтение и запись под одним замком.
    """

    def __init__(self, path: Union[str, Path], root_key: str = "records"):
        self.path = str(path)
        self.root_key = root_key
        self.lock = threading.RLock()
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        if not os.path.exists(self.path):
            self._save({self.root_key: []})

    def _load(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {self.root_key: []}
        with open(self.path, "r", encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                logger.warning("Broken JSON in %s: %s, starting empty", self.path, e)
                return {self.root_key: []}
        if not isinstance(data, dict) or not isinstance(data.get(self.root_key), list):
            return {self.root_key: []}
        return data

    def _save(self, data: Dict[str, Any]):
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp, self.path)

    def read_all(self) -> List[Dict[str, Any]]:
        with self.lock:
            return [r for r in self._load()[self.root_key] if isinstance(r, dict)]

    def write_all(self, records: List[Dict[str, Any]]):
        with self.lock:
            data = self._load()
            data[self.root_key] = records
            self._save(data)
