import json
import os
import secrets
import threading
from collections import namedtuple
from typing import Any, Dict, Optional

from crash_aim.services.rounds.params import clean_name, normalize_room

User = namedtuple('User', ['id', 'name'])

USER_ID_KEY = 'mp_uid'
USER_NAME_KEY = 'mp_name'
ROOM_KEY = 'mp_room'
MUTED_KEY = 'muted'
DISPLAY_NAME_MAX_LENGTH = 24


class MemoryStore:
    """Key-value store kept in a dict."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data = dict(initial or {})

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore(MemoryStore):
    """Key-value store persisted to a JSON file on every write."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        data = {}
        if os.path.exists(path):
            with open(path, 'r', encoding='utf-8') as fh:
                data = json.load(fh)
        super().__init__(data)

    def set(self, key: str, value) -> None:
        with self._lock:
            super().set(key, value)
            self._flush()

    def delete(self, key: str) -> None:
        with self._lock:
            super().delete(key)
            self._flush()

    def _flush(self) -> None:
        tmp = f'{self.path}.tmp'
        with open(tmp, 'w', encoding='utf-8') as fh:
            json.dump(self._data, fh)
        os.replace(tmp, self.path)


class Preferences:
    """Player identity and settings on top of an injected key-value store."""

    def __init__(self, store=None):
        self.store = store if store is not None else MemoryStore()

    def user(self) -> User:
        user_id = self.store.get(USER_ID_KEY)
        if not user_id:
            user_id = secrets.token_hex(8)
            self.store.set(USER_ID_KEY, user_id)
        return User(user_id, clean_name(self.store.get(USER_NAME_KEY), max_length=DISPLAY_NAME_MAX_LENGTH))

    def set_user_name(self, name: str) -> str:
        cleaned = clean_name(name, max_length=DISPLAY_NAME_MAX_LENGTH)
        self.store.set(USER_NAME_KEY, cleaned)
        return cleaned

    @property
    def last_room(self) -> str:
        return normalize_room(self.store.get(ROOM_KEY))

    def set_last_room(self, room: str) -> str:
        room = normalize_room(room)
        self.store.set(ROOM_KEY, room)
        return room

    @property
    def muted(self) -> bool:
        return self.store.get(MUTED_KEY) == '1'

    def set_muted(self, muted: bool) -> None:
        self.store.set(MUTED_KEY, '1' if muted else '0')


def short_id(user_id) -> str:
    if not user_id:
        return '????'
    return str(user_id)[-4:].upper()


def initials(name: str) -> str:
    parts = (name or '').split()
    return ''.join(p[0] for p in parts[:2]).upper() or '?'
