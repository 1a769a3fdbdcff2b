"""
Session persistence for the client workflow.

SessionCodec turns the persistable part of ClientWorkflowState into a
versioned JSON payload and back, rejecting anything it does not recognise.
SessionStore is the durable per-session key/value backend.
"""
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

import aiofiles
from pydantic import ValidationError

from .state import PERSISTED_FIELDS, ClientWorkflowState

logger = logging.getLogger(__name__)

STORAGE_KEY = "exam_workflow_state_v2"

# Keys written by earlier client versions; deleted on load
LEGACY_KEYS = ("exam_workflow_state", "examProcessingState", "exam_workflow_state_v1")


class SessionDecodeError(ValueError):
    """Persisted payload is malformed or from another version."""


class SessionCodec:
    """Typed, versioned encoding of the persisted workflow state."""

    CURRENT_VERSION = 2

    @classmethod
    def encode(cls, state: ClientWorkflowState) -> str:
        body = state.model_dump(mode="json", by_alias=True, include=PERSISTED_FIELDS)
        return json.dumps({"version": cls.CURRENT_VERSION, "state": body}, ensure_ascii=False)

    @classmethod
    def decode(cls, payload: str) -> ClientWorkflowState:
        """
        Raises:
            SessionDecodeError: payload is not JSON, has the wrong version,
                or its state does not validate
        """
        try:
            data = json.loads(payload)
        except (TypeError, json.JSONDecodeError) as e:
            raise SessionDecodeError(f"Session payload is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise SessionDecodeError("Session payload is not an object")
        version = data.get("version")
        if version != cls.CURRENT_VERSION:
            raise SessionDecodeError(f"Unsupported session version: {version!r}")
        body = data.get("state")
        if not isinstance(body, dict):
            raise SessionDecodeError("Session payload has no state object")

        try:
            return ClientWorkflowState.model_validate(body)
        except ValidationError as e:
            raise SessionDecodeError(f"Session state does not validate: {e}") from e


class SessionStore(ABC):
    """Durable key/value storage scoped to one client session."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass


class InMemorySessionStore(SessionStore):

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)


class FileSessionStore(SessionStore):
    """One JSON file per key inside a session directory."""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    async def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.is_file():
            return None
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            return await f.read()

    async def set(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp = self._path(f"{key}.tmp")
        async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
            await f.write(value)
        os.replace(tmp, self._path(key))

    async def delete(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass


async def load_session(store: SessionStore) -> Optional[ClientWorkflowState]:
    """
    Purge legacy keys, then decode the current session if there is one.

    An undecodable payload is deleted and treated as no session.
    """
    for key in LEGACY_KEYS:
        if await store.get(key) is not None:
            logger.info(f"Purging legacy session key {key}")
            await store.delete(key)

    payload = await store.get(STORAGE_KEY)
    if payload is None:
        return None

    try:
        return SessionCodec.decode(payload)
    except SessionDecodeError as e:
        logger.warning(f"Discarding persisted session: {e}")
        await store.delete(STORAGE_KEY)
        return None


async def save_session(store: SessionStore, state: ClientWorkflowState) -> None:
    await store.set(STORAGE_KEY, SessionCodec.encode(state))


async def clear_session(store: SessionStore) -> None:
    await store.delete(STORAGE_KEY)
