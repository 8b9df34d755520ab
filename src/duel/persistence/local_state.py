"""Local state — the reveal secret vault and the active-match session.

Two narrow interfaces are injected into the orchestrator:

- SecretVault: store / load / clear the commitment secret for a match key.
  Written once at commit or join, read once at reveal.
- SessionStore: get / set / clear the id of the match this participant
  believes is active.

FileStateStore implements both over a single JSON document:

    {
      "active_match_id": 7,
      "secrets": {
        "7": {"portfolio": [...], "roles": [...], "salt": "..."}
      }
    }

Every mutation rewrites the whole document to a temp file in the same
directory and swaps it in with os.replace, so a crash leaves either the
old document or the new one, never a torn write. The secret must outlive
the process: losing it between commit and reveal strands the stake until
the match is cleared through recovery.

The file is re-read on every call, never cached, so several processes can
share it. Related mutations can be grouped with batch() to land in a
single write.
"""

from __future__ import annotations

import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Protocol, Union, runtime_checkable

from duel.models.secret import CommitmentSecret

MatchKey = Union[int, str]

# Key prefix for secrets whose submission is not confirmed yet.
PENDING_KEY = "pending"


def _key(match_key: MatchKey) -> str:
    return str(match_key)


@runtime_checkable
class SecretVault(Protocol):
    def store(self, match_key: MatchKey, secret: CommitmentSecret) -> None: ...

    def load(self, match_key: MatchKey) -> Optional[CommitmentSecret]: ...

    def clear(self, match_key: MatchKey) -> None: ...

    def keys(self) -> list[str]: ...


@runtime_checkable
class SessionStore(Protocol):
    def get(self) -> Optional[int]: ...

    def set(self, match_id: int) -> None: ...

    def clear(self) -> None: ...


class InMemorySecretVault:
    """Process-local vault. Does not survive a restart; for tests."""

    def __init__(self) -> None:
        self._secrets: dict[str, dict[str, Any]] = {}

    def store(self, match_key: MatchKey, secret: CommitmentSecret) -> None:
        self._secrets[_key(match_key)] = secret.to_dict()

    def load(self, match_key: MatchKey) -> Optional[CommitmentSecret]:
        data = self._secrets.get(_key(match_key))
        return CommitmentSecret.from_dict(data) if data is not None else None

    def clear(self, match_key: MatchKey) -> None:
        self._secrets.pop(_key(match_key), None)

    def keys(self) -> list[str]:
        return sorted(self._secrets)


class InMemorySessionStore:
    def __init__(self, match_id: Optional[int] = None) -> None:
        self._match_id = match_id

    def get(self) -> Optional[int]:
        return self._match_id

    def set(self, match_id: int) -> None:
        self._match_id = match_id

    def clear(self) -> None:
        self._match_id = None


class FileStateStore:
    """Durable SecretVault and SessionStore backed by one JSON file.

    Nothing is cached between calls: every read goes to disk and every
    mutation re-reads the document before applying its change, so two
    processes sharing the file do not overwrite each other's secrets.
    """

    def __init__(self, storage_path: Path) -> None:
        self._path = Path(storage_path)
        self._batch_doc: Optional[dict[str, Any]] = None
        self._read()

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def batch(self) -> Iterator[FileStateStore]:
        """Apply several mutations with a single write.

        The document is read once on entry and written once on a clean
        exit; an exception inside the block writes nothing.
        """
        if self._batch_doc is not None:
            yield self
            return
        self._batch_doc = self._read()
        try:
            yield self
            doc = self._batch_doc
        finally:
            self._batch_doc = None
        self._flush(doc)

    # -- SecretVault ------------------------------------------------------

    def store(self, match_key: MatchKey, secret: CommitmentSecret) -> None:
        with self._mutate() as doc:
            doc["secrets"][_key(match_key)] = secret.to_dict()

    def load(self, match_key: MatchKey) -> Optional[CommitmentSecret]:
        data = self._current()["secrets"].get(_key(match_key))
        if data is None:
            return None
        return CommitmentSecret.from_dict(data)

    def clear(self, match_key: Optional[MatchKey] = None) -> None:
        """Clear one secret, or the active session when called bare.

        The bare form is SessionStore.clear; the keyed form is
        SecretVault.clear.
        """
        with self._mutate() as doc:
            if match_key is None:
                doc["active_match_id"] = None
            else:
                doc["secrets"].pop(_key(match_key), None)

    def keys(self) -> list[str]:
        return sorted(self._current()["secrets"])

    # -- SessionStore -----------------------------------------------------

    def get(self) -> Optional[int]:
        value = self._current().get("active_match_id")
        return int(value) if value is not None else None

    def set(self, match_id: int) -> None:
        with self._mutate() as doc:
            doc["active_match_id"] = int(match_id)

    # -- internals --------------------------------------------------------

    def _current(self) -> dict[str, Any]:
        if self._batch_doc is not None:
            return self._batch_doc
        return self._read()

    @contextmanager
    def _mutate(self) -> Iterator[dict[str, Any]]:
        if self._batch_doc is not None:
            yield self._batch_doc
            return
        doc = self._read()
        yield doc
        self._flush(doc)

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {"active_match_id": None, "secrets": {}}
        raw = self._path.read_text(encoding="utf-8")
        data = json.loads(raw) if raw.strip() else {}
        if not isinstance(data, dict):
            raise ValueError(f"Corrupt local state file: {self._path}")
        data.setdefault("active_match_id", None)
        data.setdefault("secrets", {})
        return data

    def _flush(self, doc: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", dir=str(self._path.parent),
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(doc, f, sort_keys=True, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
