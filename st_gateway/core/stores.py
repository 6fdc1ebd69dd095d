"""Read-only views of the collaborator stores the proxy consults.

The gateway's storage layer owns users, characters, world info and secrets;
the proxy only needs these three lookups. ``InMemoryStore`` backs tests and
single-process deployments and can be seeded from a JSON snapshot.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CharacterCard:
    name: str
    description: str = ""
    personality: str = ""
    scenario: str = ""
    opening_line: str = ""

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "CharacterCard":
        return cls(
            name=str(record.get("name") or ""),
            description=str(record.get("description") or ""),
            personality=str(record.get("personality") or ""),
            scenario=str(record.get("scenario") or ""),
            opening_line=str(record.get("first_mes") or record.get("opening_line") or ""),
        )


class SecretStore(Protocol):
    def find(self, user_id: str, key: str) -> str | None: ...


class CharacterStore(Protocol):
    def find_by_name(self, user_id: str, name: str) -> CharacterCard | None: ...


class WorldInfoStore(Protocol):
    def list(self, user_id: str) -> list[Any]: ...


class GatewayStore(SecretStore, CharacterStore, WorldInfoStore, Protocol):
    pass


@dataclass
class InMemoryStore:
    secrets: dict[str, dict[str, list[dict[str, Any]]]] = field(default_factory=dict)
    characters: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    world_info: dict[str, list[Any]] = field(default_factory=dict)

    def find(self, user_id: str, key: str) -> str | None:
        entries = self.secrets.get(user_id, {}).get(key) or []
        if not entries:
            return None

        entry = next((item for item in entries if item.get("active")), entries[0])
        value = entry.get("value")
        return str(value) if value else None

    def find_by_name(self, user_id: str, name: str) -> CharacterCard | None:
        wanted = name.strip().lower()
        for record in self.characters.get(user_id, []):
            if str(record.get("name") or "").strip().lower() == wanted:
                return CharacterCard.from_record(record)
        return None

    def list(self, user_id: str) -> list[Any]:
        return list(self.world_info.get(user_id, []))


def load_store(path: str | None) -> InMemoryStore:
    if not path:
        return InMemoryStore()

    snapshot_path = Path(path)
    if not snapshot_path.exists():
        logger.warning("Store snapshot %s does not exist; starting empty", snapshot_path)
        return InMemoryStore()

    data = json.loads(snapshot_path.read_text(encoding="utf-8"))
    return InMemoryStore(
        secrets=dict(data.get("secrets") or {}),
        characters=dict(data.get("characters") or {}),
        world_info=dict(data.get("worldinfo") or data.get("world_info") or {}),
    )
