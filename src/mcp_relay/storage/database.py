"""SQLite-backed store for server definitions, profiles and settings."""

import json
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiosqlite
import structlog

from ..exceptions import ProfileNotFoundError, RelayError, ServerNotFoundError
from ..models import Profile, ServerDefinition, utc_now

logger = structlog.get_logger(__name__)

DEFAULT_PROFILE_ID = "default"
ACTIVE_PROFILE_KEY = "activeProfile"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS profiles (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS servers (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    command TEXT NOT NULL,
    args TEXT NOT NULL DEFAULT '[]',
    env TEXT NOT NULL DEFAULT '{}',
    secrets TEXT NOT NULL DEFAULT '[]',
    enabled INTEGER NOT NULL DEFAULT 0,
    category TEXT NOT NULL DEFAULT 'other',
    profile_id TEXT NOT NULL DEFAULT 'default' REFERENCES profiles(id),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_servers_profile ON servers(profile_id, enabled);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def slugify(name: str) -> str:
    """Lowercase ASCII alphanumerics; other runs collapse to one dash."""
    out: List[str] = []
    prev_dash = False
    for ch in name:
        if ch.isascii() and ch.isalnum():
            out.append(ch.lower())
            prev_dash = False
        elif not prev_dash:
            out.append("-")
            prev_dash = True
    return "".join(out).strip("-")


def _load_json(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        value = json.loads(raw)
    except ValueError:
        return default
    return value if isinstance(value, type(default)) else default


def _row_to_server(row: aiosqlite.Row) -> ServerDefinition:
    return ServerDefinition(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        command=row["command"],
        args=[str(a) for a in _load_json(row["args"], [])],
        env={str(k): str(v) for k, v in _load_json(row["env"], {}).items()},
        secrets=[str(s) for s in _load_json(row["secrets"], [])],
        enabled=bool(row["enabled"]),
        category=row["category"],
        profile_id=row["profile_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_profile(row: aiosqlite.Row) -> Profile:
    return Profile(
        id=row["id"],
        name=row["name"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class DefinitionStore:
    """Persisted server definitions and profiles.

    Every call opens its own short-lived connection, so the store can be
    shared freely between tasks.
    """

    def __init__(self, database_path: Union[str, Path]):
        self.database_path = Path(database_path)

    async def initialize(self) -> None:
        """Create tables and the default profile if missing."""
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        now = utc_now()
        async with aiosqlite.connect(self.database_path) as db:
            await db.executescript(SCHEMA_SQL)
            await db.execute(
                "INSERT OR IGNORE INTO profiles (id, name, created_at, updated_at) "
                "VALUES (?, ?, ?, ?)",
                (DEFAULT_PROFILE_ID, "Default", now, now),
            )
            await db.execute(
                "INSERT OR IGNORE INTO settings (key, value, updated_at) VALUES (?, ?, ?)",
                (ACTIVE_PROFILE_KEY, DEFAULT_PROFILE_ID, now),
            )
            await db.commit()
        logger.debug("Definition store ready", path=str(self.database_path))

    async def _fetchall(self, sql: str, params: tuple = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.database_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(sql, params) as cursor:
                return list(await cursor.fetchall())

    async def _fetchone(self, sql: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
        rows = await self._fetchall(sql, params)
        return rows[0] if rows else None

    async def _execute(self, sql: str, params: tuple = ()) -> int:
        async with aiosqlite.connect(self.database_path) as db:
            cursor = await db.execute(sql, params)
            await db.commit()
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Servers
    # ------------------------------------------------------------------

    async def list_servers(self, profile_id: Optional[str] = None) -> List[ServerDefinition]:
        if profile_id is None:
            rows = await self._fetchall("SELECT * FROM servers ORDER BY name")
        else:
            rows = await self._fetchall(
                "SELECT * FROM servers WHERE profile_id = ? ORDER BY name", (profile_id,)
            )
        return [_row_to_server(row) for row in rows]

    async def list_enabled_servers(self, profile_id: str) -> List[ServerDefinition]:
        rows = await self._fetchall(
            "SELECT * FROM servers WHERE enabled = 1 AND profile_id = ? ORDER BY name",
            (profile_id,),
        )
        return [_row_to_server(row) for row in rows]

    async def get_server(self, server_id: str) -> Optional[ServerDefinition]:
        row = await self._fetchone("SELECT * FROM servers WHERE id = ?", (server_id,))
        return _row_to_server(row) if row else None

    async def create_server(
        self,
        name: str,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        secrets: Optional[List[str]] = None,
        profile_id: Optional[str] = None,
        description: Optional[str] = None,
        category: str = "other",
        enabled: bool = False,
    ) -> ServerDefinition:
        """Insert a new definition; it joins the active profile by default."""
        if not name.strip() or not command.strip():
            raise RelayError("Server name and command are required")

        if profile_id is None:
            profile_id = await self.get_active_profile()
        elif await self.get_profile(profile_id) is None:
            raise ProfileNotFoundError(profile_id)

        now = utc_now()
        definition = ServerDefinition(
            id=str(uuid.uuid4()),
            name=name.strip(),
            command=command.strip(),
            args=list(args or []),
            env=dict(env or {}),
            secrets=list(secrets or []),
            enabled=enabled,
            profile_id=profile_id,
            description=description,
            category=category,
            created_at=now,
            updated_at=now,
        )
        await self._execute(
            "INSERT INTO servers (id, name, description, command, args, env, secrets, "
            "enabled, category, profile_id, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                definition.id,
                definition.name,
                definition.description,
                definition.command,
                json.dumps(definition.args),
                json.dumps(definition.env),
                json.dumps(definition.secrets),
                int(definition.enabled),
                definition.category,
                definition.profile_id,
                definition.created_at,
                definition.updated_at,
            ),
        )
        logger.info("Server definition created", server_id=definition.id, name=definition.name)
        return definition

    async def update_server(self, definition: ServerDefinition) -> ServerDefinition:
        definition.updated_at = utc_now()
        changed = await self._execute(
            "UPDATE servers SET name = ?, description = ?, command = ?, args = ?, env = ?, "
            "secrets = ?, enabled = ?, category = ?, profile_id = ?, updated_at = ? "
            "WHERE id = ?",
            (
                definition.name,
                definition.description,
                definition.command,
                json.dumps(definition.args),
                json.dumps(definition.env),
                json.dumps(definition.secrets),
                int(definition.enabled),
                definition.category,
                definition.profile_id,
                definition.updated_at,
                definition.id,
            ),
        )
        if not changed:
            raise ServerNotFoundError(definition.id)
        return definition

    async def set_enabled(self, server_id: str, enabled: bool) -> ServerDefinition:
        changed = await self._execute(
            "UPDATE servers SET enabled = ?, updated_at = ? WHERE id = ?",
            (int(enabled), utc_now(), server_id),
        )
        if not changed:
            raise ServerNotFoundError(server_id)
        definition = await self.get_server(server_id)
        assert definition is not None
        return definition

    async def delete_server(self, server_id: str) -> bool:
        return await self._execute("DELETE FROM servers WHERE id = ?", (server_id,)) > 0

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def list_profiles(self) -> List[Profile]:
        rows = await self._fetchall(
            "SELECT * FROM profiles "
            "ORDER BY CASE WHEN id = 'default' THEN 0 ELSE 1 END, name"
        )
        return [_row_to_profile(row) for row in rows]

    async def get_profile(self, profile_id: str) -> Optional[Profile]:
        row = await self._fetchone("SELECT * FROM profiles WHERE id = ?", (profile_id,))
        return _row_to_profile(row) if row else None

    async def create_profile(self, name: str) -> Profile:
        """Create a profile whose id is a unique slug of its name."""
        trimmed = name.strip()
        if not trimmed:
            raise RelayError("Profile name is required")

        base_id = slugify(trimmed) or f"profile-{uuid.uuid4().hex}"
        candidate = base_id
        suffix = 1
        while await self.get_profile(candidate) is not None:
            suffix += 1
            candidate = f"{base_id}-{suffix}"

        now = utc_now()
        await self._execute(
            "INSERT INTO profiles (id, name, created_at, updated_at) VALUES (?, ?, ?, ?)",
            (candidate, trimmed, now, now),
        )
        logger.info("Profile created", profile_id=candidate)
        return Profile(id=candidate, name=trimmed, created_at=now, updated_at=now)

    async def get_active_profile(self) -> str:
        row = await self._fetchone(
            "SELECT value FROM settings WHERE key = ?", (ACTIVE_PROFILE_KEY,)
        )
        return row["value"] if row else DEFAULT_PROFILE_ID

    async def set_active_profile(self, profile_id: str) -> None:
        if await self.get_profile(profile_id) is None:
            raise ProfileNotFoundError(profile_id)
        await self._execute(
            "INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
            "updated_at = excluded.updated_at",
            (ACTIVE_PROFILE_KEY, profile_id, utc_now()),
        )
