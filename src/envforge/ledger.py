"""Deploy ledger - persistent record of services, builds, deployables and deploys.

The DeployLedger is the single source of truth for Deploy state.  Every
status change goes through :meth:`DeployLedger.patch_deploy`, which
applies the update only when the caller's attempt token still matches the
stored ``run_uuid``.  The check happens inside the UPDATE itself so a
superseded attempt can never overwrite a newer one.

Architecture:

    .. code-block:: text

        DeployLedger
        ┌───────────────────────────────────────────────────────────┐
        │  TEMPLATES             RESOLVED                            │
        │  ─────────             ────────                            │
        │  save_service()        upsert_deployable()                 │
        │  get_service()         list_deployables()                  │
        │  list_dependents()     create_deploy() / find_deploy()     │
        │  save_build()          update_deploy()      (identity)     │
        │  get_build()           start_attempt()      (new run_uuid) │
        │                        patch_deploy()       (token-guarded)│
        ├───────────────────────────────────────────────────────────┤
        │  Tables: ef_services, ef_builds, ef_deployables, ef_deploys│
        └───────────────────────────────────────────────────────────┘

        patch_deploy(uuid, run_uuid, fields):
            UPDATE ef_deploys SET ... WHERE uuid = ? AND run_uuid = ?
            rowcount == 0  →  stale attempt, patch dropped

Example:
    >>> ledger = DeployLedger(conn)
    >>> run_uuid = ledger.start_attempt("api-b1")
    >>> ledger.patch_deploy("api-b1", run_uuid, {"status": DeployStatus.CLONING})
    True
"""

import json
import uuid
from dataclasses import asdict
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from envforge.models import (
    Build,
    Deploy,
    Deployable,
    DeployStatus,
    DeployType,
    EnvironmentTemplate,
    PullRequestContext,
    ServiceOverride,
    ServiceTemplate,
)


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


_DEPLOY_COLUMNS = (
    "id",
    "uuid",
    "build_id",
    "build_uuid",
    "name",
    "status",
    "status_message",
    "active",
    "deployable_id",
    "service_id",
    "repository",
    "run_uuid",
    "branch_name",
    "tag",
    "sha",
    "env",
    "docker_image",
    "init_docker_image",
    "public_url",
    "internal_hostname",
    "build_output",
    "build_logs_url",
    "cname",
    "created_at",
    "updated_at",
)

# Columns a caller may write; identity columns (id, uuid, build_id) are fixed.
PATCHABLE_DEPLOY_FIELDS = frozenset(_DEPLOY_COLUMNS) - {"id", "uuid", "build_id", "build_uuid", "created_at"}

_SERVICE_COLUMNS = ("id", "name", "type", "repository", "branch_name", "depends_on_service_id")
_DEPLOYABLE_COLUMNS = ("id", "build_id", "build_uuid", "name", "type", "service_id", "active", "status")


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


class DeployLedger:
    """CRUD over the envforge tables.

    Works with any DB-API connection using ``?`` placeholders (sqlite3).
    """

    def __init__(self, conn):
        """Initialize with a database connection.

        Args:
            conn: Database connection (sqlite3.Connection)
        """
        self._conn = conn

    # =========================================================================
    # SERVICE TEMPLATES
    # =========================================================================

    def save_service(self, service: ServiceTemplate) -> ServiceTemplate:
        """Insert or replace a DB-defined service template."""
        extra = {k: v for k, v in asdict(service).items() if k not in _SERVICE_COLUMNS}
        cursor = self._conn.cursor()
        cursor.execute(
            """
            INSERT OR REPLACE INTO ef_services (
                id, name, type, repository, branch_name, depends_on_service_id, attributes
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                service.id,
                service.name,
                service.type.value,
                service.repository,
                service.branch_name,
                service.depends_on_service_id,
                json.dumps(extra, sort_keys=True),
            ),
        )
        self._conn.commit()
        return service

    def get_service(self, service_id: int) -> ServiceTemplate | None:
        cursor = self._conn.cursor()
        cursor.execute(
            f"SELECT {', '.join(_SERVICE_COLUMNS)}, attributes FROM ef_services WHERE id = ?",
            (service_id,),
        )
        row = cursor.fetchone()
        return self._row_to_service(row) if row else None

    def list_dependents(self, service_id: int) -> list[ServiceTemplate]:
        """Services whose ``depends_on_service_id`` points at *service_id*."""
        cursor = self._conn.cursor()
        cursor.execute(
            f"SELECT {', '.join(_SERVICE_COLUMNS)}, attributes FROM ef_services "
            "WHERE depends_on_service_id = ? ORDER BY id",
            (service_id,),
        )
        return [self._row_to_service(row) for row in cursor.fetchall()]

    # =========================================================================
    # BUILDS
    # =========================================================================

    def save_build(self, build: Build) -> Build:
        cursor = self._conn.cursor()
        cursor.execute(
            """
            INSERT OR REPLACE INTO ef_builds (
                id, uuid, repository, branch_name, pr_number,
                environment, overrides, comment_runtime_env
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                build.id,
                build.uuid,
                build.pull_request.repository,
                build.pull_request.branch_name,
                build.pull_request.number,
                json.dumps(asdict(build.environment)),
                json.dumps({name: asdict(o) for name, o in build.overrides.items()}),
                json.dumps(build.comment_runtime_env),
            ),
        )
        self._conn.commit()
        return build

    def get_build(self, build_uuid: str) -> Build | None:
        cursor = self._conn.cursor()
        cursor.execute(
            """
            SELECT id, uuid, repository, branch_name, pr_number,
                   environment, overrides, comment_runtime_env
            FROM ef_builds WHERE uuid = ?
            """,
            (build_uuid,),
        )
        row = cursor.fetchone()
        if not row:
            return None
        env = json.loads(row[5])
        return Build(
            id=row[0],
            uuid=row[1],
            pull_request=PullRequestContext(repository=row[2], branch_name=row[3], number=row[4]),
            environment=EnvironmentTemplate(
                name=env["name"],
                default_service_ids=tuple(env.get("default_service_ids", ())),
                optional_service_ids=tuple(env.get("optional_service_ids", ())),
                classic_mode_only=env.get("classic_mode_only", False),
            ),
            overrides={name: ServiceOverride(**o) for name, o in json.loads(row[6] or "{}").items()},
            comment_runtime_env=json.loads(row[7] or "{}"),
        )

    # =========================================================================
    # DEPLOYABLES
    # =========================================================================

    def find_deployable(self, build_id: int, name: str) -> Deployable | None:
        cursor = self._conn.cursor()
        cursor.execute(
            f"SELECT {', '.join(_DEPLOYABLE_COLUMNS)}, attributes FROM ef_deployables "
            "WHERE build_id = ? AND name = ?",
            (build_id, name),
        )
        row = cursor.fetchone()
        return self._row_to_deployable(row) if row else None

    def upsert_deployable(self, deployable: Deployable) -> Deployable:
        """Create or patch the Deployable identified by ``(build_id, name)``.

        Sets ``deployable.id`` and returns it.
        """
        extra = {k: v for k, v in asdict(deployable).items() if k not in _DEPLOYABLE_COLUMNS}
        values = (
            deployable.build_uuid,
            deployable.type.value,
            deployable.service_id,
            int(deployable.active),
            deployable.status.value if deployable.status else None,
            json.dumps(extra, sort_keys=True),
        )
        existing = self.find_deployable(deployable.build_id, deployable.name)
        cursor = self._conn.cursor()
        if existing is not None:
            cursor.execute(
                """
                UPDATE ef_deployables
                SET build_uuid = ?, type = ?, service_id = ?, active = ?, status = ?, attributes = ?
                WHERE id = ?
                """,
                (*values, existing.id),
            )
            deployable.id = existing.id
        else:
            cursor.execute(
                """
                INSERT INTO ef_deployables (
                    build_uuid, type, service_id, active, status, attributes, build_id, name
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (*values, deployable.build_id, deployable.name),
            )
            deployable.id = cursor.lastrowid
        self._conn.commit()
        return deployable

    def list_deployables(self, build_id: int) -> list[Deployable]:
        cursor = self._conn.cursor()
        cursor.execute(
            f"SELECT {', '.join(_DEPLOYABLE_COLUMNS)}, attributes FROM ef_deployables "
            "WHERE build_id = ? ORDER BY id",
            (build_id,),
        )
        return [self._row_to_deployable(row) for row in cursor.fetchall()]

    # =========================================================================
    # DEPLOYS
    # =========================================================================

    def create_deploy(self, deploy: Deploy) -> Deploy:
        """Insert a new Deploy row and set ``deploy.id``."""
        record = {col: getattr(deploy, col) for col in _DEPLOY_COLUMNS if col != "id"}
        cursor = self._conn.cursor()
        cursor.execute(
            f"INSERT INTO ef_deploys ({', '.join(record)}) VALUES ({', '.join('?' for _ in record)})",
            tuple(_encode(v) for v in record.values()),
        )
        self._conn.commit()
        deploy.id = cursor.lastrowid
        return deploy

    def get_deploy(self, uuid_: str) -> Deploy | None:
        cursor = self._conn.cursor()
        cursor.execute(
            f"SELECT {', '.join(_DEPLOY_COLUMNS)} FROM ef_deploys WHERE uuid = ?",
            (uuid_,),
        )
        row = cursor.fetchone()
        return self._row_to_deploy(row) if row else None

    def find_deploy(
        self,
        build_id: int,
        *,
        service_id: int | None = None,
        deployable_id: int | None = None,
    ) -> Deploy | None:
        """Find a build's Deploy by service id, falling back to deployable id."""
        cursor = self._conn.cursor()
        if service_id is not None:
            cursor.execute(
                f"SELECT {', '.join(_DEPLOY_COLUMNS)} FROM ef_deploys WHERE build_id = ? AND service_id = ?",
                (build_id, service_id),
            )
            row = cursor.fetchone()
            if row:
                return self._row_to_deploy(row)
        if deployable_id is not None:
            cursor.execute(
                f"SELECT {', '.join(_DEPLOY_COLUMNS)} FROM ef_deploys WHERE build_id = ? AND deployable_id = ?",
                (build_id, deployable_id),
            )
            row = cursor.fetchone()
            if row:
                return self._row_to_deploy(row)
        return None

    def list_deploys(self, build_id: int) -> list[Deploy]:
        cursor = self._conn.cursor()
        cursor.execute(
            f"SELECT {', '.join(_DEPLOY_COLUMNS)} FROM ef_deploys WHERE build_id = ? ORDER BY id",
            (build_id,),
        )
        return [self._row_to_deploy(row) for row in cursor.fetchall()]

    def count_deploys(self, build_id: int) -> int:
        cursor = self._conn.cursor()
        cursor.execute("SELECT COUNT(*) FROM ef_deploys WHERE build_id = ?", (build_id,))
        return cursor.fetchone()[0]

    def update_deploy(self, uuid_: str, fields: dict[str, Any]) -> None:
        """Unconditional patch of non-status fields (registrar identity updates)."""
        self._check_fields(fields)
        if "status" in fields or "run_uuid" in fields:
            raise ValueError("status and run_uuid may only change through patch_deploy/start_attempt")
        assignments, params = self._assignments(fields)
        cursor = self._conn.cursor()
        cursor.execute(
            f"UPDATE ef_deploys SET {assignments} WHERE uuid = ?",
            (*params, uuid_),
        )
        self._conn.commit()

    def start_attempt(self, uuid_: str) -> str:
        """Begin a new attempt: issue a fresh ``run_uuid`` and reset to QUEUED.

        The previous attempt's ``build_output`` and ``build_logs_url`` are
        cleared, so sibling waits only see output of the new attempt.  Any
        patch still carrying the previous token is dropped from here on.
        """
        run_uuid = uuid.uuid4().hex
        cursor = self._conn.cursor()
        cursor.execute(
            """
            UPDATE ef_deploys
            SET run_uuid = ?, status = ?, status_message = NULL,
                build_output = NULL, build_logs_url = NULL, updated_at = ?
            WHERE uuid = ?
            """,
            (run_uuid, DeployStatus.QUEUED.value, utcnow().isoformat(), uuid_),
        )
        self._conn.commit()
        if cursor.rowcount == 0:
            raise KeyError(f"No deploy with uuid {uuid_!r}")
        return run_uuid

    def patch_deploy(self, uuid_: str, run_uuid: str, fields: dict[str, Any]) -> bool:
        """Apply *fields* only if *run_uuid* is still the Deploy's current token.

        Returns:
            True if the row was updated, False if the attempt is stale.
        """
        self._check_fields(fields)
        assignments, params = self._assignments(fields)
        cursor = self._conn.cursor()
        cursor.execute(
            f"UPDATE ef_deploys SET {assignments} WHERE uuid = ? AND run_uuid = ?",
            (*params, uuid_, run_uuid),
        )
        self._conn.commit()
        return cursor.rowcount == 1

    def get_build_output(self, uuid_: str) -> str | None:
        cursor = self._conn.cursor()
        cursor.execute("SELECT build_output FROM ef_deploys WHERE uuid = ?", (uuid_,))
        row = cursor.fetchone()
        return row[0] if row else None

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _check_fields(fields: dict[str, Any]) -> None:
        unknown = set(fields) - PATCHABLE_DEPLOY_FIELDS
        if unknown:
            raise ValueError(f"Unknown or read-only deploy fields: {sorted(unknown)}")

    @staticmethod
    def _assignments(fields: dict[str, Any]) -> tuple[str, list[Any]]:
        record = dict(fields)
        record.setdefault("updated_at", utcnow())
        assignments = ", ".join(f"{col} = ?" for col in record)
        return assignments, [_encode(v) for v in record.values()]

    def _row_to_service(self, row: tuple) -> ServiceTemplate:
        extra = json.loads(row[6]) if row[6] else {}
        return ServiceTemplate(
            id=row[0],
            name=row[1],
            type=DeployType(row[2]),
            repository=row[3],
            branch_name=row[4],
            depends_on_service_id=row[5],
            **extra,
        )

    def _row_to_deployable(self, row: tuple) -> Deployable:
        extra = json.loads(row[8]) if row[8] else {}
        return Deployable(
            id=row[0],
            build_id=row[1],
            build_uuid=row[2],
            name=row[3],
            type=DeployType(row[4]),
            service_id=row[5],
            active=bool(row[6]),
            status=DeployStatus(row[7]) if row[7] else None,
            **extra,
        )

    def _row_to_deploy(self, row: tuple) -> Deploy:
        data = dict(zip(_DEPLOY_COLUMNS, row))
        data["status"] = DeployStatus(data["status"])
        data["active"] = bool(data["active"])
        data["env"] = json.loads(data["env"]) if data["env"] else {}
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        data["updated_at"] = datetime.fromisoformat(data["updated_at"])
        return Deploy(**data)
