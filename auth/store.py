"""
auth/store.py -- SQLAlchemy Core persistence layer for identities and RBAC.

Pattern: Repository + Data Mapper.
AccessStore is the repository; _row_to_identity / _row_to_role /
_row_to_permission are the mappers. The gate (auth/authorization.py,
auth/twofactor.py) never touches SQL directly -- it calls the narrow lookup
methods below.

Many-to-many relationships are explicit edge tables:
  identity_roles   (identity_id, role_id)       -- composite primary key
  role_permissions (role_id, permission_id)     -- composite primary key
The composite keys make a duplicate edge an IntegrityError, which is how
concurrent double-assignments are detected.

Conventions:
  Lookups return None when nothing matches (soft-deleted identities included).
  Unique violations (email, role name, permission name) propagate as
  sqlalchemy.exc.IntegrityError; the caller decides what conflict that means.
  All queries use bound parameters. No f-strings in SQL.

IDs are ULID strings generated here on insert, so they sort by creation time.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from ulid import ULID

from auth.models import Identity, Permission, Role
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_identities = Table(
    "identities",
    _metadata,
    Column("id", String(26), primary_key=True),
    Column("email", String(100), nullable=False, unique=True),
    Column("name", String(100), nullable=False),
    Column("hashed_password", Text),
    Column("is_verified", Boolean, nullable=False, default=False),
    Column("twofa_secret", String(64)),
    Column("pending_twofa_secret", String(64)),
    Column("is_twofa_enabled", Boolean, nullable=False, default=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32), index=True),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", String(26), primary_key=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", String(26), primary_key=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
)

_identity_roles = Table(
    "identity_roles",
    _metadata,
    Column("identity_id", String(26), ForeignKey("identities.id"), primary_key=True),
    Column("role_id", String(26), ForeignKey("roles.id"), primary_key=True),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", String(26), ForeignKey("roles.id"), primary_key=True),
    Column("permission_id", String(26), ForeignKey("permissions.id"), primary_key=True),
)

# Columns save_identity() is allowed to write. id, email and created_at are
# fixed at creation; deleted_at only changes through soft_delete_identity().
_MUTABLE_IDENTITY_FIELDS = (
    "name",
    "hashed_password",
    "is_verified",
    "twofa_secret",
    "pending_twofa_secret",
    "is_twofa_enabled",
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(ULID())


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccessStore:
    """Repository for Identity, Role and Permission entities and their edges.

    Usage:
        store = AccessStore("sqlite:///:memory:")
        uid = store.create_identity(Identity(email="a@example.com", name="A"))
        role = store.create_role("admin")
        store.append_role_to_identity(uid, role.id)
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Identity queries
    # ------------------------------------------------------------------

    def create_identity(self, identity: Identity) -> str:
        """Insert a new identity and return its ULID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        identity_id = identity.id or _new_id()
        now = _now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                _identities.insert().values(
                    id=identity_id,
                    email=identity.email,
                    name=identity.name,
                    hashed_password=identity.hashed_password,
                    is_verified=identity.is_verified,
                    twofa_secret=identity.twofa_secret,
                    pending_twofa_secret=identity.pending_twofa_secret,
                    is_twofa_enabled=identity.is_twofa_enabled,
                    created_at=now,
                    updated_at=now,
                )
            )
        return identity_id

    def find_identity_by_id(self, identity_id: str) -> Identity | None:
        """Look up a live identity by primary key. Returns None if not found or soft-deleted."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _identities.select().where((_identities.c.id == identity_id) & _identities.c.deleted_at.is_(None))
            ).fetchone()
        return _row_to_identity(row) if row is not None else None

    def find_identity_by_email(self, email: str) -> Identity | None:
        """Look up a live identity by exact email. Returns None if not found or soft-deleted."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _identities.select().where((_identities.c.email == email) & _identities.c.deleted_at.is_(None))
            ).fetchone()
        return _row_to_identity(row) if row is not None else None

    def list_identities(self) -> list[Identity]:
        """Return all live identities, oldest first (ULID order)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _identities.select().where(_identities.c.deleted_at.is_(None)).order_by(_identities.c.id)
            ).fetchall()
        return [_row_to_identity(r) for r in rows]

    def save_identity(self, identity: Identity) -> bool:
        """Write the mutable fields of an existing identity back to the database.

        Returns True if a row was updated, False if the identity does not
        exist or has been soft-deleted.
        """
        return self._update_live_identity(
            identity.id, {field: getattr(identity, field) for field in _MUTABLE_IDENTITY_FIELDS}
        )

    def save_twofactor_state(
        self,
        identity_id: str,
        *,
        twofa_secret: str | None,
        pending_twofa_secret: str | None,
        is_twofa_enabled: bool,
    ) -> bool:
        """Write only the second-factor columns, leaving name and credentials alone."""
        return self._update_live_identity(
            identity_id,
            {
                "twofa_secret": twofa_secret,
                "pending_twofa_secret": pending_twofa_secret,
                "is_twofa_enabled": is_twofa_enabled,
            },
        )

    def mark_identity_verified(self, identity_id: str) -> bool:
        """Set is_verified. Returns False if the identity is missing or soft-deleted."""
        return self._update_live_identity(identity_id, {"is_verified": True})

    def _update_live_identity(self, identity_id: str, values: dict) -> bool:
        values = {**values, "updated_at": _now_iso()}
        with self.engine.begin() as conn:
            result = conn.execute(
                _identities.update()
                .where((_identities.c.id == identity_id) & _identities.c.deleted_at.is_(None))
                .values(**values)
            )
        return result.rowcount > 0

    def soft_delete_identity(self, identity_id: str) -> bool:
        """Stamp deleted_at. The row and its role edges are kept."""
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _identities.update()
                .where((_identities.c.id == identity_id) & _identities.c.deleted_at.is_(None))
                .values(deleted_at=now, updated_at=now)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Role / permission queries
    # ------------------------------------------------------------------

    def create_role(self, name: str) -> Role:
        """Insert a role. Raises IntegrityError if the name is taken."""
        role = Role(name=name, id=_new_id(), created_at=_now_iso())
        with self.engine.begin() as conn:
            conn.execute(_roles.insert().values(id=role.id, name=role.name, created_at=role.created_at))
        return role

    def create_permission(self, name: str) -> Permission:
        """Insert a permission. Raises IntegrityError if the name is taken."""
        permission = Permission(name=name, id=_new_id(), created_at=_now_iso())
        with self.engine.begin() as conn:
            conn.execute(
                _permissions.insert().values(id=permission.id, name=permission.name, created_at=permission.created_at)
            )
        return permission

    def find_role_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
        return _row_to_role(row) if row is not None else None

    def find_permission_by_name(self, name: str) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(_permissions.select().where(_permissions.c.name == name)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def list_roles(self) -> list[tuple[Role, list[Permission]]]:
        """Return every role with its permissions, roles ordered by name."""
        with self.engine.connect() as conn:
            roles = [_row_to_role(r) for r in conn.execute(_roles.select().order_by(_roles.c.name)).fetchall()]
            grants = self._permissions_by_role(conn, [role.id for role in roles])
        return [(role, grants.get(role.id, [])) for role in roles]

    def list_permissions(self) -> list[Permission]:
        with self.engine.connect() as conn:
            rows = conn.execute(_permissions.select().order_by(_permissions.c.name)).fetchall()
        return [_row_to_permission(r) for r in rows]

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def append_role_to_identity(self, identity_id: str, role_id: str) -> bool:
        """Add an identity->role edge. Returns False if the edge already existed."""
        try:
            with self.engine.begin() as conn:
                conn.execute(_identity_roles.insert().values(identity_id=identity_id, role_id=role_id))
        except IntegrityError:
            return False
        return True

    def append_permission_to_role(self, role_id: str, permission_id: str) -> bool:
        """Add a role->permission edge. Returns False if the edge already existed."""
        try:
            with self.engine.begin() as conn:
                conn.execute(_role_permissions.insert().values(role_id=role_id, permission_id=permission_id))
        except IntegrityError:
            return False
        return True

    def load_closure(self, identity_id: str) -> tuple[Identity, list[tuple[Role, list[Permission]]]] | None:
        """Fetch an identity, its roles and each role's permissions in one transaction.

        All three reads share a single connection/transaction so the caller
        sees one consistent snapshot, never a role list from before a write
        paired with permissions from after it.

        Returns None if the identity does not exist or is soft-deleted.
        """
        with self.engine.begin() as conn:
            row = conn.execute(
                _identities.select().where((_identities.c.id == identity_id) & _identities.c.deleted_at.is_(None))
            ).fetchone()
            if row is None:
                return None
            role_rows = conn.execute(
                select(_roles)
                .join(_identity_roles, _identity_roles.c.role_id == _roles.c.id)
                .where(_identity_roles.c.identity_id == identity_id)
                .order_by(_roles.c.name)
            ).fetchall()
            roles = [_row_to_role(r) for r in role_rows]
            grants = self._permissions_by_role(conn, [role.id for role in roles])
        return _row_to_identity(row), [(role, grants.get(role.id, [])) for role in roles]

    def close(self) -> None:
        self.engine.dispose()

    @staticmethod
    def _permissions_by_role(conn, role_ids: list[str]) -> dict[str, list[Permission]]:
        if not role_ids:
            return {}
        rows = conn.execute(
            select(_role_permissions.c.role_id, _permissions)
            .join(_permissions, _permissions.c.id == _role_permissions.c.permission_id)
            .where(_role_permissions.c.role_id.in_(role_ids))
            .order_by(_permissions.c.name)
        ).fetchall()
        grouped: dict[str, list[Permission]] = {}
        for r in rows:
            grouped.setdefault(r.role_id, []).append(_row_to_permission(r))
        return grouped


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        email=row.email,
        name=row.name,
        hashed_password=row.hashed_password,
        is_verified=bool(row.is_verified),
        twofa_secret=row.twofa_secret,
        pending_twofa_secret=row.pending_twofa_secret,
        is_twofa_enabled=bool(row.is_twofa_enabled),
        created_at=row.created_at,
        updated_at=row.updated_at,
        deleted_at=row.deleted_at,
    )


def _row_to_role(row) -> Role:
    return Role(id=row.id, name=row.name, created_at=row.created_at)


def _row_to_permission(row) -> Permission:
    return Permission(id=row.id, name=row.name, created_at=row.created_at)
