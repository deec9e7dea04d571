from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from schoolauth.logging import get_logger
from schoolauth.storage.errors import ConstraintViolation
from schoolauth.storage.models import (
    HIGH_RISK_SEVERITIES,
    MUTABLE_POLICY_FIELDS,
    MUTABLE_USER_FIELDS,
    AuditLog,
    PasswordPolicy,
    SecurityEvent,
    Session,
    User,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'student',
        department TEXT NOT NULL DEFAULT 'general',
        permissions TEXT[] NOT NULL DEFAULT '{}',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        must_change_password BOOLEAN NOT NULL DEFAULT FALSE,
        login_attempts INTEGER NOT NULL DEFAULT 0,
        lock_until TIMESTAMPTZ,
        last_login TIMESTAMPTZ,
        password_changed_at TIMESTAMPTZ,
        password_history JSONB NOT NULL DEFAULT '[]',
        password_reset_token TEXT,
        password_reset_expires TIMESTAMPTZ,
        first_name TEXT,
        last_name TEXT,
        phone TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        ip_address TEXT,
        user_agent TEXT,
        device_info TEXT NOT NULL DEFAULT 'Unknown',
        department TEXT,
        role TEXT,
        refresh_token_hash TEXT,
        login_time TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_activity TIMESTAMPTZ NOT NULL DEFAULT now(),
        logout_time TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_active ON auth_session (user_id, is_active)",
    "CREATE INDEX IF NOT EXISTS auth_session_token ON auth_session (token)",
    "CREATE INDEX IF NOT EXISTS auth_session_expires ON auth_session (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS password_policy (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        description TEXT,
        min_length INTEGER NOT NULL DEFAULT 8,
        max_length INTEGER NOT NULL DEFAULT 128,
        require_uppercase BOOLEAN NOT NULL DEFAULT TRUE,
        require_lowercase BOOLEAN NOT NULL DEFAULT TRUE,
        require_numbers BOOLEAN NOT NULL DEFAULT TRUE,
        require_special_chars BOOLEAN NOT NULL DEFAULT TRUE,
        prevent_common_passwords BOOLEAN NOT NULL DEFAULT TRUE,
        prevent_sequential_chars BOOLEAN NOT NULL DEFAULT TRUE,
        prevent_repeated_chars BOOLEAN NOT NULL DEFAULT TRUE,
        max_repeated_chars INTEGER NOT NULL DEFAULT 3,
        prevent_personal_info BOOLEAN NOT NULL DEFAULT TRUE,
        password_history INTEGER NOT NULL DEFAULT 5,
        expiry_days INTEGER NOT NULL DEFAULT 90,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        applicable_roles TEXT[] NOT NULL DEFAULT '{}',
        created_by UUID,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id UUID PRIMARY KEY,
        user_id UUID,
        action TEXT NOT NULL,
        resource TEXT NOT NULL,
        resource_id TEXT,
        resource_model TEXT,
        details JSONB,
        ip_address TEXT,
        user_agent TEXT,
        success BOOLEAN NOT NULL DEFAULT TRUE,
        error_message TEXT,
        department TEXT,
        role TEXT,
        timestamp TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS security_event (
        id UUID PRIMARY KEY,
        type TEXT NOT NULL,
        severity TEXT NOT NULL,
        risk_score INTEGER NOT NULL,
        user_id UUID,
        session_id TEXT,
        ip_address TEXT,
        user_agent TEXT,
        details JSONB,
        alert_sent BOOLEAN NOT NULL DEFAULT FALSE,
        timestamp TIMESTAMPTZ NOT NULL DEFAULT now(),
        is_resolved BOOLEAN NOT NULL DEFAULT FALSE,
        resolved_at TIMESTAMPTZ,
        resolved_by UUID,
        actions JSONB NOT NULL DEFAULT '[]'
    )
    """,
    "CREATE INDEX IF NOT EXISTS security_event_severity ON security_event (severity, timestamp)",
)

_POLICY_COLUMNS = (
    "description",
    "min_length",
    "max_length",
    "require_uppercase",
    "require_lowercase",
    "require_numbers",
    "require_special_chars",
    "prevent_common_passwords",
    "prevent_sequential_chars",
    "prevent_repeated_chars",
    "max_repeated_chars",
    "prevent_personal_info",
    "password_history",
    "expiry_days",
    "is_active",
    "applicable_roles",
    "created_by",
)


def _json_value(raw: Any) -> Any:
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return None
    return raw


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed credential, session and audit store.

    Session mutations are single ``UPDATE`` statements so concurrent requests
    touching the same session row never lose each other's writes.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    # users
    def _row_to_user(self, row: dict) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            role=row.get("role", "student"),
            department=row.get("department", "general"),
            permissions=list(row.get("permissions") or []),
            is_active=row.get("is_active", True),
            must_change_password=row.get("must_change_password", False),
            login_attempts=row.get("login_attempts") or 0,
            lock_until=row.get("lock_until"),
            last_login=row.get("last_login"),
            password_changed_at=row.get("password_changed_at"),
            password_history=list(_json_value(row.get("password_history")) or []),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires=row.get("password_reset_expires"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            phone=row.get("phone"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def create_user(
        self,
        username: str,
        email: str,
        *,
        role: str = "student",
        department: str = "general",
        permissions: Optional[List[str]] = None,
        is_active: bool = True,
        must_change_password: bool = False,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, role, department, permissions,
                        is_active, must_change_password, first_name, last_name, phone)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        username.lower(),
                        email.lower(),
                        role,
                        department,
                        list(permissions or []),
                        is_active,
                        must_change_password,
                        first_name,
                        last_name,
                        phone,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            field = "email" if "email" in constraint else "username"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row)

    def _fetch_user(self, clause: str, value: Any) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {clause} = %s", (value,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        return self._fetch_user("id", user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user("username", username.lower())

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email", email.lower())

    def get_user_by_reset_token(self, token_hash: str, now: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM app_user
                WHERE password_reset_token = %s AND password_reset_expires > %s
                """,
                (token_hash, now),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, role: Optional[str] = None, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            if role:
                rows = conn.execute(
                    "SELECT * FROM app_user WHERE role = %s ORDER BY created_at DESC LIMIT %s",
                    (role, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        if fields.get("email"):
            fields["email"] = fields["email"].lower()
        if "password_history" in fields:
            fields["password_history"] = json.dumps(list(fields["password_history"] or []))
        if "permissions" in fields:
            fields["permissions"] = list(fields["permissions"] or [])
        assignments = ", ".join(f"{name} = %s" for name in fields)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    (*fields.values(), user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        user = self.get_user(user_id)
        if not user:
            return False
        if user.role == "super_admin":
            raise ConstraintViolation(
                "super admin accounts cannot be deleted", {"user_id": user_id}
            )
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # sessions
    def _row_to_session(self, row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row.get("token"),
            expires_at=row["expires_at"],
            is_active=row.get("is_active", True),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            device_info=row.get("device_info") or "Unknown",
            department=row.get("department"),
            role=row.get("role"),
            refresh_token_hash=row.get("refresh_token_hash"),
            login_time=row.get("login_time") or utcnow(),
            last_activity=row.get("last_activity") or utcnow(),
            logout_time=row.get("logout_time"),
        )

    def create_session(
        self,
        user_id: str,
        token: Optional[str],
        *,
        ttl_days: int = 7,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_info: str = "Unknown",
        department: Optional[str] = None,
        role: Optional[str] = None,
    ) -> Session:
        sess = Session.new(
            user_id,
            token,
            ttl_days,
            ip_address=ip_address,
            user_agent=user_agent,
            device_info=device_info,
            department=department,
            role=role,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, token, expires_at, is_active, ip_address,
                        user_agent, device_info, department, role, login_time, last_activity)
                    VALUES (%s, %s, %s, %s, TRUE, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.token,
                        sess.expires_at,
                        ip_address,
                        user_agent,
                        device_info,
                        department,
                        role,
                        sess.login_time,
                        sess.last_activity,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def find_active_session_by_token(self, token: str, now: datetime) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE token = %s AND is_active AND expires_at > %s
                ORDER BY last_activity DESC LIMIT 1
                """,
                (token, now),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_sessions(
        self,
        *,
        user_id: Optional[str] = None,
        active_only: bool = True,
        now: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Session]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id:
            clauses.append("user_id = %s")
            params.append(user_id)
        if active_only:
            clauses.append("is_active AND expires_at > %s")
            params.append(now or utcnow())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = f"SELECT * FROM auth_session {where} ORDER BY last_activity DESC"
        if limit:
            query += " LIMIT %s"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_session(row) for row in rows]

    def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET last_activity = %s WHERE id = %s",
                (at, session_id),
            )
            return result.rowcount > 0

    def deactivate_session(self, session_id: str, at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE, logout_time = %s
                WHERE id = %s AND is_active
                """,
                (at, session_id),
            )
            return result.rowcount > 0

    def deactivate_user_sessions(
        self, user_id: str, at: datetime, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE, logout_time = %s
                WHERE user_id = %s AND is_active AND (%s::text IS NULL OR id <> %s)
                """,
                (at, user_id, except_session_id, except_session_id),
            )
            return result.rowcount

    def deactivate_expired_sessions(self, at: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE, logout_time = %s
                WHERE is_active AND expires_at < %s
                """,
                (at, at),
            )
            return result.rowcount

    def set_session_refresh_hash(self, session_id: str, refresh_token_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET refresh_token_hash = %s WHERE id = %s",
                (refresh_token_hash, session_id),
            )
            return result.rowcount > 0

    def rotate_session_refresh_hash(
        self, session_id: str, expected_hash: str, new_hash: str, now: datetime
    ) -> Optional[Session]:
        """Swap the refresh hash in one conditional UPDATE; None when no row matched."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET refresh_token_hash = %s
                WHERE id = %s AND refresh_token_hash = %s AND is_active AND expires_at > %s
                RETURNING *
                """,
                (new_hash, session_id, expected_hash, now),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def set_session_token(self, session_id: str, token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET token = %s WHERE id = %s", (token, session_id)
            )
            return result.rowcount > 0

    def session_stats(self, now: datetime) -> Dict[str, Any]:
        with self._connect() as conn:
            totals = conn.execute(
                """
                SELECT
                    COUNT(*) FILTER (WHERE is_active AND expires_at > %s) AS total_active,
                    COUNT(*) FILTER (WHERE NOT is_active AND expires_at < %s) AS total_expired
                FROM auth_session
                """,
                (now, now),
            ).fetchone()
            rows = conn.execute(
                """
                SELECT COALESCE(department, 'unknown') AS department, COUNT(*) AS count
                FROM auth_session
                WHERE is_active AND expires_at > %s
                GROUP BY 1 ORDER BY count DESC
                """,
                (now,),
            ).fetchall()
        return {
            "total_active": int(totals["total_active"] or 0),
            "total_expired": int(totals["total_expired"] or 0),
            "department_stats": [
                {"department": row["department"], "count": int(row["count"])} for row in rows
            ],
        }

    # password policies
    def _row_to_policy(self, row: dict) -> PasswordPolicy:
        values = {name: row.get(name) for name in _POLICY_COLUMNS if row.get(name) is not None}
        if "applicable_roles" in values:
            values["applicable_roles"] = list(values["applicable_roles"])
        if "created_by" in values:
            values["created_by"] = str(values["created_by"])
        return PasswordPolicy(
            id=str(row["id"]),
            name=row["name"],
            created_at=row.get("created_at") or utcnow(),
            **values,
        )

    def create_password_policy(self, name: str, **fields: Any) -> PasswordPolicy:
        policy = PasswordPolicy(id=str(uuid.uuid4()), name=name, **fields)
        columns = ("id", "name") + _POLICY_COLUMNS + ("created_at",)
        values = [policy.id, policy.name]
        values += [getattr(policy, column) for column in _POLICY_COLUMNS]
        values.append(policy.created_at)
        placeholders = ", ".join(["%s"] * len(columns))
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO password_policy ({', '.join(columns)}) VALUES ({placeholders})",
                    values,
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("policy name already exists", {"field": "name"})
        return policy

    def get_password_policy(self, policy_id: str) -> Optional[PasswordPolicy]:
        if not _is_uuid(policy_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_policy WHERE id = %s", (policy_id,)
            ).fetchone()
        return self._row_to_policy(row) if row else None

    def update_password_policy(self, policy_id: str, **fields: Any) -> Optional[PasswordPolicy]:
        unknown = set(fields) - MUTABLE_POLICY_FIELDS
        if unknown:
            raise ValueError(f"unsupported policy fields: {sorted(unknown)}")
        if not fields:
            return self.get_password_policy(policy_id)
        if not _is_uuid(policy_id):
            return None
        if "applicable_roles" in fields:
            fields["applicable_roles"] = list(fields["applicable_roles"] or [])
        assignments = ", ".join(f"{name} = %s" for name in fields)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE password_policy SET {assignments} WHERE id = %s RETURNING *",
                    (*fields.values(), policy_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("policy name already exists", {"field": "name"})
        return self._row_to_policy(row) if row else None

    def list_password_policies(self, *, active_only: bool = False) -> List[PasswordPolicy]:
        query = "SELECT * FROM password_policy"
        if active_only:
            query += " WHERE is_active"
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_policy(row) for row in rows]

    # audit trail
    def record_audit_log(self, entry: AuditLog) -> AuditLog:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (id, user_id, action, resource, resource_id, resource_model,
                    details, ip_address, user_agent, success, error_message, department, role, timestamp)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.action,
                    entry.resource,
                    entry.resource_id,
                    entry.resource_model,
                    json.dumps(entry.details) if entry.details is not None else None,
                    entry.ip_address,
                    entry.user_agent,
                    entry.success,
                    entry.error_message,
                    entry.department,
                    entry.role,
                    entry.timestamp,
                ),
            )
        return entry

    def list_audit_logs(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLog]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id:
            clauses.append("user_id = %s")
            params.append(user_id)
        if action:
            clauses.append("action = %s")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY timestamp DESC LIMIT %s", params
            ).fetchall()
        return [
            AuditLog(
                id=str(row["id"]),
                action=row["action"],
                resource=row["resource"],
                user_id=str(row["user_id"]) if row.get("user_id") else None,
                resource_id=row.get("resource_id"),
                resource_model=row.get("resource_model"),
                details=_json_value(row.get("details")),
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                success=row.get("success", True),
                error_message=row.get("error_message"),
                department=row.get("department"),
                role=row.get("role"),
                timestamp=row.get("timestamp") or utcnow(),
            )
            for row in rows
        ]

    def record_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_event (id, type, severity, risk_score, user_id, session_id,
                    ip_address, user_agent, details, alert_sent, timestamp)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.type,
                    event.severity,
                    event.risk_score,
                    event.user_id,
                    event.session_id,
                    event.ip_address,
                    event.user_agent,
                    json.dumps(event.details) if event.details is not None else None,
                    event.alert_sent,
                    event.timestamp,
                ),
            )
        return event

    def _row_to_security_event(self, row: dict) -> SecurityEvent:
        return SecurityEvent(
            id=str(row["id"]),
            type=row["type"],
            severity=row["severity"],
            risk_score=int(row["risk_score"]),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            session_id=row.get("session_id"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            details=_json_value(row.get("details")),
            alert_sent=row.get("alert_sent", False),
            timestamp=row.get("timestamp") or utcnow(),
            is_resolved=bool(row.get("is_resolved", False)),
            resolved_at=row.get("resolved_at"),
            resolved_by=str(row["resolved_by"]) if row.get("resolved_by") else None,
            actions=list(_json_value(row.get("actions")) or []),
        )

    @staticmethod
    def _security_event_filters(
        *,
        event_type: Optional[str] = None,
        severities: Optional[Sequence[str]] = None,
        user_id: Optional[str] = None,
        resolved: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if event_type:
            clauses.append("type = %s")
            params.append(event_type)
        if severities:
            clauses.append("severity = ANY(%s)")
            params.append(list(severities))
        if user_id:
            clauses.append("user_id = %s")
            params.append(user_id)
        if resolved is not None:
            clauses.append("is_resolved = %s")
            params.append(resolved)
        if since is not None:
            clauses.append("timestamp >= %s")
            params.append(since)
        if until is not None:
            clauses.append("timestamp <= %s")
            params.append(until)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def list_security_events(
        self,
        *,
        event_type: Optional[str] = None,
        severities: Optional[Sequence[str]] = None,
        user_id: Optional[str] = None,
        resolved: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        by_risk: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> List[SecurityEvent]:
        if user_id and not _is_uuid(user_id):
            return []
        where, params = self._security_event_filters(
            event_type=event_type,
            severities=severities,
            user_id=user_id,
            resolved=resolved,
            since=since,
            until=until,
        )
        order = "risk_score DESC, timestamp DESC" if by_risk else "timestamp DESC"
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM security_event {where} ORDER BY {order} LIMIT %s OFFSET %s",
                (*params, limit, offset),
            ).fetchall()
        return [self._row_to_security_event(row) for row in rows]

    def count_security_events(
        self,
        *,
        event_type: Optional[str] = None,
        severities: Optional[Sequence[str]] = None,
        user_id: Optional[str] = None,
        resolved: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        if user_id and not _is_uuid(user_id):
            return 0
        where, params = self._security_event_filters(
            event_type=event_type,
            severities=severities,
            user_id=user_id,
            resolved=resolved,
            since=since,
            until=until,
        )
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS total FROM security_event {where}", params
            ).fetchone()
        return int(row["total"]) if row else 0

    def get_security_event(self, event_id: str) -> Optional[SecurityEvent]:
        if not _is_uuid(event_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM security_event WHERE id = %s", (event_id,)
            ).fetchone()
        return self._row_to_security_event(row) if row else None

    def resolve_security_event(
        self,
        event_id: str,
        *,
        resolved_by: str,
        at: datetime,
        action: Optional[Dict[str, Any]] = None,
    ) -> Optional[SecurityEvent]:
        if not _is_uuid(event_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE security_event
                SET is_resolved = TRUE, resolved_at = %s, resolved_by = %s,
                    actions = actions || %s::jsonb
                WHERE id = %s
                RETURNING *
                """,
                (at, resolved_by, json.dumps([action] if action else []), event_id),
            ).fetchone()
        return self._row_to_security_event(row) if row else None

    def security_event_stats(self, since: datetime) -> Dict[str, Any]:
        with self._connect() as conn:
            totals = conn.execute(
                """
                SELECT COUNT(*) AS total_events,
                    COUNT(*) FILTER (WHERE severity = ANY(%s) AND NOT is_resolved)
                        AS unresolved_high_risk
                FROM security_event
                WHERE timestamp >= %s
                """,
                (list(HIGH_RISK_SEVERITIES), since),
            ).fetchone()
            rows = conn.execute(
                """
                SELECT severity, type, COUNT(*) AS count, AVG(risk_score) AS avg_risk_score
                FROM security_event
                WHERE timestamp >= %s
                GROUP BY severity, type
                """,
                (since,),
            ).fetchall()
        return {
            "total_events": int(totals["total_events"]) if totals else 0,
            "unresolved_high_risk": int(totals["unresolved_high_risk"]) if totals else 0,
            "groups": [
                {
                    "severity": row["severity"],
                    "type": row["type"],
                    "count": int(row["count"]),
                    "avg_risk_score": float(row["avg_risk_score"] or 0),
                }
                for row in rows
            ],
        }
