from datetime import datetime, timezone
from typing import Iterable, List, Optional, Protocol

from db_models import Contact, ContactUpdate, LinkPrecedence
from db_setup import get_db_connection
from exceptions import ContactNotFoundError


class ContactStore(Protocol):
    """Storage operations the identity resolver depends on.

    Every operation ignores soft-deleted rows.
    """

    def find_by_email_or_phone(
        self, email: Optional[str] = None, phone: Optional[str] = None
    ) -> List[Contact]: ...

    def find_connected_component(self, ids: Iterable[int]) -> List[Contact]: ...

    def create(
        self,
        phone: Optional[str],
        email: Optional[str],
        linked_id: Optional[int],
        precedence: LinkPrecedence,
    ) -> Contact: ...

    def update(self, contact_id: int, changes: ContactUpdate) -> None: ...


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class SqliteContactStore:
    def __init__(self, db_path: str):
        self.db_path = db_path

    def find_by_email_or_phone(self, email: str = None, phone: str = None) -> List[Contact]:
        conditions = []
        params = []
        if email is not None:
            conditions.append("email = ?")
            params.append(email)
        if phone is not None:
            conditions.append("phoneNumber = ?")
            params.append(phone)
        if not conditions:
            return []

        query = f"""
            SELECT * FROM Contact
            WHERE deletedAt IS NULL
            AND ({" OR ".join(conditions)})
            ORDER BY createdAt ASC, id ASC
        """
        conn = get_db_connection(self.db_path)
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()

        return [Contact(**dict(row)) for row in rows]

    def find_connected_component(self, ids: Iterable[int]) -> List[Contact]:
        ids = list(ids)
        if not ids:
            return []

        placeholders = ", ".join("?" for _ in ids)
        query = f"""
            SELECT * FROM Contact
            WHERE deletedAt IS NULL AND (
                id IN ({placeholders})
                OR linkedId IN ({placeholders})
                OR id IN (
                    SELECT linkedId FROM Contact
                    WHERE id IN ({placeholders}) AND linkedId IS NOT NULL
                )
            )
            ORDER BY createdAt ASC, id ASC
        """
        conn = get_db_connection(self.db_path)
        try:
            rows = conn.execute(query, ids * 3).fetchall()
        finally:
            conn.close()

        return [Contact(**dict(row)) for row in rows]

    def create(
        self,
        phone: Optional[str],
        email: Optional[str],
        linked_id: Optional[int],
        precedence: LinkPrecedence,
    ) -> Contact:
        now = _now()
        conn = get_db_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (phone, email, linked_id, LinkPrecedence(precedence).value, now, now))
            row = conn.execute(
                "SELECT * FROM Contact WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
            conn.commit()
        finally:
            conn.close()

        return Contact(**dict(row))

    def update(self, contact_id: int, changes: ContactUpdate) -> None:
        fields = changes.model_dump(exclude_unset=True, mode="json")
        assignments = [f"{column} = ?" for column in fields]
        assignments.append("updatedAt = ?")
        params = list(fields.values()) + [_now(), contact_id]

        conn = get_db_connection(self.db_path)
        try:
            cursor = conn.execute(f"""
                UPDATE Contact
                SET {", ".join(assignments)}
                WHERE id = ? AND deletedAt IS NULL
            """, params)
            if cursor.rowcount == 0:
                conn.rollback()
                raise ContactNotFoundError(contact_id)
            conn.commit()
        finally:
            conn.close()
