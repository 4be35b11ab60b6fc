"""SQLite metadata store for pools, their drives and the protected-drive set."""

import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from .errors import PersistenceError
from .models import Pool, PoolDrive, ProtectedDrive

logger = logging.getLogger(__name__)


POOL_COLUMNS = (
    'label', 'mount_path', 'enabled', 'state', 'pool_status', 'size', 'used',
    'available', 'use_percent', 'all_drives_connected',
)
DRIVE_COLUMNS = (
    'serial', 'label', 'vendor', 'model', 'size', 'connected', 'mounted', 'device_path',
)
_BOOL_COLUMNS = {'enabled', 'all_drives_connected', 'connected', 'mounted'}

SCHEMA = """
    CREATE TABLE IF NOT EXISTS pools (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        guid TEXT NOT NULL UNIQUE,
        label TEXT NOT NULL,
        mount_path TEXT NOT NULL,
        enabled INTEGER NOT NULL DEFAULT 0,
        state TEXT NOT NULL DEFAULT 'creating',
        pool_status TEXT NOT NULL DEFAULT '',
        size INTEGER NOT NULL DEFAULT 0,
        used INTEGER NOT NULL DEFAULT 0,
        available INTEGER NOT NULL DEFAULT 0,
        use_percent TEXT NOT NULL DEFAULT '0%',
        all_drives_connected INTEGER NOT NULL DEFAULT 1
    );

    CREATE TABLE IF NOT EXISTS pool_drives (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        serial TEXT NOT NULL,
        label TEXT NOT NULL,
        vendor TEXT NOT NULL DEFAULT 'Unknown Vendor',
        model TEXT NOT NULL DEFAULT 'Unknown Model',
        size INTEGER NOT NULL DEFAULT 0,
        connected INTEGER NOT NULL DEFAULT 0,
        mounted INTEGER NOT NULL DEFAULT 0,
        device_path TEXT NOT NULL DEFAULT '',
        pool_id INTEGER NOT NULL REFERENCES pools (id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_pool_drives_pool ON pool_drives (pool_id);

    CREATE TABLE IF NOT EXISTS protected_drives (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        serial TEXT NOT NULL UNIQUE,
        vendor TEXT NOT NULL DEFAULT 'Unknown Vendor',
        model TEXT NOT NULL DEFAULT 'Unknown Model',
        name TEXT,
        label TEXT
    );
"""


class PoolStore:
    """
    Durable record of pools and drives.

    Every public method opens its own connection and transaction, so callers
    never hold a database lock across an agent call.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        parent = os.path.dirname(os.path.abspath(db_path))
        os.makedirs(parent, exist_ok=True)
        self._init_database()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute('PRAGMA foreign_keys = ON')
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside one transaction; roll back on any error."""
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(f"Metadata transaction rolled back: {e}")
            raise PersistenceError(f"Metadata update failed: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_database(self) -> None:
        with self.transaction() as conn:
            conn.executescript(SCHEMA)

    # ------------------------------------------------------------------
    # pools

    def list_pools(self) -> List[Pool]:
        with self.transaction() as conn:
            rows = conn.execute('SELECT * FROM pools ORDER BY id').fetchall()
            drives = self._drives_by_pool(conn)
        return [_pool_from_row(row, drives.get(row['id'], [])) for row in rows]

    def get_pool(self, guid: str) -> Optional[Pool]:
        with self.transaction() as conn:
            return self._load_pool(conn, guid)

    def create_pool(self, pool: Pool) -> Pool:
        """Insert a pool and its drives in one transaction and return it with ids."""
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO pools (guid, label, mount_path, enabled, state, pool_status,
                                   size, used, available, use_percent, all_drives_connected)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    pool.guid, pool.label, pool.mount_path, int(pool.enabled), pool.state,
                    pool.pool_status, pool.size, pool.used, pool.available, pool.use_percent,
                    int(pool.all_drives_connected),
                ),
            )
            pool_id = cursor.lastrowid
            for drive in pool.drives:
                self._insert_drive(conn, pool_id, drive)
            return self._load_pool(conn, pool.guid)

    def delete_pool(self, guid: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute('DELETE FROM pools WHERE guid = ?', (guid,))
            return cursor.rowcount > 0

    def update_pool(self, guid: str, **fields: Any) -> bool:
        """Write only the given pool columns, leaving the rest of the row alone."""
        if not fields:
            return False
        with self.transaction() as conn:
            return self._update_pool(conn, guid, fields)

    def set_pool_mounted(self, guid: str, mounted: bool, **fields: Any) -> Optional[Pool]:
        """Flip the pool's enabled flag and every member drive's mounted flag together."""
        with self.transaction() as conn:
            pool_fields = dict(fields)
            pool_fields['enabled'] = mounted
            if not self._update_pool(conn, guid, pool_fields):
                return None
            conn.execute(
                'UPDATE pool_drives SET mounted = ? '
                'WHERE pool_id = (SELECT id FROM pools WHERE guid = ?)',
                (int(mounted), guid),
            )
            return self._load_pool(conn, guid)

    def complete_creation(
        self,
        guid: str,
        pool_fields: Mapping[str, Any],
        ready_serials: Iterable[str] = (),
    ) -> Optional[Pool]:
        """Persist a terminal creation outcome and mark the listed drives live."""
        with self.transaction() as conn:
            if not self._update_pool(conn, guid, pool_fields):
                return None
            serials = list(ready_serials)
            if serials:
                placeholders = ', '.join('?' for _ in serials)
                conn.execute(
                    f'UPDATE pool_drives SET connected = 1, mounted = 1 '
                    f'WHERE pool_id = (SELECT id FROM pools WHERE guid = ?) '
                    f'AND serial IN ({placeholders})',
                    (guid, *serials),
                )
            return self._load_pool(conn, guid)

    def rename_pool(self, guid: str, label: str, drive_labels: Mapping[int, str]) -> Optional[Pool]:
        """
        Rename a pool and any of its drives in a single transaction.

        Args:
            guid: Pool GUID
            label: New pool label
            drive_labels: Mapping of drive id to new label; ids outside the pool are ignored

        Returns:
            The updated Pool, or None when the pool does not exist
        """
        with self.transaction() as conn:
            pool = self._load_pool(conn, guid)
            if pool is None:
                return None
            conn.execute('UPDATE pools SET label = ? WHERE id = ?', (label, pool.id))
            for drive_id, drive_label in drive_labels.items():
                conn.execute(
                    'UPDATE pool_drives SET label = ? WHERE id = ? AND pool_id = ?',
                    (drive_label, drive_id, pool.id),
                )
            return self._load_pool(conn, guid)

    # ------------------------------------------------------------------
    # drives

    def add_drive(self, guid: str, drive: PoolDrive) -> Optional[PoolDrive]:
        with self.transaction() as conn:
            row = conn.execute('SELECT id FROM pools WHERE guid = ?', (guid,)).fetchone()
            if row is None:
                return None
            drive_id = self._insert_drive(conn, row['id'], drive)
            new_row = conn.execute('SELECT * FROM pool_drives WHERE id = ?', (drive_id,)).fetchone()
        return _drive_from_row(new_row)

    def update_drive(self, drive_id: int, **fields: Any) -> bool:
        if not fields:
            return False
        with self.transaction() as conn:
            return self._update_drive(conn, drive_id, fields)

    def save_reconciliation(
        self,
        snapshots: Mapping[str, Tuple[bool, str]],
        pool_updates: Mapping[str, Mapping[str, Any]],
        drive_updates: Mapping[str, Mapping[int, Mapping[str, Any]]],
        drive_deletes: Optional[Mapping[str, Iterable[int]]] = None,
    ) -> List[str]:
        """
        Apply one reconciliation cycle's changes as a single batch.

        Each pool row is re-read inside the transaction. A pool's changes are
        written only while its enabled flag and state still match the snapshot
        they were computed from, so a mount or unmount that landed mid-cycle
        is never overwritten. Field updates are dropped for a pool that is
        now 'creating'.

        Args:
            snapshots: Pool GUID -> (enabled, state) as read at the start of the cycle
            pool_updates: Pool GUID -> column changes
            drive_updates: Pool GUID -> {drive id -> column changes}
            drive_deletes: Pool GUID -> drive ids to delete

        Returns:
            GUIDs of the pools whose changes were written
        """
        drive_deletes = drive_deletes or {}
        guids = set(pool_updates) | set(drive_updates) | set(drive_deletes)
        written = []
        with self.transaction() as conn:
            for guid in sorted(guids):
                row = conn.execute('SELECT id, enabled, state FROM pools WHERE guid = ?', (guid,)).fetchone()
                if row is None:
                    logger.info(f"Pool {guid} was removed during reconciliation; dropping its changes")
                    continue
                if guid in snapshots and (bool(row['enabled']), row['state']) != tuple(snapshots[guid]):
                    logger.info(f"Pool {guid} changed during reconciliation; dropping its changes")
                    continue
                for drive_id in drive_deletes.get(guid, ()):
                    conn.execute('DELETE FROM pool_drives WHERE id = ? AND pool_id = ?', (drive_id, row['id']))
                if row['state'] != 'creating':
                    for drive_id, fields in drive_updates.get(guid, {}).items():
                        self._update_drive(conn, drive_id, fields)
                    if pool_updates.get(guid):
                        self._update_pool(conn, guid, pool_updates[guid])
                written.append(guid)
        return written

    # ------------------------------------------------------------------
    # protected drives

    def list_protected_drives(self) -> List[ProtectedDrive]:
        with self.transaction() as conn:
            rows = conn.execute('SELECT * FROM protected_drives ORDER BY id').fetchall()
        return [
            ProtectedDrive(
                id=row['id'], serial=row['serial'], vendor=row['vendor'],
                model=row['model'], name=row['name'], label=row['label'],
            )
            for row in rows
        ]

    def list_protected_serials(self) -> Set[str]:
        with self.transaction() as conn:
            rows = conn.execute('SELECT serial FROM protected_drives').fetchall()
        return {row['serial'] for row in rows}

    def add_protected_drive(self, drive: ProtectedDrive) -> bool:
        """Return False if the serial is already protected."""
        with self.transaction() as conn:
            cursor = conn.execute(
                'INSERT OR IGNORE INTO protected_drives (serial, vendor, model, name, label) '
                'VALUES (?, ?, ?, ?, ?)',
                (drive.serial, drive.vendor, drive.model, drive.name, drive.label),
            )
            return cursor.rowcount > 0

    def remove_protected_drive(self, serial: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute('DELETE FROM protected_drives WHERE serial = ?', (serial,))
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # helpers

    def _load_pool(self, conn: sqlite3.Connection, guid: str) -> Optional[Pool]:
        row = conn.execute('SELECT * FROM pools WHERE guid = ?', (guid,)).fetchone()
        if row is None:
            return None
        drive_rows = conn.execute(
            'SELECT * FROM pool_drives WHERE pool_id = ? ORDER BY id', (row['id'],)
        ).fetchall()
        return _pool_from_row(row, [_drive_from_row(r) for r in drive_rows])

    def _drives_by_pool(self, conn: sqlite3.Connection) -> Dict[int, List[PoolDrive]]:
        grouped: Dict[int, List[PoolDrive]] = {}
        for row in conn.execute('SELECT * FROM pool_drives ORDER BY id').fetchall():
            grouped.setdefault(row['pool_id'], []).append(_drive_from_row(row))
        return grouped

    def _insert_drive(self, conn: sqlite3.Connection, pool_id: int, drive: PoolDrive) -> int:
        cursor = conn.execute(
            """
            INSERT INTO pool_drives (serial, label, vendor, model, size, connected,
                                     mounted, device_path, pool_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                drive.serial, drive.label, drive.vendor, drive.model, drive.size,
                int(drive.connected), int(drive.mounted), drive.device_path, pool_id,
            ),
        )
        return cursor.lastrowid

    def _update_pool(self, conn: sqlite3.Connection, guid: str, fields: Mapping[str, Any]) -> bool:
        assignments, values = _assignments(fields, POOL_COLUMNS)
        cursor = conn.execute(f'UPDATE pools SET {assignments} WHERE guid = ?', (*values, guid))
        return cursor.rowcount > 0

    def _update_drive(self, conn: sqlite3.Connection, drive_id: int, fields: Mapping[str, Any]) -> bool:
        assignments, values = _assignments(fields, DRIVE_COLUMNS)
        cursor = conn.execute(f'UPDATE pool_drives SET {assignments} WHERE id = ?', (*values, drive_id))
        return cursor.rowcount > 0


def _assignments(fields: Mapping[str, Any], allowed: Iterable[str]):
    unknown = set(fields) - set(allowed)
    if unknown:
        raise ValueError(f"Unknown column(s): {', '.join(sorted(unknown))}")
    columns = list(fields)
    values = [int(fields[c]) if c in _BOOL_COLUMNS else fields[c] for c in columns]
    return ', '.join(f'{c} = ?' for c in columns), values


def _pool_from_row(row: sqlite3.Row, drives: List[PoolDrive]) -> Pool:
    return Pool(
        id=row['id'],
        guid=row['guid'],
        label=row['label'],
        mount_path=row['mount_path'],
        enabled=bool(row['enabled']),
        state=row['state'],
        pool_status=row['pool_status'],
        size=row['size'],
        used=row['used'],
        available=row['available'],
        use_percent=row['use_percent'],
        all_drives_connected=bool(row['all_drives_connected']),
        drives=drives,
    )


def _drive_from_row(row: sqlite3.Row) -> PoolDrive:
    return PoolDrive(
        id=row['id'],
        pool_id=row['pool_id'],
        serial=row['serial'],
        label=row['label'],
        vendor=row['vendor'],
        model=row['model'],
        size=row['size'],
        connected=bool(row['connected']),
        mounted=bool(row['mounted']),
        device_path=row['device_path'],
    )
