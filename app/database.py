"""
Database Configuration - Supabase PostgreSQL
Relational attendance store, used when ATTENDANCE_BACKEND=database.

Environment Variables:
- SUPABASE_URL: Your Supabase project URL
- SUPABASE_KEY: Your Supabase anon/service key
- DATABASE_PATH: SQLite file used when Supabase is not configured

Tables:
- users(id, account_id UNIQUE, name, email, department, position, created_at)
- attendance(id, user_id -> users.id, action, method, timestamp, is_late,
  minutes_late, image_url, address, latitude, longitude, location_verified,
  notes, domain_id, ip_address, created_at)

Timestamps are stored as UTC ISO strings with millisecond precision, so
string comparison orders them correctly.
"""
import os
import logging
import sqlite3
from typing import Optional, List, Dict, Any
from datetime import datetime

from app.config import IS_VERCEL
from app.exceptions import PersistenceError
from app.utils import now_utc, to_utc_iso

logger = logging.getLogger(__name__)

# Check if Supabase credentials are available
SUPABASE_URL = os.environ.get("SUPABASE_URL")
SUPABASE_KEY = os.environ.get("SUPABASE_KEY")
USE_SUPABASE = bool(SUPABASE_URL and SUPABASE_KEY)

# Fallback to SQLite for local development
SQLITE_DB = os.environ.get("DATABASE_PATH") or ("/tmp/attendance.db" if IS_VERCEL else "attendance.db")

logger.info(f"Database config: USE_SUPABASE={USE_SUPABASE}, IS_VERCEL={IS_VERCEL}")

# Initialize Supabase client if available
supabase_client = None
if USE_SUPABASE:
    try:
        from supabase import create_client, Client
        supabase_client: Client = create_client(SUPABASE_URL, SUPABASE_KEY)
        logger.info("Supabase client initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize Supabase client: {e}")
        USE_SUPABASE = False


# =============================================================================
# SQLite Fallback (for local development)
# =============================================================================
def get_sqlite_connection():
    """Get SQLite connection for local development"""
    conn = sqlite3.connect(SQLITE_DB, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_sqlite_db():
    """Initialize SQLite database schema"""
    conn = get_sqlite_connection()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id TEXT NOT NULL UNIQUE,
        name TEXT,
        email TEXT,
        department TEXT,
        position TEXT,
        created_at TEXT NOT NULL
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES users(id),
        action TEXT NOT NULL,
        method TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        is_late INTEGER DEFAULT 0,
        minutes_late INTEGER DEFAULT 0,
        image_url TEXT,
        address TEXT,
        latitude REAL,
        longitude REAL,
        location_verified INTEGER,
        notes TEXT,
        domain_id INTEGER,
        ip_address TEXT,
        created_at TEXT NOT NULL
    )
    """)

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_attendance_timestamp ON attendance(timestamp)")

    conn.commit()
    conn.close()


# =============================================================================
# Supabase Database Operations
# =============================================================================
def init_db():
    """Initialize database - creates tables if using SQLite or verifies Supabase"""
    if USE_SUPABASE:
        # Supabase tables are created via SQL Editor in dashboard
        try:
            supabase_client.table("attendance").select("id").limit(1).execute()
            logger.info("Supabase attendance table verified")
        except Exception as e:
            logger.error(f"Supabase table check failed: {e}")
            logger.info("Please create the 'users' and 'attendance' tables in Supabase Dashboard")
    else:
        init_sqlite_db()
        logger.info("SQLite database initialized")


# =============================================================================
# Users
# =============================================================================
def find_or_create_user(account_id: str, profile: Optional[Dict[str, Any]] = None) -> Optional[int]:
    """
    Return the users.id for a platform account, creating the row on first sight.
    Existing rows are never modified.
    """
    profile = profile or {}
    new_user = {
        "account_id": account_id,
        "name": profile.get("name"),
        "email": profile.get("email"),
        "department": profile.get("department"),
        "position": profile.get("position"),
        "created_at": to_utc_iso(now_utc()),
    }

    if USE_SUPABASE:
        try:
            result = supabase_client.table("users").select("id").eq("account_id", account_id).execute()
            if result.data:
                return result.data[0]["id"]
            result = supabase_client.table("users").insert(new_user).execute()
            if result.data:
                logger.info(f"✅ Created user {account_id} (id={result.data[0].get('id')})")
                return result.data[0].get("id")
            return None
        except Exception as e:
            logger.error(f"❌ Supabase user lookup/insert error: {e}")
            return None

    conn = get_sqlite_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT id FROM users WHERE account_id = ?", (account_id,))
        row = cursor.fetchone()
        if row:
            return row["id"]
        columns = ', '.join(new_user.keys())
        placeholders = ', '.join(['?' for _ in new_user])
        cursor.execute(f"INSERT INTO users ({columns}) VALUES ({placeholders})", tuple(new_user.values()))
        conn.commit()
        logger.info(f"✅ Created user {account_id} (id={cursor.lastrowid})")
        return cursor.lastrowid
    except sqlite3.Error as e:
        logger.error(f"❌ SQLite user lookup/insert error: {e}")
        return None
    finally:
        conn.close()


def count_users() -> int:
    if USE_SUPABASE:
        try:
            result = supabase_client.table("users").select("id", count="exact").execute()
            return result.count or 0
        except Exception as e:
            logger.error(f"Supabase count error: {e}")
            raise PersistenceError(f"User count failed: {e}") from e

    conn = get_sqlite_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT COUNT(*) FROM users")
        return cursor.fetchone()[0]
    except sqlite3.Error as e:
        logger.error(f"SQLite count error: {e}")
        raise PersistenceError(f"User count failed: {e}") from e
    finally:
        conn.close()


# =============================================================================
# Attendance
# =============================================================================
def insert_attendance(data: Dict[str, Any]) -> Optional[int]:
    """Insert one attendance row. `timestamp` must be a UTC ISO string."""
    record = dict(data)
    record.setdefault("created_at", to_utc_iso(now_utc()))

    if USE_SUPABASE:
        try:
            for key in ("is_late", "location_verified"):
                if record.get(key) is not None:
                    record[key] = bool(record[key])
            result = supabase_client.table("attendance").insert(record).execute()
            if result.data:
                logger.info(f"✅ Supabase INSERT successful, id={result.data[0].get('id')}")
                return result.data[0].get("id")
            return None
        except Exception as e:
            logger.error(f"❌ Supabase attendance insert error: {e}")
            return None

    conn = get_sqlite_connection()
    try:
        cursor = conn.cursor()
        columns = ', '.join(record.keys())
        placeholders = ', '.join(['?' for _ in record])
        cursor.execute(f"INSERT INTO attendance ({columns}) VALUES ({placeholders})", tuple(record.values()))
        conn.commit()
        logger.info(f"✅ SQLite INSERT successful, id={cursor.lastrowid}")
        return cursor.lastrowid
    except sqlite3.Error as e:
        logger.error(f"❌ SQLite attendance insert error: {e}")
        return None
    finally:
        conn.close()


def _flatten_supabase_row(row: Dict[str, Any]) -> Dict[str, Any]:
    user = row.pop("users", None) or {}
    row["account_id"] = user.get("account_id")
    row["name"] = user.get("name")
    row["email"] = user.get("email")
    row["department"] = user.get("department")
    return row


def get_attendance_between(start: datetime, end: datetime) -> List[Dict[str, Any]]:
    """
    Attendance rows with start <= timestamp < end, oldest first, joined with
    the owning user's account_id, name, email and department.
    Raises PersistenceError when the store cannot be read.
    """
    start_iso, end_iso = to_utc_iso(start), to_utc_iso(end)

    if USE_SUPABASE:
        try:
            result = (
                supabase_client.table("attendance")
                .select("*, users(account_id, name, email, department)")
                .gte("timestamp", start_iso)
                .lt("timestamp", end_iso)
                .order("timestamp")
                .execute()
            )
            return [_flatten_supabase_row(dict(r)) for r in (result.data or [])]
        except Exception as e:
            logger.error(f"Supabase attendance fetch error: {e}")
            raise PersistenceError(f"Attendance read failed: {e}") from e

    conn = get_sqlite_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(
            """
            SELECT a.*, u.account_id, u.name, u.email, u.department
            FROM attendance a JOIN users u ON u.id = a.user_id
            WHERE a.timestamp >= ? AND a.timestamp < ?
            ORDER BY a.timestamp ASC
            """,
            (start_iso, end_iso),
        )
        return [dict(row) for row in cursor.fetchall()]
    except sqlite3.Error as e:
        logger.error(f"SQLite attendance fetch error: {e}")
        raise PersistenceError(f"Attendance read failed: {e}") from e
    finally:
        conn.close()
