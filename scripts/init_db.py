#!/usr/bin/env python3
"""
Initialize the metadata store schema and seed roles/permissions.
This script is used by CI to set up the database before running integration tests.
"""
import sys
from pathlib import Path

# Add src to path so we can import from clickhouse_admin
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from clickhouse_admin.db import get_connection


def init_database():
    """Execute the SQL schema initialization script."""
    sql_file = Path(__file__).parent.parent / "sql" / "001_init.sql"

    if not sql_file.exists():
        print(f"Error: SQL file not found at {sql_file}")
        sys.exit(1)

    sql_content = sql_file.read_text(encoding="utf-8")

    try:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql_content)
                conn.commit()
                print("[OK] Metadata store initialized")
                print(f"   - Executed: {sql_file}")

                cur.execute("""
                    SELECT table_name
                    FROM information_schema.tables
                    WHERE table_schema = 'public'
                      AND (table_name LIKE 'rbac_%' OR table_name LIKE '%connections')
                    ORDER BY table_name
                """)
                tables = [row[0] for row in cur.fetchall()]
                print(f"   - Tables present: {', '.join(tables)}")

                cur.execute("SELECT count(*) FROM rbac_permissions")
                print(f"   - Permissions seeded: {cur.fetchone()[0]}")

    except Exception as e:
        print(f"[ERROR] Metadata store initialization failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    init_database()
