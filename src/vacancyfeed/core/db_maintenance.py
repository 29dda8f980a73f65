from __future__ import annotations

import sqlite3
from typing import Dict


def maintenance_db(db_path: str, keep_error_days: int = 30) -> Dict[str, int]:
    """Prune old run errors and orphaned cursors, then compact the file."""
    conn = sqlite3.connect(db_path)
    try:
        cur = conn.cursor()

        cur.execute(
            "DELETE FROM run_errors WHERE created_at < datetime('now', ?)",
            (f"-{int(keep_error_days)} days",),
        )
        errors_deleted = cur.rowcount

        cur.execute(
            "DELETE FROM scrape_cursors WHERE source_id NOT IN (SELECT id FROM job_sources)"
        )
        cursors_deleted = cur.rowcount

        # VACUUM must run outside any active transaction.
        conn.commit()
        cur.execute("VACUUM")
    finally:
        conn.close()
    return {"run_errors_deleted": errors_deleted, "cursors_deleted": cursors_deleted}
