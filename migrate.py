#!/usr/bin/env python3
"""
migrate.py  –  generic “from-backup” data migrator.

• Expects:
      lynx/lynx.db.backup   ← the *old* DB (ro)
      lynx/lynx.db          ← **must not exist** (will be created)

• Reads the live schema that lynx now ships with and copies
  only columns that still exist.  Extra columns / tables in the
  backup are ignored; columns the backup lacks get their defaults.

Run once, then start the server as usual.
"""

import sqlite3
import sys
from pathlib import Path

import lynx.bio as bio

ROOT = Path(__file__).parent
BACKUP = ROOT / "lynx/lynx.db.backup"
TARGET = ROOT / "lynx/lynx.db"

TABLES = ("admin_users", "profile_data", "links", "theme_config")


def table_cols(db, table: str) -> list[str]:
    """Column list of *table* in *db* (schema order, empty if absent)."""
    return [c["name"] for c in db.execute(f"PRAGMA table_info({table})")]


def copy_table(src, dst, table: str) -> int | None:
    """Copy the columns both sides share; ``None`` when nothing is copyable."""
    have = set(table_cols(src, table))
    if not have:
        print(f"  • {table:13}  (absent in backup – skipped)")
        return None

    common = [c for c in table_cols(dst, table) if c in have]
    if not common:
        print(f"  • {table:13}  (no common columns – skipped)")
        return None

    if table == "theme_config":
        # throw away the bootstrap row so the real one keeps its id
        dst.execute("DELETE FROM theme_config")

    col_list = ",".join(common)
    qms = ",".join("?" * len(common))
    rows = src.execute(f"SELECT {col_list} FROM {table}")
    dst.executemany(
        f"INSERT INTO {table} ({col_list}) VALUES ({qms})",
        (tuple(r[c] for c in common) for r in rows),
    )
    cnt = dst.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    print(f"  • {table:13}  ({cnt} rows)")
    return cnt


def migrate(backup: Path, target: Path) -> None:
    src = sqlite3.connect(f"file:{backup}?mode=ro", uri=True)
    src.row_factory = sqlite3.Row
    dst = bio.connect(str(target))
    try:
        bio.init_db(dst)
        print("→ copying compatible tables/columns")
        for tbl in TABLES:
            copy_table(src, dst, tbl)
        dst.commit()
    finally:
        src.close()
        dst.close()


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    backup = Path(argv[0]) if argv else BACKUP
    target = Path(argv[1]) if len(argv) > 1 else TARGET

    if not backup.exists():
        sys.exit(f"❌  {backup} not found – aborting.")
    if target.exists():
        sys.exit(f"❌  {target} already exists – move it away first.")

    migrate(backup, target)
    print("\n✔  Migration finished – start the app with the new database.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
