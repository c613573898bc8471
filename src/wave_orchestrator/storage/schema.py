"""Relational schema for waves and migration results.

`waves` and `migrations` are the primary tables. `migration_result_list` and
`migrations_mapping` are older shapes still read by the dashboard; the store
keeps them in sync on a best-effort basis and can run without them.
"""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.engine import Engine

metadata = MetaData()

WAVES_TABLE = "waves"
MIGRATIONS_TABLE = "migrations"
RESULT_LIST_TABLE = "migration_result_list"
MAPPING_TABLE = "migrations_mapping"


def _build() -> dict[str, Table]:
    return {
        WAVES_TABLE: Table(
            WAVES_TABLE,
            metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("wave_id", String(64), nullable=False, unique=True),
            Column("name", String(255), nullable=False),
            Column("workspace_id", Integer),
            Column("workspace_name", String(255), default=""),
            Column("status", String(32), nullable=False, default="pending"),
            Column("progress_total", Integer, nullable=False, default=0),
            Column("progress_completed", Integer, nullable=False, default=0),
            Column("progress_failed", Integer, nullable=False, default=0),
            Column("project_uuids", Text),
            Column("batch_size", Integer, nullable=False, default=3),
            Column("mgr_manual", Boolean, nullable=False, default=False),
            Column("enable_cloning", Boolean, nullable=False, default=False),
            Column("created_at", String(40)),
            Column("updated_at", String(40)),
            Column("completed_at", String(40)),
        ),
        MIGRATIONS_TABLE: Table(
            MIGRATIONS_TABLE,
            metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("migration_uuid", String(64)),
            Column("wave_id", String(64), index=True),
            Column("mb_project_uuid", String(255), nullable=False, index=True),
            Column("brz_project_id", Integer),
            Column("brizy_project_domain", String(255)),
            Column("status", String(32), nullable=False, default="pending"),
            Column("error", Text),
            Column("result_json", Text),
            Column("started_at", String(40)),
            Column("completed_at", String(40)),
            Column("reset_at", String(40)),
            Column("created_at", String(40)),
            Column("updated_at", String(40)),
        ),
        RESULT_LIST_TABLE: Table(
            RESULT_LIST_TABLE,
            metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("migration_uuid", String(64), nullable=False),
            Column("mb_project_uuid", String(255), nullable=False),
            Column("brz_project_id", Integer, default=0),
            Column("brizy_project_domain", String(255), default=""),
            Column("result_json", Text),
            Column("created_at", String(40)),
            Column("updated_at", String(40)),
            Index("ix_result_list_wave_source", "migration_uuid", "mb_project_uuid"),
        ),
        MAPPING_TABLE: Table(
            MAPPING_TABLE,
            metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("mb_project_uuid", String(255), nullable=False),
            Column("brz_project_id", Integer, nullable=False, default=0),
            Column("changes_json", Text),
            Column("cloning_enabled", Boolean, nullable=False, default=False),
            Column("created_at", String(40)),
            Column("updated_at", String(40)),
            UniqueConstraint("mb_project_uuid", "brz_project_id", name="uq_mapping_source_target"),
        ),
    }


TABLES = _build()
LEGACY_TABLES = (RESULT_LIST_TABLE, MAPPING_TABLE)


def ensure_schema(engine: Engine, *, include_legacy: bool = True, include_waves: bool = True) -> None:
    """Create missing tables. Existing tables are left untouched."""
    names = [MIGRATIONS_TABLE]
    if include_waves:
        names.append(WAVES_TABLE)
    if include_legacy:
        names.extend(LEGACY_TABLES)
    metadata.create_all(engine, tables=[TABLES[name] for name in names], checkfirst=True)
