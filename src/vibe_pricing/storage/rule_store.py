"""
Rule Store - Durable pricing rule records in SQLite.

Reads go through pandas so the compiler and the import script share one
row-to-rule path. Write methods exist for the rules service only; the engine
never mutates rules.
"""
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol, Union

import pandas as pd

from ..config.logging_config import get_logger
from ..engine.models import PricingRule
from ..errors import RuleStoreError

logger = get_logger("vibe_pricing.rule_store")

RULES_TABLE = 'vibe_pricing_rules'

RULE_COLUMNS = [
    'id', 'name', 'description', 'priority', 'status', 'referrer_conditions',
    'product_conditions', 'price_adjustment', 'discount_integration',
    'display_options', 'created_at', 'updated_at',
]


class RuleStore(Protocol):
    """Read contract the rule compiler depends on."""

    def load_active_rules(self) -> list[PricingRule]: ...


def _now() -> str:
    return datetime.now().isoformat(timespec='seconds')


class SqliteRuleStore:
    """Rule table in a SQLite database file (or ``:memory:``)."""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = str(db_path)
        if self.db_path != ':memory:':
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        if self._conn is None:
            try:
                self._conn = sqlite3.connect(self.db_path)
            except sqlite3.Error as exc:
                raise RuleStoreError(f"cannot open rule db: {exc}", {"path": self.db_path}) from exc
        return self._conn

    def _ensure_schema(self) -> None:
        conn = self._connect()
        with conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {RULES_TABLE} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    priority INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'active',
                    referrer_conditions TEXT DEFAULT '',
                    product_conditions TEXT DEFAULT '',
                    price_adjustment TEXT DEFAULT '',
                    discount_integration TEXT NOT NULL DEFAULT 'apply',
                    display_options TEXT DEFAULT '',
                    created_at TEXT,
                    updated_at TEXT
                )
                """
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{RULES_TABLE}_status_priority "
                f"ON {RULES_TABLE} (status, priority)"
            )

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _query(self, sql: str, params: tuple = ()) -> list[PricingRule]:
        try:
            frame = pd.read_sql_query(sql, self._connect(), params=params)
        except (sqlite3.Error, pd.errors.DatabaseError) as exc:
            raise RuleStoreError(f"rule query failed: {exc}", {"path": self.db_path}) from exc

        rules = []
        for row in frame.to_dict('records'):
            try:
                rules.append(PricingRule.from_row(row))
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable rule row", rule_id=row.get('id'), error=str(exc))
        return rules

    # -- reads --------------------------------------------------------------

    def load_active_rules(self) -> list[PricingRule]:
        """Active rules, highest priority first, lower id first on ties."""
        return self._query(
            f"SELECT * FROM {RULES_TABLE} WHERE status = 'active' ORDER BY priority DESC, id ASC"
        )

    def list_rules(self, include_inactive: bool = True) -> list[PricingRule]:
        if include_inactive:
            return self._query(f"SELECT * FROM {RULES_TABLE} ORDER BY priority DESC, id ASC")
        return self.load_active_rules()

    def get_rule(self, rule_id: int) -> Optional[PricingRule]:
        rules = self._query(f"SELECT * FROM {RULES_TABLE} WHERE id = ?", (int(rule_id),))
        return rules[0] if rules else None

    # -- writes -------------------------------------------------------------

    def insert_rule(self, rule: PricingRule) -> PricingRule:
        """Insert a rule; an id of 0 lets the database assign one."""
        row = rule.to_row()
        row['created_at'] = row['created_at'] or _now()
        row['updated_at'] = row['created_at']
        if not row['id']:
            row.pop('id')
        columns = list(row)
        placeholders = ", ".join("?" for _ in columns)
        try:
            conn = self._connect()
            with conn:
                cursor = conn.execute(
                    f"INSERT INTO {RULES_TABLE} ({', '.join(columns)}) VALUES ({placeholders})",
                    tuple(row[c] for c in columns),
                )
        except sqlite3.Error as exc:
            raise RuleStoreError(f"rule insert failed: {exc}") from exc
        return self.get_rule(cursor.lastrowid)

    def update_rule(self, rule: PricingRule) -> bool:
        row = rule.to_row()
        row['updated_at'] = _now()
        columns = [c for c in RULE_COLUMNS if c not in ('id', 'created_at')]
        assignments = ", ".join(f"{c} = ?" for c in columns)
        try:
            conn = self._connect()
            with conn:
                cursor = conn.execute(
                    f"UPDATE {RULES_TABLE} SET {assignments} WHERE id = ?",
                    tuple(row[c] for c in columns) + (rule.id,),
                )
        except sqlite3.Error as exc:
            raise RuleStoreError(f"rule update failed: {exc}") from exc
        return cursor.rowcount > 0

    def delete_rule(self, rule_id: int) -> bool:
        try:
            conn = self._connect()
            with conn:
                cursor = conn.execute(f"DELETE FROM {RULES_TABLE} WHERE id = ?", (int(rule_id),))
        except sqlite3.Error as exc:
            raise RuleStoreError(f"rule delete failed: {exc}") from exc
        return cursor.rowcount > 0

    def import_csv(self, csv_path: Union[str, Path], replace: bool = False) -> int:
        """
        Load rules from a CSV export with the rule table's columns.

        Returns the number of rows imported.
        """
        frame = pd.read_csv(csv_path, dtype=str, keep_default_na=False)
        missing = {'name'} - set(frame.columns)
        if missing:
            raise RuleStoreError(f"CSV is missing columns: {sorted(missing)}", {"path": str(csv_path)})

        if replace:
            try:
                conn = self._connect()
                with conn:
                    conn.execute(f"DELETE FROM {RULES_TABLE}")
            except sqlite3.Error as exc:
                raise RuleStoreError(f"rule table reset failed: {exc}") from exc

        imported = 0
        for record in frame.to_dict('records'):
            record['id'] = int(record['id']) if str(record.get('id') or '').strip() else 0
            record['priority'] = int(record['priority']) if str(record.get('priority') or '').strip() else 0
            self.insert_rule(PricingRule.from_row(record))
            imported += 1

        logger.info("Rules imported", path=str(csv_path), rules=imported)
        return imported
