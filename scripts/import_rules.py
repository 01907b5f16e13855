#!/usr/bin/env python
"""
Import pricing rules from a CSV export into the rule store, then invalidate
the compiled index so the next request recompiles.

Usage:
    python scripts/import_rules.py rules.csv [--replace]
"""
import argparse
import sys
from pathlib import Path

# Add src to path
src_path = Path(__file__).parent.parent / 'src'
sys.path.insert(0, str(src_path))

from vibe_pricing.cache.cache_manager import build_cache_manager
from vibe_pricing.config.logging_config import configure_from_settings
from vibe_pricing.config.settings import get_settings
from vibe_pricing.errors import RuleStoreError
from vibe_pricing.rules.compile_rules import RuleCompiler
from vibe_pricing.storage.rule_store import SqliteRuleStore


def main():
    parser = argparse.ArgumentParser(description="Import pricing rules from CSV")
    parser.add_argument('csv_path', type=Path)
    parser.add_argument('--replace', action='store_true', help="delete existing rules first")
    args = parser.parse_args()

    settings = get_settings()
    configure_from_settings(settings)

    if not args.csv_path.exists():
        print(f"❌ Rules file not found: {args.csv_path}")
        sys.exit(1)

    store = SqliteRuleStore(settings.rules_db_path)
    try:
        imported = store.import_csv(args.csv_path, replace=args.replace)
    except RuleStoreError as e:
        print(f"❌ Import failed: {e.message}")
        sys.exit(1)

    compiler = RuleCompiler(store, build_cache_manager(settings), settings)
    compiler.invalidate_index()
    stats = compiler.warm_up_index()

    print(f"✅ Imported {imported} rules into {settings.rules_db_path}")
    print(f"   Active rules compiled: {stats['total_rules']}")
    if stats['malformed_rules']:
        print(f"   ⚠️  Rules with malformed data: {stats['malformed_rules']}")


if __name__ == "__main__":
    main()
