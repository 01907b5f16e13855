"""Storage subpackage - durable rule records and product catalog adapters."""
from .rule_store import RuleStore, SqliteRuleStore
from .catalog import CsvCatalog, InMemoryCatalog, ProductCatalog

__all__ = ['RuleStore', 'SqliteRuleStore', 'CsvCatalog', 'InMemoryCatalog', 'ProductCatalog']
