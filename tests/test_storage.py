"""Tests for the SQLite rule store and the product catalogs."""
import pytest

from vibe_pricing.engine.models import Product
from vibe_pricing.errors import BatchLoadFailure, CatalogError, RuleStoreError
from vibe_pricing.rules.compile_rules import RuleCompiler
from vibe_pricing.storage.catalog import CsvCatalog, InMemoryCatalog
from vibe_pricing.storage.rule_store import SqliteRuleStore


@pytest.fixture
def rule_store():
    store = SqliteRuleStore(':memory:')
    yield store
    store.close()


def test_insert_assigns_ids_and_timestamps(rule_store, make_rule):
    created = rule_store.insert_rule(make_rule(0, name='Autumn'))
    assert created.id == 1
    assert created.name == 'Autumn'
    assert created.created_at is not None
    assert created.product_conditions == '{"target_type": "all"}'


def test_load_active_rules_order_and_filter(rule_store, make_rule):
    rule_store.insert_rule(make_rule(0, priority=5))
    rule_store.insert_rule(make_rule(0, priority=10))
    rule_store.insert_rule(make_rule(0, priority=5))
    rule_store.insert_rule(make_rule(0, priority=50, status='inactive'))

    rules = rule_store.load_active_rules()

    assert [(r.priority, r.id) for r in rules] == [(10, 2), (5, 1), (5, 3)]
    assert len(rule_store.list_rules()) == 4


def test_update_and_delete(rule_store, make_rule):
    rule = rule_store.insert_rule(make_rule(0))
    rule.priority = 42
    rule.referrer_conditions = '{"domains": ["vibe.ir"]}'

    assert rule_store.update_rule(rule)
    reloaded = rule_store.get_rule(rule.id)
    assert reloaded.priority == 42
    assert reloaded.referrer_conditions == '{"domains": ["vibe.ir"]}'

    assert rule_store.delete_rule(rule.id)
    assert rule_store.get_rule(rule.id) is None
    assert not rule_store.delete_rule(rule.id)


def test_read_failure_raises_rule_store_error(rule_store):
    rule_store._connect().execute("DROP TABLE vibe_pricing_rules")
    with pytest.raises(RuleStoreError):
        rule_store.load_active_rules()


def test_unreadable_rows_are_skipped(rule_store, make_rule, cache, settings, clock):
    conn = rule_store._connect()
    with conn:
        conn.execute("INSERT INTO vibe_pricing_rules (name, priority) VALUES ('bad', 'high')")
    good = rule_store.insert_rule(make_rule(0, priority=5, name='ok'))

    assert [r.name for r in rule_store.load_active_rules()] == ['ok']

    index = RuleCompiler(rule_store, cache, settings, clock=clock).get_compiled_index()
    assert list(index.rule_data) == [good.id], "One bad row must not cost the other rules"


def test_import_csv(rule_store, tmp_path):
    csv_path = tmp_path / 'rules.csv'
    csv_path.write_text(
        'name,priority,status,product_conditions,price_adjustment\n'
        'Sale,10,active,"{""target_type"": ""all""}","{""type"": ""percentage"", ""value"": -10}"\n'
        'Old,5,inactive,,\n',
        encoding='utf-8',
    )

    assert rule_store.import_csv(csv_path) == 2

    active = rule_store.load_active_rules()
    assert [r.name for r in active] == ['Sale']
    assert active[0].price_adjustment == '{"type": "percentage", "value": -10}'


def test_import_csv_requires_name_column(rule_store, tmp_path):
    csv_path = tmp_path / 'rules.csv'
    csv_path.write_text('priority\n1\n', encoding='utf-8')
    with pytest.raises(RuleStoreError):
        rule_store.import_csv(csv_path)


def test_rule_file_on_disk(tmp_path, make_rule):
    path = tmp_path / 'data' / 'rules.sqlite3'
    store = SqliteRuleStore(path)
    store.insert_rule(make_rule(0))
    store.close()

    assert len(SqliteRuleStore(path).load_active_rules()) == 1


# -- catalogs ----------------------------------------------------------------

def test_in_memory_catalog_skips_unknown_ids():
    catalog = InMemoryCatalog([Product(id=1), Product(id=2)])
    assert set(catalog.get_products([1, 3])) == {1}
    assert catalog.get_product(3) is None


def test_csv_catalog(tmp_path):
    csv_path = tmp_path / 'catalog.csv'
    csv_path.write_text(
        'id,name,price,type,parent_id,category_ids,category_slugs,tag_ids,tag_slugs\n'
        '10,Runner,1200,variable,,5|6,Shoes|Running,7,sale\n'
        '11,Runner 42,1250,variation,10,,,,\n'
        'bad,Broken,1,simple,,,,,\n',
        encoding='utf-8',
    )
    catalog = CsvCatalog(csv_path)

    runner = catalog.get_product(10)
    assert runner.category_ids == (5, 6)
    assert runner.category_slugs == ('shoes', 'running')
    assert runner.tag_ids == (7,)
    assert runner.parent_id is None

    variation = catalog.get_product(11)
    assert variation.is_variation
    assert variation.parent_id == 10
    assert len(catalog.all_products()) == 2, "Unparseable rows are skipped"


def test_csv_catalog_missing_file(tmp_path):
    catalog = CsvCatalog(tmp_path / 'missing.csv')
    with pytest.raises(CatalogError):
        catalog.get_product(1)
    with pytest.raises(BatchLoadFailure):
        catalog.get_products([1, 2])
