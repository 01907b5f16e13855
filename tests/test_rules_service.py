"""Tests for rule CRUD and index invalidation."""
import pytest

from vibe_pricing.engine.models import PricingRule
from vibe_pricing.rules.compile_rules import RuleCompiler
from vibe_pricing.services.rules_service import RulesService
from vibe_pricing.storage.rule_store import SqliteRuleStore


@pytest.fixture
def rule_store():
    store = SqliteRuleStore(':memory:')
    yield store
    store.close()


@pytest.fixture
def rule_compiler(rule_store, cache, settings, clock):
    return RuleCompiler(rule_store, cache, settings, clock=clock)


@pytest.fixture
def service(rule_store, rule_compiler, catalog):
    return RulesService(rule_store, rule_compiler, catalog)


def new_rule(**overrides):
    fields = {
        'id': 0,
        'name': 'Weekend sale',
        'priority': 10,
        'product_conditions': {'target_type': 'categories', 'categories': [5]},
        'price_adjustment': {'type': 'percentage', 'value': -10},
    }
    fields.update(overrides)
    return PricingRule(**fields)


def test_create_rule_serializes_blobs(service):
    created = service.create_rule(new_rule())
    assert created.id == 1
    assert created.product_conditions == '{"target_type": "categories", "categories": [5]}'


def test_create_rule_invalidates_index(service, rule_compiler, clock):
    before = rule_compiler.get_compiled_index()
    assert before.is_empty

    clock.advance(1)
    service.create_rule(new_rule())
    after = rule_compiler.get_compiled_index()

    assert after.compiled_at > before.compiled_at
    assert 1 in after.rule_data


def test_create_rejects_invalid_rule(service):
    with pytest.raises(ValueError, match="Invalid rule"):
        service.create_rule(new_rule(price_adjustment={'type': 'double', 'value': 2}))
    assert service.list_rules() == []


def test_create_rejects_duplicate_id(service):
    service.create_rule(new_rule(id=5))
    with pytest.raises(ValueError, match="already exists"):
        service.create_rule(new_rule(id=5))


def test_update_rule(service, rule_compiler):
    created = service.create_rule(new_rule())
    rule_compiler.get_compiled_index()

    updated = service.update_rule(created.id, {'priority': 99, 'price_adjustment': {'type': 'fixed', 'value': 5}})

    assert updated.priority == 99
    assert rule_compiler.get_compiled_index().rule_data[created.id].adjustment.value == 5.0


def test_update_unknown_rule(service):
    with pytest.raises(ValueError, match="not found"):
        service.update_rule(42, {'priority': 1})


def test_deactivated_rule_leaves_index(service, rule_compiler):
    created = service.create_rule(new_rule())
    service.set_status(created.id, active=False)
    assert created.id not in rule_compiler.get_compiled_index().rule_data


def test_delete_rule(service, rule_compiler):
    created = service.create_rule(new_rule())
    assert service.delete_rule(created.id)
    assert rule_compiler.get_compiled_index().is_empty
    with pytest.raises(ValueError):
        service.delete_rule(created.id)


def test_validate_counts_matching_products(service):
    result = service.validate_rule(new_rule())
    assert result.valid
    assert result.matching_products == 1


def test_validate_warns_on_no_matches_and_zero_adjustment(service):
    result = service.validate_rule(new_rule(
        product_conditions='{"target_type": "specific", "product_ids": [9999]}',
        price_adjustment='{"type": "fixed", "value": 0}',
    ))
    assert result.valid
    assert len(result.warnings) == 2


def test_validate_rejects_negative_fixed_price(service):
    result = service.validate_rule(new_rule(price_adjustment='{"type": "fixed_price", "value": -1}'))
    assert not result.valid


def test_validate_warns_about_priority_ties(service):
    service.create_rule(new_rule())
    result = service.validate_rule(new_rule(name='Copy'))
    assert any('Potential conflict' in w for w in result.warnings)


def test_get_stats(service):
    service.create_rule(new_rule())
    service.create_rule(new_rule(name='All', product_conditions={'target_type': 'all'}))
    service.create_rule(new_rule(name='Off', status='inactive'))

    stats = service.get_stats()

    assert stats['total'] == 3
    assert stats['active'] == 2
    assert stats['inactive'] == 1
    assert stats['by_target'] == {'categories': 1, 'all': 1}
    assert stats['by_adjustment'] == {'percentage': 2}
