"""
Centralized settings for the dynamic pricing engine.

Values come from defaults overridden by ``VIBE_PRICING_*`` environment
variables. Components receive a ``Settings`` instance explicitly; the module
singleton is only a convenience for scripts.
"""
import os
from pathlib import Path
from dataclasses import dataclass
from typing import Optional


APPLY_MODES = ('always', 'combined', 'payment_method', 'referrer')

ENV_PREFIX = 'VIBE_PRICING_'


def get_project_root() -> Path:
    """Get the project root directory (where pyproject.toml lives)."""
    current = Path(__file__).resolve()
    for parent in current.parents:
        if (parent / 'pyproject.toml').exists():
            return parent
    # Fallback to 4 levels up from this file
    return Path(__file__).resolve().parent.parent.parent.parent


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(ENV_PREFIX + name)
    if value is None or value.strip() == '':
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    value = _env(name)
    return int(value) if value is not None else default


def _env_bool(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.lower() in ('true', '1', 'yes', 'on')


def _env_path(name: str, default: Optional[Path]) -> Optional[Path]:
    value = _env(name)
    return Path(value) if value is not None else default


@dataclass
class Settings:
    """Engine settings with sensible defaults."""

    # Context matching
    apply_mode: str = 'combined'
    gateway_id: str = 'vibe'
    target_domains: tuple = ('vibe.ir',)

    # Currency precision used when rounding adjusted prices
    price_decimals: int = 2

    # Cache lifetimes (seconds)
    index_ttl: int = 6 * 3600
    product_rules_ttl: int = 3600
    price_ttl: int = 1800
    cart_ttl: int = 1800
    cache_default_ttl: int = 3600
    cache_namespace: str = 'vibe_dynamic_pricing'

    # Backends; a tier is only built when its location is configured
    redis_url: Optional[str] = None
    cache_db_path: Optional[Path] = None
    rules_db_path: Optional[Path] = None

    # Logging
    log_level: str = 'info'
    log_json: bool = False

    # Kill switch: engine answers "no rule" everywhere while set
    emergency_disable: bool = False

    def __post_init__(self):
        if self.apply_mode not in APPLY_MODES:
            raise ValueError(
                f"apply_mode must be one of {APPLY_MODES}, got '{self.apply_mode}'"
            )
        self.target_domains = tuple(d.strip().lower() for d in self.target_domains if d.strip())

    @classmethod
    def load(cls, project_root: Optional[Path] = None) -> 'Settings':
        """Load settings from the environment."""
        root = project_root or get_project_root()
        data_dir = root / 'data'

        domains = _env('TARGET_DOMAINS')
        return cls(
            apply_mode=_env('APPLY_MODE', 'combined'),
            gateway_id=_env('GATEWAY_ID', 'vibe'),
            target_domains=tuple(domains.split(',')) if domains else ('vibe.ir',),
            price_decimals=_env_int('PRICE_DECIMALS', 2),
            index_ttl=_env_int('INDEX_TTL', 6 * 3600),
            product_rules_ttl=_env_int('PRODUCT_RULES_TTL', 3600),
            price_ttl=_env_int('PRICE_TTL', 1800),
            cart_ttl=_env_int('CART_TTL', 1800),
            cache_default_ttl=_env_int('CACHE_DEFAULT_TTL', 3600),
            cache_namespace=_env('CACHE_NAMESPACE', 'vibe_dynamic_pricing'),
            redis_url=_env('REDIS_URL'),
            cache_db_path=_env_path('CACHE_DB', data_dir / 'pricing_cache.sqlite3'),
            rules_db_path=_env_path('RULES_DB', data_dir / 'pricing_rules.sqlite3'),
            log_level=_env('LOG_LEVEL', 'info'),
            log_json=_env_bool('LOG_JSON', False),
            emergency_disable=_env_bool('EMERGENCY_DISABLE', False),
        )


# Default settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def reset_settings():
    """Forget the cached settings (tests, reconfiguration)."""
    global _settings
    _settings = None
