"""Settings parsing and production guards."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from auditchain.config.settings import Environment, Settings


def test_cors_origins_accept_comma_separated_string():
    settings = Settings(cors_origins="https://a.example, https://b.example,")
    assert settings.cors_origins == ["https://a.example", "https://b.example"]


@pytest.mark.parametrize(
    "overrides",
    [{"debug": True}, {"db_echo": True}, {"cors_origins": ["*"]}],
)
def test_production_rejects_unsafe_options(overrides):
    with pytest.raises(ValidationError):
        Settings(environment=Environment.PRODUCTION, **overrides)


def test_wildcard_origin_is_allowed_outside_production():
    assert Settings(environment=Environment.DEVELOPMENT, cors_origins=["*"]).cors_origins == ["*"]


def test_cache_tiers_must_be_ordered():
    with pytest.raises(ValidationError):
        Settings(cache_ttl_recent_seconds=600, cache_ttl_old_seconds=300)
