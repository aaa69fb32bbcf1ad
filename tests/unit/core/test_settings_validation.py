import pytest
from pydantic import ValidationError

from app.shared.core.config import Settings


def _settings(**overrides):
    return Settings(_env_file=None, **overrides)


def test_testing_flag_is_rejected_in_production():
    with pytest.raises(ValidationError, match="TESTING must be false"):
        _settings(TESTING=True, ENVIRONMENT="production")


def test_payment_provider_is_normalized():
    settings = _settings(TESTING=True, PAYMENT_PROVIDER="  PayStack ")
    assert settings.PAYMENT_PROVIDER == "paystack"

    with pytest.raises(ValidationError, match="PAYMENT_PROVIDER must be one of"):
        _settings(TESTING=True, PAYMENT_PROVIDER="paypal")


def test_tree_depth_must_be_positive():
    with pytest.raises(ValidationError, match="ENTITY_TREE_MAX_DEPTH"):
        _settings(TESTING=True, ENTITY_TREE_MAX_DEPTH=0)


def test_database_url_required_outside_tests():
    with pytest.raises(ValidationError, match="DATABASE_URL is required"):
        _settings(TESTING=False, DATABASE_URL=None)


def test_production_requires_webhook_secret():
    with pytest.raises(ValidationError, match="STRIPE_WEBHOOK_SECRET is required"):
        _settings(
            TESTING=False,
            ENVIRONMENT="production",
            DATABASE_URL="postgresql+asyncpg://db/creditline",
            STRIPE_WEBHOOK_SECRET=None,
        )

    settings = _settings(
        TESTING=False,
        ENVIRONMENT="production",
        DATABASE_URL="postgresql+asyncpg://db/creditline",
        STRIPE_WEBHOOK_SECRET="whsec_live",
    )
    assert settings.is_production is True
