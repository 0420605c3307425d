"""Tests for environment configuration and its safe defaults"""

from ingestion.config import Settings
from ingestion.index_naming import RotationPolicy
from shared.identifiers import RandomSource


def test_defaults_without_environment():
    settings = Settings.from_env({})

    assert settings.elasticsearch_host == "http://elasticsearch:9200"
    assert settings.index_rotation is RotationPolicy.NO_ROTATION
    assert settings.index_prefix == "analytics"
    assert settings.debug_events is False
    assert settings.forward_timeout_seconds == 10.0
    assert settings.endpoint_store == "file"
    assert settings.endpoints_dir == "/tmp/endpoints"
    assert settings.random_seed is None
    assert settings.metrics_port is None


def test_values_from_environment():
    settings = Settings.from_env({
        "ELASTICSEARCH_HOST": "http://localhost:9200/",
        "INDEX_ROTATION": "one_week",
        "DEBUG_EVENTS": "yes",
        "FORWARD_TIMEOUT_SECONDS": "2.5",
        "ENDPOINT_STORE": "DynamoDB",
        "RANDOM_SEED": "11",
        "METRICS_PORT": "9100",
        "PORT": "8080",
    })

    assert settings.elasticsearch_host == "http://localhost:9200"
    assert settings.index_rotation is RotationPolicy.ONE_WEEK
    assert settings.debug_events is True
    assert settings.forward_timeout_seconds == 2.5
    assert settings.endpoint_store == "dynamodb"
    assert settings.random_seed == 11
    assert settings.metrics_port == 9100
    assert settings.port == 8080


def test_invalid_values_fall_back_to_defaults():
    settings = Settings.from_env({
        "INDEX_ROTATION": "fortnightly",
        "FORWARD_TIMEOUT_SECONDS": "-1",
        "ENDPOINT_STORE": "postgres",
        "RANDOM_SEED": "abc",
        "PORT": "http",
    })

    assert settings.index_rotation is RotationPolicy.NO_ROTATION
    assert settings.forward_timeout_seconds == 10.0
    assert settings.endpoint_store == "file"
    assert settings.random_seed is None
    assert settings.port == 3000


def test_seeded_random_source_is_reproducible():
    first, second = RandomSource(seed=7), RandomSource(seed=7)

    assert [first.request_id() for _ in range(3)] == [second.request_id() for _ in range(3)]
    assert first.cohort_id() == second.cohort_id()
