"""Tests for config resolution, experiment bucketing and genre normalization."""
import json
import logging

import pytest
from pydantic import ValidationError

from shelfrank.services.recommendation_config import (
    DEFAULT_CONFIG,
    ABTestingSettings,
    ConfigurationRegistry,
    ExperimentVariant,
    algorithm_tag,
    apply_overrides,
    experiment_bucket,
    genre_search_terms,
    normalize_genre,
    resolve_config,
    validate_weights,
)


def _experiments_on():
    return DEFAULT_CONFIG.model_copy(update={
        "ab_testing": DEFAULT_CONFIG.ab_testing.model_copy(update={"enabled": True}),
    })


def test_default_weights_sum_to_one():
    assert sum(DEFAULT_CONFIG.scoring.weights().values()) == pytest.approx(1.0)
    assert validate_weights(DEFAULT_CONFIG) is True


def test_validate_weights_warns_but_never_raises(caplog):
    skewed = apply_overrides(DEFAULT_CONFIG, {"scoring": {"genre_match": 0.9}})
    with caplog.at_level(logging.WARNING):
        assert validate_weights(skewed) is False
    assert "Scoring weights sum to" in caplog.text


def test_config_is_immutable():
    with pytest.raises(ValidationError):
        DEFAULT_CONFIG.scoring.genre_match = 0.1


def test_apply_overrides_merges_field_by_field():
    merged = apply_overrides(DEFAULT_CONFIG, {"scoring": {"friend_activity": 0.2}})
    assert merged.scoring.friend_activity == 0.2
    # untouched siblings keep their defaults
    assert merged.scoring.genre_match == DEFAULT_CONFIG.scoring.genre_match
    assert merged.quality == DEFAULT_CONFIG.quality


def test_resolve_config_returns_base_when_experiments_disabled():
    assert resolve_config("anyone") is DEFAULT_CONFIG
    assert algorithm_tag(resolve_config("anyone")) == "hybrid"


def test_resolve_config_is_deterministic():
    base = _experiments_on()
    first = resolve_config("user-42", base)
    for _ in range(5):
        assert resolve_config("user-42", base) == first


def test_users_in_same_bucket_share_variant_and_others_get_control():
    """Scenario C: same bucket, same variant config; a different bucket gets control."""
    base = _experiments_on()
    assert experiment_bucket("user-ab") == experiment_bucket("user-ba")

    a = resolve_config("user-ab", base)
    b = resolve_config("user-ba", base)
    assert a == b
    assert a.active_variant == "high_diversity"
    assert a.diversity.pure_quality_ratio == 0.5

    c = resolve_config("user-7", base)
    assert experiment_bucket("user-7") != experiment_bucket("user-ab")
    assert c.active_variant == "control"
    assert c.diversity == DEFAULT_CONFIG.diversity
    assert algorithm_tag(c) == "hybrid"
    assert algorithm_tag(a) == "hybrid:high_diversity"


def test_users_outside_every_range_get_control():
    base = DEFAULT_CONFIG.model_copy(update={
        "ab_testing": ABTestingSettings(
            enabled=True,
            variants=[ExperimentVariant(name="tiny", percentage=0, overrides={"scoring": {"genre_match": 0.1}})],
        ),
    })
    resolved = resolve_config("user-7", base)
    assert resolved.active_variant == "control"
    assert resolved.scoring == DEFAULT_CONFIG.scoring


def test_variant_percentages_over_100_are_rejected():
    with pytest.raises(ValidationError):
        ABTestingSettings(variants=[
            ExperimentVariant(name="a", percentage=60),
            ExperimentVariant(name="b", percentage=60),
        ])


@pytest.mark.parametrize("raw, expected", [
    ("Sci-Fi", "Science Fiction"),
    ("epic fantasy", "Fantasy"),
    ("Crime", "Mystery"),
    ("Memoir", "Biography"),
    ("Poetry", "Poetry"),
])
def test_normalize_genre(raw, expected):
    assert normalize_genre(raw) == expected


def test_genre_search_terms_include_synonyms_once():
    terms = genre_search_terms("Fantasy")
    assert terms[0] == "Fantasy"
    assert "Epic Fantasy" in terms
    assert len({t.lower() for t in terms}) == len(terms)


def test_registry_loads_overrides_and_experiment_flag(tmp_path):
    path = tmp_path / "recs.json"
    path.write_text(json.dumps({"cache": {"ttl_hours": 2.0}}))

    registry = ConfigurationRegistry(overrides_path=str(path), experiments_enabled=True)

    assert registry.base.cache.ttl_hours == 2.0
    assert registry.base.ab_testing.enabled is True
    assert registry.resolve_config("user-ab").active_variant == "high_diversity"


def test_registry_falls_back_to_defaults_on_bad_overrides(tmp_path, caplog):
    path = tmp_path / "recs.json"
    path.write_text(json.dumps({"scoring": {"no_such_weight": 1.0}}))

    with caplog.at_level(logging.WARNING):
        registry = ConfigurationRegistry(overrides_path=str(path))

    assert registry.base == DEFAULT_CONFIG
    assert "using defaults" in caplog.text


def test_registry_resolution_failure_returns_defaults(monkeypatch):
    registry = ConfigurationRegistry(experiments_enabled=True)

    def boom(*args, **kwargs):
        raise RuntimeError("corrupt experiment definition")

    monkeypatch.setattr("shelfrank.services.recommendation_config.resolve_config", boom)
    assert registry.resolve_config("user-1") is DEFAULT_CONFIG
