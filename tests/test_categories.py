"""Tests for categories.py: the category vocabulary, templates, and questionnaire mapping."""

import pytest

from categories import (
    CATEGORIES,
    CATEGORY_ALIASES,
    DEFAULT_CATEGORIES,
    MAX_RADIUS_M,
    PROFILE_TEMPLATES,
    categories_from_questionnaire,
    default_category_map,
    default_distance_map,
    enabled_categories,
    resolve_category,
    vocabulary_dict,
)


class TestVocabulary:
    def test_defaults_are_known_categories(self):
        assert all(name in CATEGORIES for name in DEFAULT_CATEGORIES)

    def test_aliases_point_at_known_categories(self):
        assert all(target in CATEGORIES for target in CATEGORY_ALIASES.values())

    def test_default_radii_within_limit(self):
        assert all(0 < c.default_radius_m <= MAX_RADIUS_M for c in CATEGORIES.values())

    def test_every_category_has_a_place_type(self):
        assert all(c.place_types for c in CATEGORIES.values())

    def test_templates_only_use_known_categories(self):
        for template in PROFILE_TEMPLATES.values():
            assert all(name in CATEGORIES for name in template.distance_map)
            assert all(0 < r <= MAX_RADIUS_M for r in template.distance_map.values())


class TestResolveCategory:
    @pytest.mark.parametrize("name,expected", [
        ("schools", "schools"),
        ("  Parks ", "parks"),
        ("gym", "gyms"),
        ("bus_stops", "transit_stations"),
        ("coffee", "dining"),
    ])
    def test_known(self, name, expected):
        assert resolve_category(name) == expected

    @pytest.mark.parametrize("name", ["volcanoes", "", None, 5, "walkability"])
    def test_unknown(self, name):
        assert resolve_category(name) is None


class TestMaps:
    def test_default_category_map(self):
        cats = default_category_map()
        assert list(cats) == list(DEFAULT_CATEGORIES)
        assert all(cats.values())

    def test_default_distance_map(self):
        assert default_distance_map(["hospitals", "parks"]) == {"hospitals": 10000, "parks": 3000}

    def test_enabled_categories_keeps_order_and_drops_false(self):
        assert enabled_categories({"b": True, "a": False, "c": 1}) == ["b", "c"]


class TestQuestionnaire:
    def test_young_children(self):
        result = categories_from_questionnaire({"family_situation": "young_children"})
        assert result == ["schools", "daycare", "parks"]

    def test_list_answers_and_dedupe(self):
        result = categories_from_questionnaire({
            "lifestyle_priorities": ["fitness", "transportation"],
            "transportation": "transit_primary",
        })
        assert result == ["gyms", "parks", "transit_stations"]

    def test_unsearchable_answers_dropped(self):
        result = categories_from_questionnaire({"transportation": "walking_cycling"})
        assert result == ["parks"]

    def test_only_vocabulary_categories(self):
        result = categories_from_questionnaire({
            "family_situation": "teenagers",
            "lifestyle_priorities": ["dining", "shopping", "education", "healthcare"],
            "transportation": "car_primary",
            "work_location": "downtown",
            "future_plans": "retirement",
        })
        assert all(name in CATEGORIES for name in result)
        assert len(result) == len(set(result))

    def test_empty(self):
        assert categories_from_questionnaire({}) == []


class TestVocabularyDict:
    def test_shape(self):
        data = vocabulary_dict()
        assert {c["name"] for c in data["categories"]} == set(CATEGORIES)
        assert data["defaults"] == list(DEFAULT_CATEGORIES)
        assert data["max_radius_m"] == MAX_RADIUS_M
        assert {t["id"] for t in data["templates"]} == set(PROFILE_TEMPLATES)
