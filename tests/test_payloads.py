"""Tests for payloads.py: request body parsing and validation."""

import pytest

from distance_profile import MissingCoordinatesError, ValidationError
from payloads import (
    parse_ad_hoc_profile_request,
    parse_categories,
    parse_distances,
    parse_personalized_profile_request,
    parse_property_profile_request,
    parse_radius_update_request,
)


class TestParseCategories:
    def test_object(self):
        assert parse_categories({"schools": True, "gym": False}) == {"schools": True, "gyms": False}

    def test_list(self):
        assert parse_categories(["parks", "transit"]) == {"parks": True, "transit_stations": True}

    def test_none(self):
        assert parse_categories(None) is None

    def test_unknown(self):
        with pytest.raises(ValidationError, match="volcanoes"):
            parse_categories({"volcanoes": True})

    def test_non_bool_flag(self):
        with pytest.raises(ValidationError):
            parse_categories({"schools": "yes"})

    def test_wrong_type(self):
        with pytest.raises(ValidationError):
            parse_categories("schools")


class TestParseDistances:
    def test_valid(self):
        assert parse_distances({"schools": 1000, "gym": 2500.4}) == {"schools": 1000, "gyms": 2500}

    @pytest.mark.parametrize("radius", [0, 0.4, -5, 50001, True, "1000", None,
                                        float("nan"), float("inf")])
    def test_invalid_radius(self, radius):
        with pytest.raises(ValidationError):
            parse_distances({"schools": radius})

    def test_rounds_before_range_check(self):
        assert parse_distances({"schools": 0.6}) == {"schools": 1}
        assert parse_distances({"schools": 50000.4}) == {"schools": 50000}

    def test_max_radius_allowed(self):
        assert parse_distances({"schools": 50000}) == {"schools": 50000}

    def test_unknown_category(self):
        with pytest.raises(ValidationError):
            parse_distances({"volcanoes": 1000})

    def test_wrong_type(self):
        with pytest.raises(ValidationError):
            parse_distances([1000])


class TestPropertyProfileRequest:
    def test_empty_body(self):
        req = parse_property_profile_request(None)
        assert req.refresh is False
        assert req.categories is None
        assert req.distances is None

    def test_full_body(self):
        req = parse_property_profile_request({
            "refresh": True,
            "categories": {"schools": True},
            "distances": {"schools": 1500},
            "profile_name": "  Family  ",
        })
        assert req.refresh is True
        assert req.categories == {"schools": True}
        assert req.distances == {"schools": 1500}
        assert req.profile_name == "Family"

    def test_template_seeds_and_explicit_values_win(self):
        req = parse_property_profile_request({
            "template": "healthcare",
            "distances": {"hospitals": 2000},
            "categories": {"services": False},
        })
        assert req.categories["hospitals"] is True
        assert req.categories["services"] is False
        assert req.distances["hospitals"] == 2000
        assert req.distances["pharmacy"] == 3000
        assert "services" not in req.distances

    def test_unknown_template(self):
        with pytest.raises(ValidationError):
            parse_property_profile_request({"template": "castle"})

    def test_refresh_must_be_bool(self):
        with pytest.raises(ValidationError):
            parse_property_profile_request({"refresh": "true"})

    def test_non_object_body(self):
        with pytest.raises(ValidationError):
            parse_property_profile_request(["refresh"])


class TestAdHocProfileRequest:
    def test_valid(self):
        req = parse_ad_hoc_profile_request({
            "latitude": 49.28, "longitude": -123.12, "address": "1 Main St",
        })
        assert (req.latitude, req.longitude) == (49.28, -123.12)
        assert req.address == "1 Main St"

    def test_integer_coordinates(self):
        req = parse_ad_hoc_profile_request({"latitude": 49, "longitude": -123})
        assert req.latitude == 49.0

    def test_missing_coordinates(self):
        with pytest.raises(MissingCoordinatesError):
            parse_ad_hoc_profile_request({"latitude": 49.28})

    @pytest.mark.parametrize("body", [
        {"latitude": 91, "longitude": 0},
        {"latitude": 0, "longitude": -181},
        {"latitude": True, "longitude": 0},
        {"latitude": "49.28", "longitude": -123.12},
    ])
    def test_invalid_coordinates(self, body):
        with pytest.raises(ValidationError):
            parse_ad_hoc_profile_request(body)


class TestRadiusUpdateRequest:
    def test_valid(self):
        req = parse_radius_update_request({"distances": {"parks": 2000}, "refresh": True})
        assert req.distances == {"parks": 2000}
        assert req.refresh is True

    def test_empty_distances(self):
        with pytest.raises(ValidationError):
            parse_radius_update_request({"distances": {}})

    def test_missing_distances(self):
        with pytest.raises(ValidationError):
            parse_radius_update_request({})


class TestPersonalizedProfileRequest:
    def test_category_list(self):
        req = parse_personalized_profile_request({"categories": ["parks", "gym", "gyms"]})
        assert req.categories == ["parks", "gyms"]
        assert req.category_map == {"parks": True, "gyms": True}
        assert req.distances == {"parks": 3000, "gyms": 3000}

    def test_questionnaire(self):
        req = parse_personalized_profile_request({
            "responses": {"family_situation": "young_children"},
            "distances": {"schools": 1000},
        })
        assert req.categories == ["schools", "daycare", "parks"]
        assert req.distances["schools"] == 1000
        assert req.distances["daycare"] == 3000

    def test_questionnaire_without_matches(self):
        with pytest.raises(ValidationError):
            parse_personalized_profile_request({"responses": {"family_situation": "none"}})

    def test_neither(self):
        with pytest.raises(ValidationError):
            parse_personalized_profile_request({})

    def test_empty_list(self):
        with pytest.raises(ValidationError):
            parse_personalized_profile_request({"categories": []})

    def test_unknown_category(self):
        with pytest.raises(ValidationError):
            parse_personalized_profile_request({"categories": ["volcanoes"]})
