"""
Tests for the per-region rule table and RegionPolicyResolver.
"""

import copy
import json
from datetime import timedelta

import pytest

from privacy.errors import ConfigurationError, InvalidPurposeError, UnknownRegionError
from privacy.models import DataProcessingPurpose, LegalBasis, RegionCode, RightsRequestType
from privacy.regions import DEFAULT_REGION_RULES, RegionPolicyResolver


class TestDefaultRules:
    """The built-in table covers every region and request type."""

    def test_every_region_is_configured(self, resolver):
        assert set(resolver.regions()) == set(RegionCode)

    @pytest.mark.parametrize(
        "region,minimum_age",
        [("EU", 16), ("US", 13), ("CN", 14), ("HK", 18), ("JP", 16), ("KR", 14)],
    )
    def test_minimum_age(self, resolver, region, minimum_age):
        assert resolver.minimum_age(region) == minimum_age

    def test_us_erasure_deadline_is_45_days(self, resolver):
        assert resolver.deadline_days("US", RightsRequestType.ERASURE) == 45

    def test_taiwan_access_requests_are_faster(self, resolver):
        assert resolver.deadline_days("TW", RightsRequestType.ACCESS) == 15
        assert resolver.deadline_days("TW", RightsRequestType.ERASURE) == 30

    def test_eu_extension_is_60_days(self, resolver):
        assert resolver.extension_days(RegionCode.EU, RightsRequestType.ACCESS) == 60

    def test_eu_marketing_requires_consent(self, resolver):
        assert resolver.legal_bases_allowed("EU", "marketing") == frozenset({LegalBasis.CONSENT})

    def test_us_marketing_allows_legitimate_interest(self, resolver):
        assert LegalBasis.LEGITIMATE_INTEREST in resolver.legal_bases_allowed("US", "marketing")

    def test_required_version_and_validity(self, resolver):
        assert resolver.required_consent_version("EU", DataProcessingPurpose.ANALYTICS) == "2.0"
        assert resolver.consent_validity("EU") == timedelta(days=365)
        assert resolver.renewal_grace("EU") == timedelta(days=30)
        assert resolver.renewal_grace("KR") == timedelta(days=14)

    def test_parental_timeout_defaults_to_14_days(self, resolver):
        assert resolver.parental_consent_timeout(None) == timedelta(days=14)
        assert resolver.parental_consent_timeout("EU") == timedelta(days=14)

    def test_requirements_are_read_only(self, resolver):
        requirement = resolver.requirements_for("EU")
        with pytest.raises(TypeError):
            requirement.request_deadline_days[RightsRequestType.ACCESS] = 1
        with pytest.raises(AttributeError):
            requirement.minimum_age = 12


def test_unknown_region_code():
    resolver = RegionPolicyResolver.default()
    with pytest.raises(UnknownRegionError):
        resolver.requirements_for("XX")


def test_region_missing_from_table():
    resolver = RegionPolicyResolver.from_mapping({"EU": DEFAULT_REGION_RULES["EU"]})
    with pytest.raises(UnknownRegionError):
        resolver.minimum_age("US")


def test_unknown_purpose(resolver):
    with pytest.raises(InvalidPurposeError):
        resolver.legal_bases_allowed("EU", "telemetry")


class TestConsistencyChecks:
    """Incomplete tables fail at construction with ConfigurationError."""

    def _rules(self):
        return {"EU": copy.deepcopy(DEFAULT_REGION_RULES["EU"])}

    def test_missing_deadline_for_request_type(self):
        rules = self._rules()
        del rules["EU"]["request_deadline_days"]["portability"]
        with pytest.raises(ConfigurationError, match="portability"):
            RegionPolicyResolver.from_mapping(rules)

    def test_missing_legal_bases_for_purpose(self):
        rules = self._rules()
        rules["EU"]["allowed_legal_bases"]["marketing"] = []
        with pytest.raises(ConfigurationError, match="marketing"):
            RegionPolicyResolver.from_mapping(rules)

    def test_missing_required_version(self):
        rules = self._rules()
        del rules["EU"]["required_consent_versions"]["analytics"]
        with pytest.raises(ConfigurationError):
            RegionPolicyResolver.from_mapping(rules)

    def test_non_positive_minimum_age(self):
        rules = self._rules()
        rules["EU"]["minimum_age"] = 0
        with pytest.raises(ConfigurationError):
            RegionPolicyResolver.from_mapping(rules)

    def test_unknown_region_key(self):
        with pytest.raises(ConfigurationError):
            RegionPolicyResolver.from_mapping({"ZZ": DEFAULT_REGION_RULES["EU"]})

    def test_unknown_legal_basis(self):
        rules = self._rules()
        rules["EU"]["allowed_legal_bases"]["analytics"] = ["because"]
        with pytest.raises(ConfigurationError):
            RegionPolicyResolver.from_mapping(rules)

    def test_empty_table(self):
        with pytest.raises(ConfigurationError):
            RegionPolicyResolver.from_mapping({})


class TestFromFile:
    def test_loads_json_document(self, tmp_path):
        path = tmp_path / "regions.json"
        path.write_text(json.dumps({"JP": DEFAULT_REGION_RULES["JP"]}), encoding="utf-8")

        resolver = RegionPolicyResolver.from_file(path)

        assert resolver.regions() == [RegionCode.JP]
        assert resolver.deadline_days("JP", RightsRequestType.ACCESS) == 14

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            RegionPolicyResolver.from_file(tmp_path / "missing.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "regions.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            RegionPolicyResolver.from_file(path)

    def test_round_trips_through_to_dict(self, tmp_path, resolver):
        path = tmp_path / "regions.json"
        dumped = {region.value: resolver.requirements_for(region).to_dict() for region in resolver.regions()}
        path.write_text(json.dumps(dumped), encoding="utf-8")

        reloaded = RegionPolicyResolver.from_file(path)

        assert reloaded.requirements_for("TW") == resolver.requirements_for("TW")
