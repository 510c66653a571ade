"""Per-jurisdiction privacy rules.

The rule table is plain data (JSON-compatible dictionaries). It is parsed once,
validated for completeness and frozen; every other component receives the
resolver by injection and only ever reads from it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

from .errors import ConfigurationError, InvalidPurposeError, UnknownRegionError
from .models import (
    DataProcessingPurpose,
    LegalBasis,
    PrivacyLaw,
    RegionCode,
    RightsRequestType,
    coerce_enum,
)

logger = logging.getLogger(__name__)

DEFAULT_PARENTAL_CONSENT_TIMEOUT_DAYS = 14
DEFAULT_RENEWAL_GRACE_DAYS = 30

RegionLike = Union[RegionCode, str]
PurposeLike = Union[DataProcessingPurpose, str]


@dataclass(frozen=True)
class PrivacyLawRequirement:
    region: RegionCode
    laws: Tuple[PrivacyLaw, ...]
    request_deadline_days: Mapping[RightsRequestType, int]
    extension_days: Mapping[RightsRequestType, int]
    minimum_age: int
    parental_consent_required: bool
    allowed_legal_bases: Mapping[DataProcessingPurpose, FrozenSet[LegalBasis]]
    required_consent_versions: Mapping[DataProcessingPurpose, str]
    consent_validity_days: int
    parental_consent_timeout_days: int = DEFAULT_PARENTAL_CONSENT_TIMEOUT_DAYS
    renewal_grace_days: int = DEFAULT_RENEWAL_GRACE_DAYS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "region": self.region.value,
            "laws": [law.value for law in self.laws],
            "request_deadline_days": {k.value: v for k, v in self.request_deadline_days.items()},
            "extension_days": {k.value: v for k, v in self.extension_days.items()},
            "minimum_age": self.minimum_age,
            "parental_consent_required": self.parental_consent_required,
            "allowed_legal_bases": {
                purpose.value: sorted(basis.value for basis in bases)
                for purpose, bases in self.allowed_legal_bases.items()
            },
            "required_consent_versions": {k.value: v for k, v in self.required_consent_versions.items()},
            "consent_validity_days": self.consent_validity_days,
            "parental_consent_timeout_days": self.parental_consent_timeout_days,
            "renewal_grace_days": self.renewal_grace_days,
        }


def _per_type(days: int, **overrides: int) -> Dict[str, int]:
    table = {request_type.value: days for request_type in RightsRequestType}
    table.update(overrides)
    return table


_CONSENT_ONLY = ["consent"]
_OPT_OUT = ["consent", "legitimate_interest"]
_ESSENTIAL = ["contract", "legal_obligation", "legitimate_interest", "vital_interest", "consent"]

_VERSIONS = {
    "essential": "1.0",
    "analytics": "2.0",
    "marketing": "2.0",
    "personalization": "1.0",
    "third_party_sharing": "2.0",
}

# Built-in rule table. Deployments can replace it with a JSON document of the
# same shape (see RegionPolicyResolver.from_file).
DEFAULT_REGION_RULES: Dict[str, Dict[str, Any]] = {
    "EU": {
        "laws": ["GDPR"],
        "request_deadline_days": _per_type(30),
        "extension_days": _per_type(60),
        "minimum_age": 16,
        "parental_consent_required": True,
        "allowed_legal_bases": {
            "essential": _ESSENTIAL,
            "analytics": _OPT_OUT,
            "marketing": _CONSENT_ONLY,
            "personalization": _CONSENT_ONLY,
            "third_party_sharing": _CONSENT_ONLY,
        },
        "required_consent_versions": _VERSIONS,
        "consent_validity_days": 365,
    },
    "US": {
        "laws": ["CCPA", "CPRA"],
        "request_deadline_days": _per_type(45),
        "extension_days": _per_type(45),
        "minimum_age": 13,
        "parental_consent_required": True,
        "allowed_legal_bases": {
            "essential": _ESSENTIAL,
            "analytics": _OPT_OUT,
            "marketing": _OPT_OUT,
            "personalization": _OPT_OUT,
            "third_party_sharing": _CONSENT_ONLY,
        },
        "required_consent_versions": _VERSIONS,
        "consent_validity_days": 730,
    },
    "CN": {
        "laws": ["PIPL"],
        "request_deadline_days": _per_type(15),
        "extension_days": _per_type(15),
        "minimum_age": 14,
        "parental_consent_required": True,
        "allowed_legal_bases": {
            "essential": ["contract", "legal_obligation", "vital_interest", "consent"],
            "analytics": _CONSENT_ONLY,
            "marketing": _CONSENT_ONLY,
            "personalization": _CONSENT_ONLY,
            "third_party_sharing": _CONSENT_ONLY,
        },
        "required_consent_versions": _VERSIONS,
        "consent_validity_days": 365,
    },
    "HK": {
        "laws": ["PDPO"],
        "request_deadline_days": _per_type(40),
        "extension_days": _per_type(40),
        "minimum_age": 18,
        "parental_consent_required": True,
        "allowed_legal_bases": {
            "essential": _ESSENTIAL,
            "analytics": _OPT_OUT,
            "marketing": _CONSENT_ONLY,
            "personalization": _OPT_OUT,
            "third_party_sharing": _CONSENT_ONLY,
        },
        "required_consent_versions": _VERSIONS,
        "consent_validity_days": 730,
    },
    "MO": {
        "laws": ["PDPA"],
        "request_deadline_days": _per_type(30),
        "extension_days": _per_type(30),
        "minimum_age": 18,
        "parental_consent_required": True,
        "allowed_legal_bases": {
            "essential": _ESSENTIAL,
            "analytics": _OPT_OUT,
            "marketing": _CONSENT_ONLY,
            "personalization": _CONSENT_ONLY,
            "third_party_sharing": _CONSENT_ONLY,
        },
        "required_consent_versions": _VERSIONS,
        "consent_validity_days": 730,
    },
    "TW": {
        "laws": ["PDPA_TW"],
        "request_deadline_days": _per_type(30, access=15, portability=15),
        "extension_days": _per_type(30, access=15, portability=15),
        "minimum_age": 18,
        "parental_consent_required": True,
        "allowed_legal_bases": {
            "essential": _ESSENTIAL,
            "analytics": _OPT_OUT,
            "marketing": _CONSENT_ONLY,
            "personalization": _CONSENT_ONLY,
            "third_party_sharing": _CONSENT_ONLY,
        },
        "required_consent_versions": _VERSIONS,
        "consent_validity_days": 730,
    },
    "JP": {
        "laws": ["APPI"],
        "request_deadline_days": _per_type(14),
        "extension_days": _per_type(14),
        "minimum_age": 16,
        "parental_consent_required": True,
        "allowed_legal_bases": {
            "essential": _ESSENTIAL,
            "analytics": _OPT_OUT,
            "marketing": _OPT_OUT,
            "personalization": _OPT_OUT,
            "third_party_sharing": _CONSENT_ONLY,
        },
        "required_consent_versions": _VERSIONS,
        "consent_validity_days": 730,
    },
    "KR": {
        "laws": ["PIPA"],
        "request_deadline_days": _per_type(10),
        "extension_days": _per_type(10),
        "minimum_age": 14,
        "parental_consent_required": True,
        "allowed_legal_bases": {
            "essential": ["contract", "legal_obligation", "vital_interest", "consent"],
            "analytics": _CONSENT_ONLY,
            "marketing": _CONSENT_ONLY,
            "personalization": _CONSENT_ONLY,
            "third_party_sharing": _CONSENT_ONLY,
        },
        "required_consent_versions": _VERSIONS,
        "consent_validity_days": 365,
        "renewal_grace_days": 14,
    },
}


def _require(raw: Mapping[str, Any], key: str, region: str) -> Any:
    if key not in raw or raw[key] is None:
        raise ConfigurationError(f"Region {region}: missing '{key}'")
    return raw[key]


def _positive_int(value: Any, label: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{label} must be an integer, got {value!r}") from None
    if number <= 0:
        raise ConfigurationError(f"{label} must be positive, got {number}")
    return number


def _days_table(raw: Mapping[str, Any], key: str, region: str) -> Mapping[RightsRequestType, int]:
    table = _require(raw, key, region)
    parsed: Dict[RightsRequestType, int] = {}
    for request_type in RightsRequestType:
        if request_type.value not in table:
            raise ConfigurationError(
                f"Region {region}: '{key}' has no entry for request type '{request_type.value}'"
            )
        parsed[request_type] = _positive_int(
            table[request_type.value], f"Region {region} {key}[{request_type.value}]"
        )
    return MappingProxyType(parsed)


def _parse_requirement(region_key: str, raw: Mapping[str, Any]) -> PrivacyLawRequirement:
    region = coerce_enum(RegionCode, region_key, ConfigurationError)

    laws = tuple(coerce_enum(PrivacyLaw, law, ConfigurationError) for law in raw.get("laws", []))

    bases_raw = _require(raw, "allowed_legal_bases", region.value)
    versions_raw = _require(raw, "required_consent_versions", region.value)
    allowed: Dict[DataProcessingPurpose, FrozenSet[LegalBasis]] = {}
    versions: Dict[DataProcessingPurpose, str] = {}
    for purpose in DataProcessingPurpose:
        bases = bases_raw.get(purpose.value)
        if not bases:
            raise ConfigurationError(
                f"Region {region.value}: no legal bases configured for purpose '{purpose.value}'"
            )
        allowed[purpose] = frozenset(coerce_enum(LegalBasis, basis, ConfigurationError) for basis in bases)
        version = versions_raw.get(purpose.value)
        if not version:
            raise ConfigurationError(
                f"Region {region.value}: no required consent version for purpose '{purpose.value}'"
            )
        versions[purpose] = str(version)

    return PrivacyLawRequirement(
        region=region,
        laws=laws,
        request_deadline_days=_days_table(raw, "request_deadline_days", region.value),
        extension_days=_days_table(raw, "extension_days", region.value),
        minimum_age=_positive_int(_require(raw, "minimum_age", region.value), f"Region {region.value} minimum_age"),
        parental_consent_required=bool(raw.get("parental_consent_required", True)),
        allowed_legal_bases=MappingProxyType(allowed),
        required_consent_versions=MappingProxyType(versions),
        consent_validity_days=_positive_int(
            _require(raw, "consent_validity_days", region.value),
            f"Region {region.value} consent_validity_days",
        ),
        parental_consent_timeout_days=_positive_int(
            raw.get("parental_consent_timeout_days", DEFAULT_PARENTAL_CONSENT_TIMEOUT_DAYS),
            f"Region {region.value} parental_consent_timeout_days",
        ),
        renewal_grace_days=_positive_int(
            raw.get("renewal_grace_days", DEFAULT_RENEWAL_GRACE_DAYS),
            f"Region {region.value} renewal_grace_days",
        ),
    )


class RegionPolicyResolver:
    """Read-only lookup of legal requirements per region."""

    def __init__(self, requirements: Iterable[PrivacyLawRequirement]) -> None:
        table: Dict[RegionCode, PrivacyLawRequirement] = {}
        for requirement in requirements:
            if requirement.region in table:
                raise ConfigurationError(f"Region {requirement.region.value} configured twice")
            table[requirement.region] = requirement
        if not table:
            raise ConfigurationError("No regions configured")
        self._table = MappingProxyType(table)
        logger.info(f"Loaded privacy rules for regions: {', '.join(r.value for r in table)}")

    @classmethod
    def from_mapping(cls, rules: Mapping[str, Mapping[str, Any]]) -> "RegionPolicyResolver":
        return cls(_parse_requirement(key, raw) for key, raw in rules.items())

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "RegionPolicyResolver":
        path = Path(path)
        try:
            rules = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise ConfigurationError(f"Region configuration not found: {path}") from None
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Region configuration {path} is not valid JSON: {exc}") from exc
        if not isinstance(rules, dict):
            raise ConfigurationError(f"Region configuration {path} must be a JSON object")
        return cls.from_mapping(rules)

    @classmethod
    def default(cls) -> "RegionPolicyResolver":
        return cls.from_mapping(DEFAULT_REGION_RULES)

    def regions(self) -> List[RegionCode]:
        return list(self._table)

    def requirements_for(self, region: RegionLike) -> PrivacyLawRequirement:
        code = coerce_enum(RegionCode, region, UnknownRegionError)
        requirement = self._table.get(code)
        if requirement is None:
            raise UnknownRegionError(f"Region '{code.value}' is not configured")
        return requirement

    def minimum_age(self, region: RegionLike) -> int:
        return self.requirements_for(region).minimum_age

    def deadline_days(self, region: RegionLike, request_type: RightsRequestType) -> int:
        return self.requirements_for(region).request_deadline_days[request_type]

    def extension_days(self, region: RegionLike, request_type: RightsRequestType) -> int:
        return self.requirements_for(region).extension_days[request_type]

    def legal_bases_allowed(self, region: RegionLike, purpose: PurposeLike) -> FrozenSet[LegalBasis]:
        requirement = self.requirements_for(region)
        return requirement.allowed_legal_bases[coerce_enum(DataProcessingPurpose, purpose, InvalidPurposeError)]

    def required_consent_version(self, region: RegionLike, purpose: PurposeLike) -> str:
        requirement = self.requirements_for(region)
        return requirement.required_consent_versions[
            coerce_enum(DataProcessingPurpose, purpose, InvalidPurposeError)
        ]

    def consent_validity(self, region: RegionLike) -> timedelta:
        return timedelta(days=self.requirements_for(region).consent_validity_days)

    def parental_consent_timeout(self, region: Optional[RegionLike]) -> timedelta:
        if region is None:
            return timedelta(days=DEFAULT_PARENTAL_CONSENT_TIMEOUT_DAYS)
        return timedelta(days=self.requirements_for(region).parental_consent_timeout_days)

    def renewal_grace(self, region: RegionLike) -> timedelta:
        return timedelta(days=self.requirements_for(region).renewal_grace_days)
