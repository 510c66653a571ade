"""
Privacy & consent compliance engine.

Components, leaf first: RegionPolicyResolver, AgeGate, ConsentLedger,
RightsRequestTracker, ComplianceEvaluator. PrivacyComplianceEngine wires them
to a remote authority and a local cache.
"""

from .age_gate import AgeGate
from .engine import PreferencesView, PrivacyComplianceEngine
from .errors import (
    AlreadyExtendedError,
    AuthorityRejectedError,
    ConfigurationError,
    DuplicateIdError,
    FutureBirthDateError,
    InvalidLegalBasisError,
    InvalidPurposeError,
    InvalidTransitionError,
    NoActiveConsentError,
    ParentalConsentAlreadyVerifiedError,
    ParentalConsentRequiredError,
    PrivacyEngineError,
    PrivacyValidationError,
    RemoteAuthorityError,
    UnknownRegionError,
    UnknownRequestError,
)
from .evaluator import ComplianceEvaluator
from .ledger import ConsentLedger
from .regions import DEFAULT_REGION_RULES, PrivacyLawRequirement, RegionPolicyResolver
from .rights import RightsRequestTracker

__all__ = [
    "AgeGate",
    "AlreadyExtendedError",
    "AuthorityRejectedError",
    "ComplianceEvaluator",
    "ConfigurationError",
    "ConsentLedger",
    "DEFAULT_REGION_RULES",
    "DuplicateIdError",
    "FutureBirthDateError",
    "InvalidLegalBasisError",
    "InvalidPurposeError",
    "InvalidTransitionError",
    "NoActiveConsentError",
    "ParentalConsentAlreadyVerifiedError",
    "ParentalConsentRequiredError",
    "PreferencesView",
    "PrivacyComplianceEngine",
    "PrivacyEngineError",
    "PrivacyLawRequirement",
    "PrivacyValidationError",
    "RegionPolicyResolver",
    "RemoteAuthorityError",
    "RightsRequestTracker",
    "UnknownRegionError",
    "UnknownRequestError",
]
