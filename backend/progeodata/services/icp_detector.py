# backend/progeodata/services/icp_detector.py
"""
ICP Signal Detector - Scores raw businesses against the "hard to find" profile

The detector is a pure function of a record's detector input and a
versioned policy. Same input + same version = byte-identical output.

POLICY icp-v1
-------------
Flags (points added when set):
    no_website          30
    unmappable_address  25
    mobile_business     10
    ghost_business      10

Continuous terms:
    address_complexity_score * 0.10      (max 10)
    (100 - findability_score) * 0.15     (max 15)

icp_score = sum of the above, 0..100
Category: high >= 70, medium >= 40, low < 40

address_complexity_score (0..100):
    min(unit markers, 3) * 12
    + 20 when the address lacks a leading street number
    + 3 per token beyond 4 (max 8 tokens counted)
    + (1 - geocode confidence) * 20
    An empty address scores 60 and counts as unmappable.

findability_score (0..100):
    35 website + 10 social page + 25 * geocode confidence
    + 20 * category commonality + 10 phone
    - 0.2 * address_complexity_score
"""

from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Tuple
import logging
import re

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from progeodata.config import settings
from progeodata.exceptions import UnknownPolicyVersion
from progeodata.models import ICPSignal, RawBusinessRecord
from progeodata.utils import Clock, utcnow, canonical_json, content_hash, clamp

logger = logging.getLogger(__name__)


# Fields the detector reads; anything else never affects the signal
DETECTOR_INPUT_FIELDS = (
    "name", "category", "address", "phone", "website", "facebook_url",
    "instagram_url", "latitude", "longitude", "geocode_confidence",
)


@dataclass(frozen=True)
class ICPPolicy:
    """Versioned weights and vocabularies for one detector version"""
    version: str
    flag_weights: Dict[str, float]
    complexity_weight: float
    hard_to_find_weight: float
    high_threshold: float
    medium_threshold: float
    unit_markers: Tuple[str, ...]
    km_pattern: str
    mobile_keywords: Tuple[str, ...]
    category_commonality: Dict[str, float]
    default_commonality: float = 0.3
    geocode_confidence_with_coordinates: float = 0.8
    geocode_confidence_without_coordinates: float = 0.3
    empty_address_complexity: float = 60.0


ICP_V1 = ICPPolicy(
    version="icp-v1",
    flag_weights={
        "no_website": 30,
        "unmappable_address": 25,
        "mobile_business": 10,
        "ghost_business": 10,
    },
    complexity_weight=0.10,
    hard_to_find_weight=0.15,
    high_threshold=70,
    medium_threshold=40,
    unit_markers=(
        "int", "interior", "apt", "apto", "suite", "ste", "unit", "local",
        "bldg", "edif", "#", "carr", "carretera", "barrio", "bo", "sector",
        "urb", "parcela", "hc", "rr", "apartado",
    ),
    km_pattern=r"\bkm\.?\s*\d+(\.\d+)?\b|\bkilometro\b|\bp\.?o\.?\s*box\b",
    mobile_keywords=(
        "plumb", "electric", "hvac", "landscap", "cleaning", "handyman",
        "roofing", "pest control", "locksmith", "towing", "moving", "mobile",
    ),
    category_commonality={
        "restaurant": 1.0,
        "retail": 0.9,
        "pharmacy": 0.9,
        "auto repair": 0.8,
        "salon": 0.7,
        "dentist": 0.7,
        "real estate": 0.6,
        "plumbing": 0.5,
        "electrician": 0.5,
        "hvac": 0.4,
        "contractor": 0.4,
        "landscaping": 0.3,
    },
)

POLICIES: Dict[str, ICPPolicy] = {
    ICP_V1.version: ICP_V1,
}


def get_policy(version: Optional[str] = None) -> ICPPolicy:
    version = version or settings.ICP_DETECTOR_VERSION
    try:
        return POLICIES[version]
    except KeyError:
        raise UnknownPolicyVersion(f"Unknown ICP detector version '{version}'")


@dataclass
class SignalResult:
    """Detector output for one record snapshot"""
    detector_version: str
    input_hash: str
    no_website: bool
    unmappable_address: bool
    mobile_business: bool
    ghost_business: bool
    address_complexity_score: float
    findability_score: float
    icp_score: float
    icp_category: str
    breakdown: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detector_version": self.detector_version,
            "input_hash": self.input_hash,
            "no_website": self.no_website,
            "unmappable_address": self.unmappable_address,
            "mobile_business": self.mobile_business,
            "ghost_business": self.ghost_business,
            "address_complexity_score": self.address_complexity_score,
            "findability_score": self.findability_score,
            "icp_score": self.icp_score,
            "icp_category": self.icp_category,
            "breakdown": self.breakdown,
        }

    def canonical(self) -> str:
        return canonical_json(self.to_dict())


def detector_input(record) -> Dict[str, Any]:
    """Snapshot of the fields the detector reads."""
    return {name: getattr(record, name, None) for name in DETECTOR_INPUT_FIELDS}


# ============================================================================
# PURE SCORING
# ============================================================================

def _tokens(address: str):
    return re.findall(r"[#]|[\w\-]+", address.lower())


def _has_standard_street_number(address: str) -> bool:
    # "123 Main St", "45B Ocean Dr"
    return re.match(r"^\s*\d+[a-z]?\s+[a-z]", address.lower()) is not None


def _geocode_confidence(data: Dict[str, Any], policy: ICPPolicy) -> float:
    if data.get("geocode_confidence") is not None:
        return float(data["geocode_confidence"])
    if data.get("latitude") is not None and data.get("longitude") is not None:
        return policy.geocode_confidence_with_coordinates
    return policy.geocode_confidence_without_coordinates


def _category_commonality(category: Optional[str], policy: ICPPolicy) -> float:
    if not category:
        return 0.0
    category = category.lower()
    for known, commonality in policy.category_commonality.items():
        if known in category:
            return commonality
    return policy.default_commonality


def score_address(address: Optional[str], geocode_confidence: float, policy: ICPPolicy) -> Dict[str, Any]:
    """Address complexity and the unmappable flag."""
    if not address or not address.strip():
        return {
            "unmappable": True,
            "complexity": policy.empty_address_complexity,
            "markers": [],
            "standard_street_number": False,
            "token_count": 0,
        }

    tokens = _tokens(address)
    markers = sorted({
        t for t in tokens
        if t in policy.unit_markers or (t.startswith("hc-") and "hc" in policy.unit_markers)
    })
    has_km = re.search(policy.km_pattern, address.lower()) is not None
    if has_km:
        markers.append("km")
    standard = _has_standard_street_number(address)

    complexity = (
        min(len(markers), 3) * 12
        + (0 if standard else 20)
        + min(max(len(tokens) - 4, 0), 8) * 3
        + (1 - geocode_confidence) * 20
    )

    return {
        "unmappable": bool(markers) or not standard,
        "complexity": clamp(complexity),
        "markers": markers,
        "standard_street_number": standard,
        "token_count": len(tokens),
    }


def detect(record, detector_version: Optional[str] = None) -> SignalResult:
    """
    Score one record.

    Deterministic: only DETECTOR_INPUT_FIELDS and the policy affect the
    result, and floats are rounded before they leave this function.
    """
    policy = get_policy(detector_version)
    data = detector_input(record)

    geocode = _geocode_confidence(data, policy)
    address = score_address(data["address"], geocode, policy)

    no_website = not data["website"]
    has_social = bool(data["facebook_url"] or data["instagram_url"])
    category = (data["category"] or "").lower()
    mobile = any(keyword in category for keyword in policy.mobile_keywords)
    ghost = no_website and has_social

    commonality = _category_commonality(data["category"], policy)
    findability = clamp(
        (0 if no_website else 35)
        + (10 if has_social else 0)
        + geocode * 25
        + commonality * 20
        + (10 if data["phone"] else 0)
        - address["complexity"] * 0.2
    )

    flags = {
        "no_website": no_website,
        "unmappable_address": address["unmappable"],
        "mobile_business": mobile,
        "ghost_business": ghost,
    }
    flag_points = {name: (policy.flag_weights[name] if value else 0) for name, value in flags.items()}
    complexity_points = address["complexity"] * policy.complexity_weight
    hard_to_find_points = (100 - findability) * policy.hard_to_find_weight

    icp_score = round(clamp(sum(flag_points.values()) + complexity_points + hard_to_find_points), 2)

    if icp_score >= policy.high_threshold:
        icp_category = "high"
    elif icp_score >= policy.medium_threshold:
        icp_category = "medium"
    else:
        icp_category = "low"

    breakdown = {
        "flag_points": flag_points,
        "complexity_points": round(complexity_points, 2),
        "hard_to_find_points": round(hard_to_find_points, 2),
        "address_markers": address["markers"],
        "standard_street_number": address["standard_street_number"],
        "address_tokens": address["token_count"],
        "geocode_confidence": round(geocode, 2),
        "category_commonality": round(commonality, 2),
    }

    return SignalResult(
        detector_version=policy.version,
        input_hash=content_hash(data),
        no_website=no_website,
        unmappable_address=address["unmappable"],
        mobile_business=mobile,
        ghost_business=ghost,
        address_complexity_score=round(address["complexity"], 2),
        findability_score=round(findability, 2),
        icp_score=icp_score,
        icp_category=icp_category,
        breakdown=breakdown,
    )


# ============================================================================
# PERSISTENCE
# ============================================================================

class ICPSignalDetector:
    """Computes and stores append-only ICPSignal rows."""

    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def latest_signal(self, raw: RawBusinessRecord, detector_version: Optional[str] = None) -> Optional[ICPSignal]:
        version = get_policy(detector_version).version
        return self.db.query(ICPSignal).filter(
            ICPSignal.raw_business_id == raw.id,
            ICPSignal.detector_version == version
        ).order_by(ICPSignal.computed_at.desc()).first()

    def score(self, raw: RawBusinessRecord, detector_version: Optional[str] = None) -> ICPSignal:
        """
        Detect and persist. Unchanged input reuses the existing row, so the
        same (record, version, input) never produces two signals.
        """
        result = detect(raw, detector_version)

        signal = self._find(raw, result)
        if signal is None:
            signal = ICPSignal(
                raw_business_id=raw.id,
                computed_at=self.clock(),
                **result.to_dict()
            )
            self.db.add(signal)
            try:
                self.db.flush()
            except IntegrityError:
                self.db.rollback()
                signal = self._find(raw, result)
            else:
                logger.info(
                    f"🎯 ICP {result.detector_version} for {raw.name}: "
                    f"{result.icp_score} ({result.icp_category})"
                )

        if raw.status == "new":
            raw.status = "processed"
        self.db.commit()
        return signal

    def _find(self, raw: RawBusinessRecord, result: SignalResult) -> Optional[ICPSignal]:
        return self.db.query(ICPSignal).filter(
            ICPSignal.raw_business_id == raw.id,
            ICPSignal.detector_version == result.detector_version,
            ICPSignal.input_hash == result.input_hash
        ).first()
