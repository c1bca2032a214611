# market_price/comparables.py
"""Comparable classification and the per-strategy relaxation ladders.

A listing (or a draft) is turned into a `Subject`, classified into one
`ComparisonType`, and expanded into an ordered list of `Rung`s. Each rung is a
declarative set of match criteria; the aggregator tries them in order and the
first one with a sufficient sample wins. Every non-general ladder ends with
the general ladder.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple


class ComparisonType(str, Enum):
    ELECTRONICS = "electronics"
    VEHICLES = "vehicles"
    REALESTATE = "realestate"
    GENERAL = "general"


class Metric(str, Enum):
    PRICE = "price"
    PRICE_PER_AREA = "price_per_area"


CATEGORY_TAGS = {
    ComparisonType.ELECTRONICS: (
        frozenset({"elektronika"}),
        frozenset({
            "telefony-planshety",
            "noutbuki-kompyutery",
            "tv-foto-video",
            "audio-tehnika",
            "igry-igrovye-pristavki",
            "tovary-dlya-kompyutera",
        }),
    ),
    ComparisonType.VEHICLES: (
        frozenset({"avto-zapchasti"}),
        frozenset({
            "legkovye-avtomobili",
            "gruzovye-avtomobili",
            "mototehnika",
            "spetstekhnika",
        }),
    ),
    ComparisonType.REALESTATE: (
        frozenset({"nedvizhimost"}),
        frozenset({
            "kvartiry",
            "komnaty",
            "doma-dachi-kottedzhi",
            "uchastki",
            "garazhi-mashinomesta",
            "kommercheskaya-nedvizhimost",
        }),
    ),
}


def _lower(value):
    return value.strip().lower() if isinstance(value, str) and value.strip() else None


@dataclass(frozen=True)
class Subject:
    """The thing being priced: a stored listing or a pre-save draft."""
    category_id: str
    price: Optional[float] = None
    listing_id: Optional[int] = None
    subcategory_id: Optional[str] = None
    city: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    storage_gb: Optional[int] = None
    car_make: Optional[str] = None
    car_model: Optional[str] = None
    car_year: Optional[int] = None
    realty_type: Optional[str] = None
    realty_city: Optional[str] = None
    realty_district: Optional[str] = None
    realty_area_total: Optional[float] = None

    @classmethod
    def from_listing(cls, listing):
        return cls(
            category_id=listing.category_id,
            price=float(listing.price) if listing.price is not None else None,
            listing_id=listing.id,
            subcategory_id=listing.subcategory_id,
            city=listing.city,
            brand=_lower(listing.brand),
            model=_lower(listing.model),
            storage_gb=listing.storage_gb,
            car_make=_lower(listing.car_make),
            car_model=_lower(listing.car_model),
            car_year=listing.car_year,
            realty_type=listing.realty_type,
            realty_city=_lower(listing.realty_city),
            realty_district=_lower(listing.realty_district),
            realty_area_total=listing.realty_area_total,
        )

    @classmethod
    def from_draft(cls, draft):
        return cls(
            category_id=draft.category_id,
            price=draft.price,
            subcategory_id=draft.subcategory_id,
            city=draft.city,
            brand=_lower(draft.brand),
            model=_lower(draft.model),
            storage_gb=draft.storage_gb,
            car_make=_lower(draft.car_make),
            car_model=_lower(draft.car_model),
            car_year=draft.car_year,
            realty_type=draft.realty_type,
            realty_city=_lower(draft.realty_city),
            realty_district=_lower(draft.realty_district),
            realty_area_total=draft.realty_area_total,
        )


@dataclass(frozen=True)
class Rung:
    comparison_type: ComparisonType
    criteria: Dict[str, Any] = field(default_factory=dict)
    metric: Metric = Metric.PRICE

    def key(self):
        return (self.comparison_type, self.metric, frozenset(self.criteria.items()))


def classify(subject: Subject) -> ComparisonType:
    category = (subject.category_id or "").lower()
    subcategory = (subject.subcategory_id or "").lower()
    for comparison_type, (categories, subcategories) in CATEGORY_TAGS.items():
        if category in categories or subcategory in subcategories:
            return comparison_type
    return ComparisonType.GENERAL


def _present(**criteria):
    return {k: v for k, v in criteria.items() if v is not None}


RungBuilder = Callable[[Subject], Optional[Dict[str, Any]]]


class ComparisonStrategy:
    comparison_type: ComparisonType = None
    metric = Metric.PRICE
    rung_builders: Tuple[RungBuilder, ...] = ()

    def applies(self, subject: Subject) -> bool:
        return True

    def ladder(self, subject: Subject) -> List[Rung]:
        if not self.applies(subject):
            return []
        rungs = []
        for build in self.rung_builders:
            criteria = build(subject)
            if criteria is None:
                continue
            rungs.append(Rung(self.comparison_type, {"category_id": subject.category_id, **criteria}, self.metric))
        return rungs


class ElectronicsStrategy(ComparisonStrategy):
    comparison_type = ComparisonType.ELECTRONICS
    rung_builders = (
        lambda s: _present(brand=s.brand, model=s.model, storage_gb=s.storage_gb) if s.storage_gb else None,
        lambda s: _present(brand=s.brand, model=s.model),
    )

    def applies(self, subject):
        return bool(subject.brand and subject.model)


class VehiclesStrategy(ComparisonStrategy):
    comparison_type = ComparisonType.VEHICLES
    rung_builders = (
        lambda s: _present(car_make=s.car_make, car_model=s.car_model,
                           car_year=(s.car_year - 1, s.car_year + 1)) if s.car_year else None,
        lambda s: _present(car_make=s.car_make, car_model=s.car_model),
    )

    def applies(self, subject):
        return bool(subject.car_make and subject.car_model)


class RealEstateStrategy(ComparisonStrategy):
    comparison_type = ComparisonType.REALESTATE
    metric = Metric.PRICE_PER_AREA
    rung_builders = (
        lambda s: _present(realty_type=s.realty_type, realty_city=s.realty_city, realty_district=s.realty_district),
        lambda s: _present(realty_type=s.realty_type, realty_city=s.realty_city),
    )

    def applies(self, subject):
        return bool(subject.realty_area_total and subject.realty_area_total > 0)


class GeneralStrategy(ComparisonStrategy):
    comparison_type = ComparisonType.GENERAL
    rung_builders = (
        lambda s: _present(subcategory_id=s.subcategory_id, city=s.city),
        lambda s: _present(subcategory_id=s.subcategory_id),
        lambda s: _present(city=s.city),
        lambda s: {},
    )


STRATEGIES = {
    strategy.comparison_type: strategy
    for strategy in (ElectronicsStrategy(), VehiclesStrategy(), RealEstateStrategy(), GeneralStrategy())
}

if set(STRATEGIES) != set(ComparisonType):
    raise RuntimeError("missing comparison strategy for: %s" % (set(ComparisonType) - set(STRATEGIES)))


def build_ladder(subject: Subject) -> List[Rung]:
    """Ordered, de-duplicated rungs for the subject, narrowest first."""
    comparison_type = classify(subject)
    rungs = STRATEGIES[comparison_type].ladder(subject)
    if comparison_type is not ComparisonType.GENERAL:
        rungs += STRATEGIES[ComparisonType.GENERAL].ladder(subject)

    seen = set()
    ladder = []
    for rung in rungs:
        if rung.key() in seen:
            continue
        seen.add(rung.key())
        ladder.append(rung)
    return ladder
