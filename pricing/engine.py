# Pricing engine: total fare for one journey + bogie + berth selection.
#
# fare = distance fare + train-type fare + AC fare + berth fare (+ adjustments, always 0)
#
# Each component resolves a distance band from its own FareRangeTable. A component
# without applicable configuration is handed to the engine's MissingRangePolicy.
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from django.conf import settings
from django.core.exceptions import ValidationError

from .distances import RouteDistanceIndex
from .exceptions import MissingConfiguration, NotFound
from .models import BerthFare, Bogie, DistanceFare, Station, Train, TrainComposition
from .numbers import ZERO, round2
from .ranges import FARE_TABLES, FareRangeTable, describe, evaluate

logger = logging.getLogger(__name__)

BERTH_TYPES = tuple(value for value, _ in BerthFare.BERTH_TYPES)


@dataclass(frozen=True)
class ComponentFare:
    amount: Decimal
    calculation: str


@dataclass
class PriceBreakdown:
    distance_fare: Decimal = ZERO
    train_fare: Decimal = ZERO
    ac_fare: Decimal = ZERO
    berth_fare: Decimal = ZERO
    subtotal: Decimal = ZERO
    adjustments: Decimal = ZERO
    total: Decimal = ZERO


@dataclass
class JourneyDetails:
    train_id: int
    train_number: str
    train_name: str
    from_station: str
    to_station: str
    distance: Decimal
    distance_for_pricing: Decimal
    bogie: str
    class_number: int
    has_ac: bool
    is_sleeper: bool
    berth_type: Optional[str] = None


@dataclass
class PriceCalculation:
    breakdown: PriceBreakdown
    details: JourneyDetails
    calculations: Dict[str, str]
    warnings: List[str] = field(default_factory=list)

    @property
    def total_fare(self) -> Decimal:
        return self.breakdown.total


# ── missing configuration policies ───────────────────────────────────────

class MissingRangePolicy:
    name = ""

    def resolve(self, component: str, reason: str, warnings: List[str]) -> ComponentFare:
        raise NotImplementedError


class ZeroFallback(MissingRangePolicy):
    """Missing configuration contributes 0.00; the gap is logged and reported as a warning."""

    name = "zero"

    def resolve(self, component, reason, warnings):
        logger.warning("%s fare: %s", component, reason)
        warnings.append(f"{component}: {reason}")
        return ComponentFare(ZERO, reason)


class StrictPolicy(MissingRangePolicy):
    """Missing configuration aborts the calculation."""

    name = "strict"

    def resolve(self, component, reason, warnings):
        raise MissingConfiguration(component, f"{component} fare not configured: {reason}")


POLICIES = {policy.name: policy for policy in (ZeroFallback, StrictPolicy)}


def policy_from_settings() -> MissingRangePolicy:
    name = getattr(settings, "PRICING_MISSING_RANGE_POLICY", ZeroFallback.name)
    try:
        return POLICIES[name]()
    except KeyError:
        raise ValueError(f"Unknown PRICING_MISSING_RANGE_POLICY: {name!r}") from None


def _currency() -> str:
    return getattr(settings, "PRICING_CURRENCY_SYMBOL", "฿")


class PricingEngine:
    def __init__(
        self,
        distance_index: Optional[RouteDistanceIndex] = None,
        tables: Optional[Dict[str, FareRangeTable]] = None,
        policy: Optional[MissingRangePolicy] = None,
    ):
        self.distance_index = distance_index or RouteDistanceIndex()
        self.tables = {**FARE_TABLES, **(tables or {})}
        self.policy = policy or policy_from_settings()

    def calculate(
        self,
        train_id: int,
        from_station_id: int,
        to_station_id: int,
        bogie_id: int,
        berth_type: Optional[str] = None,
    ) -> PriceCalculation:
        logger.info(
            "Calculating price for train %s, stations %s → %s, bogie %s",
            train_id, from_station_id, to_station_id, bogie_id,
        )
        if berth_type is not None and berth_type not in BERTH_TYPES:
            raise ValidationError({"berth_type": f"Must be one of: {', '.join(BERTH_TYPES)}."})

        train = Train.objects.select_related("train_type").filter(pk=train_id).first()
        if train is None:
            raise NotFound(f"Train {train_id} not found")
        bogie = Bogie.objects.select_related("ac_fare_category").filter(pk=bogie_id).first()
        if bogie is None:
            raise NotFound(f"Bogie {bogie_id} not found")
        if not TrainComposition.objects.filter(train_id=train_id, bogie_id=bogie_id, is_active=True).exists():
            raise NotFound(f"Bogie {bogie_id} is not configured for train {train_id}")

        route = self.distance_index.get(train_id, from_station_id, to_station_id)
        km = route.distance_for_pricing

        warnings: List[str] = []
        components = {
            "distance": self._distance_fare(bogie, km, warnings),
            "train": self._train_fare(train, bogie, km, warnings),
            "ac": self._ac_fare(bogie, km, warnings),
            "berth": self._berth_fare(bogie, km, berth_type, warnings),
        }

        breakdown = PriceBreakdown(
            distance_fare=round2(components["distance"].amount),
            train_fare=round2(components["train"].amount),
            ac_fare=round2(components["ac"].amount),
            berth_fare=round2(components["berth"].amount),
        )
        breakdown.subtotal = round2(
            breakdown.distance_fare + breakdown.train_fare + breakdown.ac_fare + breakdown.berth_fare
        )
        # promotions and discounts are not modelled
        breakdown.adjustments = round2(ZERO)
        breakdown.total = round2(breakdown.subtotal + breakdown.adjustments)

        names = dict(Station.objects.filter(pk__in=[from_station_id, to_station_id]).values_list("pk", "name_th"))
        result = PriceCalculation(
            breakdown=breakdown,
            details=JourneyDetails(
                train_id=train.pk,
                train_number=train.train_number,
                train_name=train.train_name_th,
                from_station=names.get(from_station_id, ""),
                to_station=names.get(to_station_id, ""),
                distance=route.distance_km,
                distance_for_pricing=km,
                bogie=bogie.name_th,
                class_number=bogie.class_number,
                has_ac=bogie.has_ac,
                is_sleeper=bogie.is_sleeper,
                berth_type=berth_type,
            ),
            calculations={
                "distance_fare": components["distance"].calculation,
                "train_fare": components["train"].calculation,
                "ac_fare": components["ac"].calculation,
                "berth_fare": components["berth"].calculation,
            },
            warnings=warnings,
        )
        logger.info(
            "Price calculated: %s (distance: %s, train: %s, AC: %s, berth: %s)",
            breakdown.total, breakdown.distance_fare, breakdown.train_fare,
            breakdown.ac_fare, breakdown.berth_fare,
        )
        return result

    # ── components ──────────────────────────────────────────────────────

    def _missing(self, component: str, reason: str, warnings: List[str]) -> ComponentFare:
        return self.policy.resolve(component, reason, warnings)

    def _out_of_range(self, category: str, scope: dict, km: Decimal, reason: str) -> str:
        if self.tables[category].ends_at(scope, km):
            reason += f" ({km} km is the exclusive upper bound of a range; add a range starting at {km} km)"
        return reason

    def _distance_fare(self, bogie: Bogie, km: Decimal, warnings: List[str]) -> ComponentFare:
        logger.debug("Distance fare for class %s at %s km", bogie.class_number, km)
        distance_fare = (
            DistanceFare.objects.filter(class_number=bogie.class_number, is_active=True).order_by("pk").first()
        )
        if distance_fare is None:
            return self._missing("distance", f"No distance fare configured for class {bogie.class_number}", warnings)

        scope = {"distance_fare": distance_fare.pk}
        fare_range = self.tables["distance"].lookup(scope, km)
        if fare_range is None:
            reason = self._out_of_range(
                "distance", scope, km, f"Distance {km} km out of range for class {bogie.class_number}",
            )
            return self._missing("distance", reason, warnings)
        return ComponentFare(evaluate(fare_range, km), describe(fare_range, km))

    def _train_fare(self, train: Train, bogie: Bogie, km: Decimal, warnings: List[str]) -> ComponentFare:
        train_type = train.train_type
        if train_type is None:
            return self._missing("train", f"No train type configured for train {train.train_number}", warnings)

        fare_range = self.tables["train"].lookup(
            {"train_type": train_type.pk, "class_number": bogie.class_number}, km,
        )
        if fare_range is not None:
            amount = evaluate(fare_range, km)
            return ComponentFare(amount, describe(fare_range, km, fare_range.fare_th or train_type.name_th))

        if train_type.base_fare is not None:
            amount = round2(train_type.base_fare)
            return ComponentFare(amount, f"Base fare for {train_type.name_th} = {amount} {_currency()}")

        return self._missing(
            "train", f"No train fare configured for {train_type.name_th}, class {bogie.class_number}", warnings,
        )

    def _ac_fare(self, bogie: Bogie, km: Decimal, warnings: List[str]) -> ComponentFare:
        if not bogie.has_ac:
            return ComponentFare(ZERO, "Non-AC bogie")

        fare_range = self.tables["bogie-ac"].lookup({"bogie": bogie.pk}, km)
        if fare_range is not None:
            return ComponentFare(evaluate(fare_range, km), describe(fare_range, km, "Bogie-specific AC fare"))

        category = bogie.ac_fare_category
        if category is not None:
            fare_range = self.tables["ac"].lookup({"category": category.pk}, km)
            if fare_range is not None:
                return ComponentFare(
                    evaluate(fare_range, km), describe(fare_range, km, f"AC fare ({category.name_th})"),
                )

        return self._missing("ac", f"No AC fare configured for bogie {bogie.code} at {km} km", warnings)

    def _berth_fare(self, bogie: Bogie, km: Decimal, berth_type: Optional[str], warnings: List[str]) -> ComponentFare:
        if not berth_type:
            return ComponentFare(ZERO, "No berth selected")
        if not bogie.is_sleeper:
            return ComponentFare(ZERO, "Non-sleeper bogie")

        scope = {"bogie": bogie.pk, "berth_type": berth_type}
        fare_range = self.tables["berth"].lookup(scope, km)
        if fare_range is None:
            reason = self._out_of_range(
                "berth", scope, km, f"No {berth_type} berth fare configured for bogie {bogie.code} at {km} km",
            )
            return self._missing("berth", reason, warnings)
        return ComponentFare(evaluate(fare_range, km), describe(fare_range, km, f"Berth fare ({berth_type})"))


def calculate_price(
    train_id: int,
    from_station_id: int,
    to_station_id: int,
    bogie_id: int,
    berth_type: Optional[str] = None,
    engine: Optional[PricingEngine] = None,
) -> PriceCalculation:
    """Price one journey segment; raises NotFound for an unknown train, bogie, membership or route."""
    engine = engine or PricingEngine()
    return engine.calculate(train_id, from_station_id, to_station_id, bogie_id, berth_type)
