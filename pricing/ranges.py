# Fare range tables: non-overlapping [min_km, max_km) bands per scope, with
# validated mutation and point lookup. One table per fare category.
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, Iterable, Optional, Tuple

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models, transaction

from .exceptions import NotFound, RangeConflict
from .models import ACFare, BerthFare, BogieACFare, DistanceFareRange, TrainFare
from .numbers import fmt_km, round2, to_decimal

logger = logging.getLogger(__name__)

Scope = Dict[str, object]


def overlaps(min_a, max_a, min_b, max_b) -> bool:
    """
    Half-open overlap test for [min_a, max_a) and [min_b, max_b).
    A missing max is +infinity. Ranges that only touch at a bound do not overlap.
    """
    min_a, max_a = to_decimal(min_a), to_decimal(max_a)
    min_b, max_b = to_decimal(min_b), to_decimal(max_b)
    a_starts_before_b_ends = max_b is None or min_a < max_b
    b_starts_before_a_ends = max_a is None or min_b < max_a
    return a_starts_before_b_ends and b_starts_before_a_ends


def contains(fare_range, distance) -> bool:
    distance = to_decimal(distance)
    max_km = to_decimal(fare_range.max_km)
    return to_decimal(fare_range.min_km) <= distance and (max_km is None or distance < max_km)


def select_range(ranges: Iterable, distance):
    """Return the range covering ``distance``; lowest min_km wins if several do."""
    matches = [r for r in ranges if contains(r, distance)]
    if not matches:
        return None
    return min(matches, key=lambda r: (to_decimal(r.min_km), r.pk or 0))


def evaluate(fare_range, distance) -> Decimal:
    """Per-km rate times distance when a non-zero rate is set, else the flat rate."""
    per_km = to_decimal(fare_range.fare_per_km)
    if per_km:
        return round2(to_decimal(distance) * per_km)
    return round2(fare_range.flat_rate)


def describe(fare_range, distance, label: str = "") -> str:
    currency = getattr(settings, "PRICING_CURRENCY_SYMBOL", "฿")
    fare = evaluate(fare_range, distance)
    per_km = to_decimal(fare_range.fare_per_km)
    if per_km:
        text = f"{fmt_km(distance)} km × {fmt_km(per_km)} {currency}/km = {fare} {currency}"
        return f"{label}: {text}" if label else text
    band = f"{fmt_km(fare_range.min_km)}-{fmt_km(fare_range.max_km)} km"
    return f"{label or 'Flat rate'} ({band}) = {fare} {currency}"


class FareRangeTable:
    """
    A family of fare ranges stored in one FareRange model, partitioned by the
    values of ``scope_fields``. Ranges inside one scope never overlap.
    """

    def __init__(self, model, scope_fields: Tuple[str, ...], label: str, lookup_filter: Optional[dict] = None):
        self.model = model
        self.scope_fields = tuple(scope_fields)
        self.label = label
        self.lookup_filter = lookup_filter or {}

    def __repr__(self) -> str:
        return f"<FareRangeTable {self.model.__name__} by {', '.join(self.scope_fields)}>"

    # ── scope keys ──────────────────────────────────────────────────────
    def scope(self, **values) -> Scope:
        unknown = sorted(set(values) - set(self.scope_fields))
        missing = [f for f in self.scope_fields if values.get(f) in (None, "")]
        if unknown or missing:
            errors = {f: "Unknown scope field." for f in unknown}
            errors.update({f: "This scope field is required." for f in missing})
            raise ValidationError(errors)
        return {f: getattr(values[f], "pk", values[f]) for f in self.scope_fields}

    def scope_of(self, fare_range) -> Scope:
        return {f: getattr(fare_range, self.model._meta.get_field(f).attname) for f in self.scope_fields}

    def _columns(self, scope: Scope) -> dict:
        return {self.model._meta.get_field(name).attname: value for name, value in scope.items()}

    def lock_scope(self, scope: Scope) -> None:
        # Serialize check-then-write per scope owner row, then pin the existing rows.
        for name, value in scope.items():
            field = self.model._meta.get_field(name)
            if isinstance(field, models.ForeignKey):
                list(field.related_model.objects.select_for_update().filter(pk=value))
        list(self.ranges(scope).select_for_update())

    # ── queries ─────────────────────────────────────────────────────────
    def ranges(self, scope: Scope):
        return self.model.objects.filter(**self._columns(scope)).order_by("min_km", "pk")

    def matching(self, **partial):
        """Ranges whose scope matches the given subset of scope fields."""
        unknown = sorted(set(partial) - set(self.scope_fields))
        if unknown:
            raise ValidationError({f: "Unknown scope field." for f in unknown})
        return self.model.objects.filter(**self._columns(partial)).order_by(*self.scope_fields, "min_km", "pk")

    def find_conflict(self, scope: Scope, min_km, max_km, exclude_id=None):
        qs = self.ranges(scope)
        if exclude_id is not None:
            qs = qs.exclude(pk=exclude_id)
        for existing in qs:
            if overlaps(min_km, max_km, existing.min_km, existing.max_km):
                return existing
        return None

    def lookup(self, scope: Scope, distance):
        return select_range(self.ranges(scope).filter(**self.lookup_filter), distance)

    def ends_at(self, scope: Scope, distance) -> bool:
        """True when some range in the scope stops exactly at ``distance``."""
        return self.ranges(scope).filter(max_km=to_decimal(distance)).exists()

    # ── mutations ───────────────────────────────────────────────────────
    def _raise_conflict(self, conflict) -> None:
        raise RangeConflict(
            f"Range overlaps with existing {self.label} range "
            f"{fmt_km(conflict.min_km)}-{fmt_km(conflict.max_km)} km (id {conflict.pk})",
            conflicting=conflict,
        )

    def insert(self, scope: Scope, min_km, max_km=None, fare_per_km=None, flat_rate=None, **extra):
        scope = self.scope(**scope)
        obj = self.model(
            **self._columns(scope),
            min_km=min_km,
            max_km=max_km,
            fare_per_km=fare_per_km,
            flat_rate=flat_rate,
            **extra,
        )
        obj.full_clean()

        with transaction.atomic():
            self.lock_scope(scope)
            conflict = self.find_conflict(scope, obj.min_km, obj.max_km)
            if conflict is not None:
                self._raise_conflict(conflict)
            obj.save()

        logger.info("Added %s range %s-%s km (id %s) for %s", self.label,
                    fmt_km(obj.min_km), fmt_km(obj.max_km), obj.pk, scope)
        return obj

    def update(self, range_id, **fields):
        editable = {f.name for f in self.model._meta.concrete_fields if not f.primary_key}
        unknown = sorted(set(fields) - editable)
        if unknown:
            raise ValidationError({name: "Unknown field." for name in unknown})

        with transaction.atomic():
            obj = self.model.objects.select_for_update().filter(pk=range_id).first()
            if obj is None:
                raise NotFound(f"{self.label.capitalize()} range {range_id} not found")
            for name, value in fields.items():
                if name in self.scope_fields:
                    setattr(obj, self.model._meta.get_field(name).attname, getattr(value, "pk", value))
                else:
                    setattr(obj, name, value)
            obj.full_clean()

            scope = self.scope_of(obj)
            self.lock_scope(scope)
            conflict = self.find_conflict(scope, obj.min_km, obj.max_km, exclude_id=obj.pk)
            if conflict is not None:
                self._raise_conflict(conflict)
            obj.save()

        logger.info("Updated %s range %s", self.label, obj.pk)
        return obj

    def delete(self, range_id) -> None:
        deleted, _ = self.model.objects.filter(pk=range_id).delete()
        if not deleted:
            raise NotFound(f"{self.label.capitalize()} range {range_id} not found")
        logger.info("Deleted %s range %s", self.label, range_id)


distance_fares = FareRangeTable(DistanceFareRange, ("distance_fare",), "distance fare")
train_fares = FareRangeTable(TrainFare, ("train_type", "class_number"), "train fare",
                             lookup_filter={"is_active": True})
ac_fares = FareRangeTable(ACFare, ("category",), "AC fare")
bogie_ac_fares = FareRangeTable(BogieACFare, ("bogie",), "bogie AC fare")
berth_fares = FareRangeTable(BerthFare, ("bogie", "berth_type"), "berth fare")

FARE_TABLES: Dict[str, FareRangeTable] = {
    "distance": distance_fares,
    "train": train_fares,
    "ac": ac_fares,
    "bogie-ac": bogie_ac_fares,
    "berth": berth_fares,
}
