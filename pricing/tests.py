import csv
import os
import tempfile
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.core.exceptions import ValidationError
from django.core.management import CommandError, call_command
from django.db import IntegrityError
from django.test import Client, SimpleTestCase, TestCase, override_settings

from railfare.settings import _to_int

from .admin import DistanceFareRangeAdmin
from .distances import RouteDistanceIndex
from .engine import PricingEngine, StrictPolicy, ZeroFallback, calculate_price, policy_from_settings
from .exceptions import MissingConfiguration, NotFound, RangeConflict
from .models import (
    ACFare,
    ACFareCategory,
    BerthFare,
    Bogie,
    BogieACFare,
    DistanceFare,
    DistanceFareRange,
    RouteDistance,
    Station,
    Train,
    TrainComposition,
    TrainFare,
    TrainStop,
    TrainType,
)
from .ranges import berth_fares, distance_fares, evaluate, overlaps, select_range


class RailNetworkTestCase(TestCase):
    """Train T1 runs A (0 km) -> B (120.5 km) -> C (264.1 km)."""

    def setUp(self):
        self.A = Station.objects.create(code="A", name_th="Krung Thep")
        self.B = Station.objects.create(code="B", name_th="Ayutthaya")
        self.C = Station.objects.create(code="C", name_th="Lop Buri")
        self.rapid = TrainType.objects.create(code="RAP", name_th="Rapid", base_fare=Decimal("150"))
        self.train = Train.objects.create(train_number="T1", train_name_th="Northern rapid", train_type=self.rapid)
        for order, (station, km) in enumerate([(self.A, "0"), (self.B, "120.5"), (self.C, "264.1")], start=1):
            TrainStop.objects.create(
                train=self.train, station=station, stop_order=order, distance_from_origin=Decimal(km),
            )

        self.seat = Bogie.objects.create(code="2-FAN", name_th="Second class fan", class_number=2)
        self.ac_seat = Bogie.objects.create(code="2-AC", name_th="Second class AC", class_number=2, has_ac=True)
        self.sleeper = Bogie.objects.create(
            code="2-SLP", name_th="Second class sleeper", class_number=2,
            is_sleeper=True, upper_berths=12, lower_berths=12,
        )
        for position, bogie in enumerate([self.seat, self.ac_seat, self.sleeper], start=1):
            TrainComposition.objects.create(train=self.train, bogie=bogie, position=position)

        self.class2 = DistanceFare.objects.create(class_number=2, name_th="Class 2")

    def price(self, bogie, berth_type=None, engine=None, a=None, b=None):
        return calculate_price(
            self.train.pk, (a or self.A).pk, (b or self.C).pk, bogie.pk, berth_type, engine=engine,
        )


class OverlapPredicateTests(SimpleTestCase):
    def test_touching_ranges_do_not_overlap(self):
        self.assertFalse(overlaps(0, 100, 100, 200))
        self.assertFalse(overlaps(100, 200, 0, 100))

    def test_partial_and_nested_overlap(self):
        self.assertTrue(overlaps(0, 150, 100, 200))
        self.assertTrue(overlaps(120, 130, 100, 200))
        self.assertTrue(overlaps(0, 500, 100, 200))

    def test_open_ended_ranges(self):
        self.assertTrue(overlaps(150, None, 100, 200))
        self.assertTrue(overlaps(0, None, 1000, None))
        self.assertFalse(overlaps(200, None, 100, 200))
        self.assertFalse(overlaps(0, 100, 100, None))


class FareRangeTableTests(RailNetworkTestCase):
    def scope(self):
        return {"distance_fare": self.class2}

    def test_adjacent_ranges_are_accepted(self):
        distance_fares.insert(self.scope(), 0, 100, flat_rate=20)
        distance_fares.insert(self.scope(), 100, 200, flat_rate=40)
        distance_fares.insert(self.scope(), 200, None, fare_per_km=Decimal("0.5"))
        self.assertEqual(DistanceFareRange.objects.filter(distance_fare=self.class2).count(), 3)

    def test_overlapping_insert_is_rejected(self):
        existing = distance_fares.insert(self.scope(), 100, 200, flat_rate=40)
        for min_km, max_km in [(50, 150), (150, None), (0, None), (120, 130), (100, 200)]:
            with self.subTest(min_km=min_km, max_km=max_km):
                with self.assertRaises(RangeConflict) as ctx:
                    distance_fares.insert(self.scope(), min_km, max_km, flat_rate=10)
                self.assertEqual(ctx.exception.conflicting.pk, existing.pk)
        self.assertEqual(DistanceFareRange.objects.count(), 1)

    def test_other_scope_is_independent(self):
        class1 = DistanceFare.objects.create(class_number=1)
        distance_fares.insert(self.scope(), 0, None, flat_rate=40)
        distance_fares.insert({"distance_fare": class1}, 0, None, flat_rate=90)
        self.assertEqual(DistanceFareRange.objects.count(), 2)

    def test_invalid_definitions_raise_validation_error(self):
        with self.assertRaises(ValidationError) as ctx:
            distance_fares.insert(self.scope(), 100, 100, flat_rate=10)
        self.assertIn("max_km", ctx.exception.message_dict)
        with self.assertRaises(ValidationError) as ctx:
            distance_fares.insert(self.scope(), 0, 100)
        self.assertIn("flat_rate", ctx.exception.message_dict)
        with self.assertRaises(ValidationError):
            distance_fares.insert({}, 0, 100, flat_rate=10)
        self.assertEqual(DistanceFareRange.objects.count(), 0)

    def test_update_excludes_itself_but_checks_neighbours(self):
        first = distance_fares.insert(self.scope(), 0, 100, flat_rate=20)
        distance_fares.insert(self.scope(), 100, 200, flat_rate=40)

        updated = distance_fares.update(first.pk, max_km=90, flat_rate=25)
        self.assertEqual(updated.max_km, Decimal("90"))

        with self.assertRaises(RangeConflict):
            distance_fares.update(first.pk, max_km=150)
        first.refresh_from_db()
        self.assertEqual(first.max_km, Decimal("90.00"))

    def test_update_and_delete_unknown_range(self):
        with self.assertRaises(NotFound):
            distance_fares.update(9999, flat_rate=1)
        with self.assertRaises(NotFound):
            distance_fares.delete(9999)

    def test_delete(self):
        r = distance_fares.insert(self.scope(), 0, 100, flat_rate=20)
        distance_fares.delete(r.pk)
        self.assertFalse(DistanceFareRange.objects.exists())

    def test_non_overlap_invariant_holds_after_mixed_inserts(self):
        attempts = [(0, 100), (50, 120), (100, 250), (240, 260), (250, None), (300, 400), (0, 10)]
        for min_km, max_km in attempts:
            try:
                distance_fares.insert(self.scope(), min_km, max_km, flat_rate=1)
            except RangeConflict:
                pass
        ranges = list(distance_fares.ranges(distance_fares.scope(**self.scope())))
        self.assertEqual(len(ranges), 3)
        for i, a in enumerate(ranges):
            for b in ranges[i + 1:]:
                self.assertFalse(overlaps(a.min_km, a.max_km, b.min_km, b.max_km))

    def test_lookup_at_boundary_resolves_to_upper_range(self):
        distance_fares.insert(self.scope(), 0, 300, flat_rate=50)
        upper = distance_fares.insert(self.scope(), 300, 600, flat_rate=90)
        found = distance_fares.lookup({"distance_fare": self.class2.pk}, Decimal("300"))
        self.assertEqual(found.pk, upper.pk)

    def test_lookup_outside_every_range(self):
        distance_fares.insert(self.scope(), 0, 500, flat_rate=50)
        self.assertIsNone(distance_fares.lookup({"distance_fare": self.class2.pk}, Decimal("500")))
        self.assertIsNone(distance_fares.lookup({"distance_fare": self.class2.pk + 100}, Decimal("10")))

    def test_legacy_overlap_tie_break_prefers_lowest_min_km(self):
        low = DistanceFareRange.objects.create(distance_fare=self.class2, min_km=0, max_km=300, flat_rate=50)
        DistanceFareRange.objects.create(distance_fare=self.class2, min_km=200, max_km=400, flat_rate=70)
        found = distance_fares.lookup({"distance_fare": self.class2.pk}, Decimal("250"))
        self.assertEqual(found.pk, low.pk)

    def test_rate_evaluation(self):
        per_km = DistanceFareRange(min_km=0, fare_per_km=Decimal("1.5"), flat_rate=Decimal("99"))
        flat = DistanceFareRange(min_km=0, fare_per_km=Decimal("0"), flat_rate=Decimal("50"))
        self.assertEqual(evaluate(per_km, Decimal("264.1")), Decimal("396.15"))
        self.assertEqual(evaluate(flat, Decimal("264.1")), Decimal("50.00"))
        self.assertEqual(select_range([per_km], Decimal("1")), per_km)

    def test_berth_fares_require_a_matching_sleeper_bogie(self):
        with self.assertRaises(ValidationError):
            berth_fares.insert({"bogie": self.seat, "berth_type": "lower"}, 0, None, flat_rate=100)
        with self.assertRaises(ValidationError):
            berth_fares.insert({"bogie": self.sleeper, "berth_type": "single"}, 0, None, flat_rate=100)
        berth_fares.insert({"bogie": self.sleeper, "berth_type": "lower"}, 0, 500, flat_rate=100)
        berth_fares.insert({"bogie": self.sleeper, "berth_type": "upper"}, 0, 500, flat_rate=80)
        self.assertEqual(BerthFare.objects.count(), 2)


class RouteDistanceIndexTests(RailNetworkTestCase):
    def setUp(self):
        super().setUp()
        self.index = RouteDistanceIndex()

    def test_build_all_pairs(self):
        distances = {(d.from_station_id, d.to_station_id): d for d in self.index.build(self.train.pk)}
        self.assertEqual(len(distances), 3)
        self.assertEqual(distances[(self.A.pk, self.B.pk)].distance_km, Decimal("120.50"))
        self.assertEqual(distances[(self.B.pk, self.C.pk)].distance_km, Decimal("143.60"))
        self.assertEqual(distances[(self.A.pk, self.C.pk)].distance_for_pricing, Decimal("264.10"))

    def test_station_distance_fallback(self):
        self.A.distance_actual = Decimal("10")
        self.A.distance_for_pricing = Decimal("12")
        self.A.save()
        self.C.distance_actual = Decimal("60")
        self.C.save()
        TrainStop.objects.filter(train=self.train, station=self.A).update(distance_from_origin=None)

        d = next(d for d in self.index.build(self.train.pk) if d.connects(self.A.pk, self.C.pk))
        self.assertEqual(d.distance_km, Decimal("50.00"))
        self.assertEqual(d.distance_for_pricing, Decimal("48.00"))

    def test_get_is_symmetric(self):
        self.index.rebuild(self.train.pk)
        forward = self.index.get(self.train.pk, self.A.pk, self.C.pk)
        backward = self.index.get(self.train.pk, self.C.pk, self.A.pk)
        self.assertEqual(forward.distance_km, backward.distance_km)
        self.assertEqual(forward.distance_for_pricing, Decimal("264.10"))

    def test_rebuild_is_idempotent(self):
        self.index.rebuild(self.train.pk)
        first = sorted(RouteDistance.objects.values_list("from_station", "to_station", "distance_km"))
        self.assertEqual(self.index.rebuild(self.train.pk), (3, 3))
        second = sorted(RouteDistance.objects.values_list("from_station", "to_station", "distance_km"))
        self.assertEqual(first, second)

    def test_cache_miss_rebuilds_and_stores(self):
        self.assertFalse(RouteDistance.objects.exists())
        d = self.index.get(self.train.pk, self.C.pk, self.B.pk)
        self.assertEqual(d.distance_km, Decimal("143.60"))
        self.assertEqual(RouteDistance.objects.filter(train=self.train).count(), 3)

    def test_miss_off_route_leaves_cache_untouched(self):
        self.index.rebuild(self.train.pk)
        before = sorted(RouteDistance.objects.values_list("pk", flat=True))
        elsewhere = Station.objects.create(code="Z", name_th="Hat Yai")
        for _ in range(3):
            with self.assertRaises(NotFound):
                self.index.get(self.train.pk, self.A.pk, elsewhere.pk)
        self.assertEqual(sorted(RouteDistance.objects.values_list("pk", flat=True)), before)

    def test_miss_for_new_stop_refreshes_cache(self):
        self.index.rebuild(self.train.pk)
        D = Station.objects.create(code="D", name_th="Nakhon Sawan")
        TrainStop.objects.create(train=self.train, station=D, stop_order=4, distance_from_origin=Decimal("300"))
        d = self.index.get(self.train.pk, self.A.pk, D.pk)
        self.assertEqual(d.distance_km, Decimal("300.00"))
        self.assertEqual(RouteDistance.objects.filter(train=self.train).count(), 6)

    def test_concurrent_save_falls_back_to_computed_distance(self):
        with mock.patch.object(RouteDistanceIndex, "save", side_effect=IntegrityError("duplicate key")):
            d = self.index.get(self.train.pk, self.A.pk, self.C.pk)
        self.assertEqual(d.distance_km, Decimal("264.10"))
        self.assertFalse(RouteDistance.objects.exists())

    def test_invalidate(self):
        self.index.rebuild(self.train.pk)
        self.assertEqual(self.index.invalidate(self.train.pk), 3)
        self.assertFalse(RouteDistance.objects.filter(train=self.train).exists())

    def test_stop_distances_must_not_decrease(self):
        D = Station.objects.create(code="D", name_th="Nakhon Sawan")
        with self.assertRaises(ValidationError) as ctx:
            TrainStop(train=self.train, station=D, stop_order=4, distance_from_origin=Decimal("200")).clean()
        self.assertIn("distance_from_origin", ctx.exception.message_dict)
        with self.assertRaises(ValidationError):
            TrainStop(train=self.train, station=D, stop_order=3, distance_from_origin=Decimal("100")).clean()
        TrainStop(train=self.train, station=D, stop_order=4, distance_from_origin=Decimal("300")).clean()
        TrainStop(train=self.train, station=D, stop_order=4).clean()

    def test_inactive_stops_are_skipped(self):
        TrainStop.objects.filter(train=self.train, station=self.B).update(is_active=False)
        self.assertEqual(len(self.index.build(self.train.pk)), 1)
        with self.assertRaises(NotFound):
            self.index.get(self.train.pk, self.A.pk, self.B.pk)

    def test_short_route_has_no_distances(self):
        TrainStop.objects.filter(train=self.train).exclude(station=self.A).delete()
        self.assertEqual(self.index.build(self.train.pk), [])
        with self.assertRaises(NotFound):
            self.index.get(self.train.pk, self.A.pk, self.C.pk)

    def test_unknown_train(self):
        with self.assertRaises(NotFound):
            self.index.build(9999)

    def test_rebuild_all_reports_counts(self):
        Train.objects.create(train_number="T2")
        result = self.index.rebuild_all()
        self.assertEqual(result.processed, 2)
        self.assertEqual(result.total_distances, 3)
        self.assertEqual(result.errors, [])


class PricingEngineTests(RailNetworkTestCase):
    def setUp(self):
        super().setUp()
        distance_fares.insert({"distance_fare": self.class2}, 0, 300, fare_per_km=0, flat_rate=50)

    def test_seat_fare_with_base_train_fare(self):
        result = self.price(self.seat)
        b = result.breakdown
        self.assertEqual(b.distance_fare, Decimal("50.00"))
        self.assertEqual(b.train_fare, Decimal("150.00"))
        self.assertEqual(b.ac_fare, Decimal("0.00"))
        self.assertEqual(b.berth_fare, Decimal("0.00"))
        self.assertEqual(b.adjustments, Decimal("0.00"))
        self.assertEqual(result.total_fare, Decimal("200.00"))
        self.assertEqual(result.warnings, [])
        self.assertEqual(result.details.distance_for_pricing, Decimal("264.10"))
        self.assertEqual(result.details.from_station, "Krung Thep")
        self.assertEqual(result.calculations["ac_fare"], "Non-AC bogie")
        self.assertIn("Base fare for Rapid", result.calculations["train_fare"])

    def test_bogie_specific_ac_fare(self):
        BogieACFare.objects.create(bogie=self.ac_seat, min_km=0, flat_rate=80)
        result = self.price(self.ac_seat)
        self.assertEqual(result.breakdown.ac_fare, Decimal("80.00"))
        self.assertEqual(result.breakdown.total, Decimal("280.00"))
        self.assertIn("Bogie-specific AC fare", result.calculations["ac_fare"])

    def test_category_ac_fare_fallback(self):
        category = ACFareCategory.objects.create(code="AC2", name_th="AC second class")
        ACFare.objects.create(category=category, min_km=0, max_km=1000, flat_rate=60)
        self.ac_seat.ac_fare_category = category
        self.ac_seat.save()
        result = self.price(self.ac_seat)
        self.assertEqual(result.breakdown.ac_fare, Decimal("60.00"))
        self.assertEqual(result.breakdown.total, Decimal("260.00"))

    def test_lower_berth_fare(self):
        berth_fares.insert({"bogie": self.sleeper, "berth_type": "lower"}, 0, 500, flat_rate=100)
        result = self.price(self.sleeper, "lower")
        self.assertEqual(result.breakdown.berth_fare, Decimal("100.00"))
        self.assertEqual(result.breakdown.total, Decimal("300.00"))
        self.assertEqual(result.details.berth_type, "lower")

    def test_berth_ignored_for_seat_bogie(self):
        result = self.price(self.seat, "lower")
        self.assertEqual(result.breakdown.berth_fare, Decimal("0.00"))
        self.assertEqual(result.calculations["berth_fare"], "Non-sleeper bogie")

    def test_distance_at_range_boundary_uses_upper_range(self):
        distance_fares.insert({"distance_fare": self.class2}, 300, 600, flat_rate=90)
        D = Station.objects.create(code="D", name_th="Nakhon Sawan")
        TrainStop.objects.create(train=self.train, station=D, stop_order=4, distance_from_origin=Decimal("300"))
        result = self.price(self.seat, b=D)
        self.assertEqual(result.details.distance_for_pricing, Decimal("300.00"))
        self.assertEqual(result.breakdown.distance_fare, Decimal("90.00"))

    def test_bogie_outside_composition_fails_before_pricing(self):
        stray = Bogie.objects.create(code="1-AC", name_th="First class", class_number=1, has_ac=True)
        with mock.patch.object(RouteDistanceIndex, "get") as get_distance, \
                mock.patch.object(PricingEngine, "_distance_fare") as distance_fare:
            with self.assertRaises(NotFound):
                self.price(stray)
        get_distance.assert_not_called()
        distance_fare.assert_not_called()

    def test_unknown_train_and_bogie(self):
        with self.assertRaises(NotFound):
            calculate_price(9999, self.A.pk, self.C.pk, self.seat.pk)
        with self.assertRaises(NotFound):
            calculate_price(self.train.pk, self.A.pk, self.C.pk, 9999)

    def test_inactive_composition_is_not_a_member(self):
        TrainComposition.objects.filter(bogie=self.seat).update(is_active=False)
        with self.assertRaises(NotFound):
            self.price(self.seat)

    def test_station_not_on_route(self):
        elsewhere = Station.objects.create(code="Z", name_th="Hat Yai")
        with self.assertRaises(NotFound):
            self.price(self.seat, b=elsewhere)

    def test_missing_ac_configuration_contributes_zero(self):
        result = self.price(self.ac_seat)
        self.assertEqual(result.breakdown.ac_fare, Decimal("0.00"))
        self.assertEqual(result.breakdown.distance_fare, Decimal("50.00"))
        self.assertEqual(result.breakdown.train_fare, Decimal("150.00"))
        self.assertEqual(result.breakdown.total, Decimal("200.00"))
        self.assertEqual(len(result.warnings), 1)
        self.assertTrue(result.warnings[0].startswith("ac:"))

    def test_missing_distance_range_contributes_zero(self):
        DistanceFareRange.objects.all().delete()
        result = self.price(self.seat)
        self.assertEqual(result.breakdown.distance_fare, Decimal("0.00"))
        self.assertEqual(result.breakdown.total, Decimal("150.00"))

    def test_missing_train_fare_and_base_fare_contributes_zero(self):
        self.rapid.base_fare = None
        self.rapid.save()
        result = self.price(self.seat)
        b = result.breakdown
        self.assertEqual(b.train_fare, Decimal("0.00"))
        self.assertEqual(b.distance_fare, Decimal("50.00"))
        self.assertEqual(b.ac_fare, Decimal("0.00"))
        self.assertEqual(b.berth_fare, Decimal("0.00"))
        self.assertEqual(b.total, Decimal("50.00"))
        self.assertEqual(len(result.warnings), 1)
        self.assertTrue(result.warnings[0].startswith("train:"))

    def test_missing_berth_fare_contributes_zero(self):
        result = self.price(self.sleeper, "upper")
        b = result.breakdown
        self.assertEqual(b.berth_fare, Decimal("0.00"))
        self.assertEqual(b.distance_fare, Decimal("50.00"))
        self.assertEqual(b.train_fare, Decimal("150.00"))
        self.assertEqual(b.ac_fare, Decimal("0.00"))
        self.assertEqual(b.total, Decimal("200.00"))
        self.assertEqual(len(result.warnings), 1)
        self.assertTrue(result.warnings[0].startswith("berth:"))

    def test_distance_on_last_upper_bound_explains_the_gap(self):
        D = Station.objects.create(code="D", name_th="Nakhon Sawan")
        TrainStop.objects.create(train=self.train, station=D, stop_order=4, distance_from_origin=Decimal("300"))
        result = self.price(self.seat, b=D)
        self.assertEqual(result.breakdown.distance_fare, Decimal("0.00"))
        self.assertEqual(len(result.warnings), 1)
        self.assertTrue(result.warnings[0].startswith("distance:"))
        self.assertIn("exclusive upper bound", result.warnings[0])

    def test_train_fare_takes_precedence_over_base_fare(self):
        TrainFare.objects.create(
            train_type=self.rapid, class_number=2, min_km=0, flat_rate=Decimal("170"), fare_th="Rapid class 2",
        )
        result = self.price(self.seat)
        self.assertEqual(result.breakdown.train_fare, Decimal("170.00"))
        self.assertEqual(result.calculations["train_fare"], "Rapid class 2 (0-∞ km) = 170.00 ฿")

    def test_strict_policy_raises(self):
        engine = PricingEngine(policy=StrictPolicy())
        with self.assertRaises(MissingConfiguration) as ctx:
            self.price(self.ac_seat, engine=engine)
        self.assertEqual(ctx.exception.component, "ac")

    @override_settings(PRICING_MISSING_RANGE_POLICY="strict")
    def test_policy_from_settings(self):
        self.assertIsInstance(policy_from_settings(), StrictPolicy)
        with self.settings(PRICING_MISSING_RANGE_POLICY="zero"):
            self.assertIsInstance(policy_from_settings(), ZeroFallback)

    def test_invalid_berth_type(self):
        with self.assertRaises(ValidationError):
            self.price(self.sleeper, "cabin")

    def test_rounding_is_consistent_per_component(self):
        DistanceFareRange.objects.all().delete()
        distance_fares.insert({"distance_fare": self.class2}, 0, None, fare_per_km=Decimal("0.333"))
        BogieACFare.objects.create(bogie=self.sleeper, min_km=0, fare_per_km=Decimal("0.1234"))
        BerthFare.objects.create(bogie=self.sleeper, berth_type="upper", min_km=0, fare_per_km=Decimal("0.0555"))
        self.sleeper.has_ac = True
        self.sleeper.save()

        b = self.price(self.sleeper, "upper").breakdown
        self.assertEqual(b.distance_fare, Decimal("87.95"))
        self.assertEqual(b.ac_fare, Decimal("32.59"))
        self.assertEqual(b.berth_fare, Decimal("14.66"))
        self.assertEqual(b.subtotal, b.distance_fare + b.train_fare + b.ac_fare + b.berth_fare)
        self.assertEqual(b.total, Decimal("285.20"))


class APITests(RailNetworkTestCase):
    def setUp(self):
        super().setUp()
        self.client = Client()
        distance_fares.insert({"distance_fare": self.class2}, 0, 300, flat_rate=50)

    def test_calculate_endpoint(self):
        r = self.client.post("/api/pricing/calculate/", {
            "train_id": self.train.pk,
            "from_station_id": self.A.pk,
            "to_station_id": self.C.pk,
            "bogie_id": self.seat.pk,
        }, content_type="application/json")
        self.assertEqual(r.status_code, 200)
        data = r.json()
        self.assertEqual(data["total_fare"], "200.00")
        self.assertEqual(data["breakdown"]["distance_fare"], "50.00")
        self.assertEqual(data["details"]["distance"], "264.10")
        self.assertIn("berth_fare", data["calculations"])

    def test_calculate_rejects_same_station(self):
        r = self.client.post("/api/pricing/calculate/", {
            "train_id": self.train.pk,
            "from_station_id": self.A.pk,
            "to_station_id": self.A.pk,
            "bogie_id": self.seat.pk,
        }, content_type="application/json")
        self.assertEqual(r.status_code, 400)

    def test_calculate_not_found(self):
        stray = Bogie.objects.create(code="X", name_th="Stray", class_number=3)
        r = self.client.post("/api/pricing/calculate/", {
            "train_id": self.train.pk,
            "from_station_id": self.A.pk,
            "to_station_id": self.C.pk,
            "bogie_id": stray.pk,
        }, content_type="application/json")
        self.assertEqual(r.status_code, 404)
        self.assertIn("not configured for train", r.json()["detail"])

    def test_route_distance_endpoints(self):
        url = f"/api/trains/{self.train.pk}/route-distances/"
        r = self.client.post(url)
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json(), {"calculated": 3, "saved": 3})
        r = self.client.get(url)
        self.assertEqual(len(r.json()), 3)
        self.assertIn("from_station", r.json()[0])
        self.assertEqual(self.client.post("/api/trains/9999/route-distances/").status_code, 404)

    def test_batch_endpoint(self):
        r = self.client.post("/api/route-distances/batch-calculate/")
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["processed"], 1)

    def test_range_create_conflict_and_validation(self):
        url = "/api/fares/distance/ranges/"
        r = self.client.post(url, {"distance_fare": self.class2.pk, "min_km": "300", "max_km": "600",
                                   "flat_rate": "90"}, content_type="application/json")
        self.assertEqual(r.status_code, 201)
        self.assertEqual(r.json()["min_km"], "300.00")

        r = self.client.post(url, {"distance_fare": self.class2.pk, "min_km": "250", "flat_rate": "10"},
                             content_type="application/json")
        self.assertEqual(r.status_code, 409)

        r = self.client.post(url, {"distance_fare": self.class2.pk, "min_km": "700", "max_km": "650",
                                   "flat_rate": "10"}, content_type="application/json")
        self.assertEqual(r.status_code, 400)

        r = self.client.get(url, {"distance_fare": self.class2.pk})
        self.assertEqual([row["min_km"] for row in r.json()], ["0.00", "300.00"])

    def test_range_update_and_delete(self):
        fare_range = DistanceFareRange.objects.get()
        url = f"/api/fares/distance/ranges/{fare_range.pk}/"
        r = self.client.patch(url, {"flat_rate": "55"}, content_type="application/json")
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["flat_rate"], "55.00")

        self.assertEqual(self.client.delete(url).status_code, 204)
        self.assertEqual(self.client.delete(url).status_code, 404)

    def test_unknown_category(self):
        self.assertEqual(self.client.get("/api/fares/promo/ranges/").status_code, 404)


class CommandTests(RailNetworkTestCase):
    def test_rebuild_route_distances(self):
        out = StringIO()
        call_command("rebuild_route_distances", stdout=out, stderr=StringIO())
        self.assertEqual(RouteDistance.objects.count(), 3)
        self.assertIn("distances saved: 3", out.getvalue())

    def test_rebuild_dry_run_writes_nothing(self):
        out = StringIO()
        call_command("rebuild_route_distances", "--train", "T1", "--dry", stdout=out, stderr=StringIO())
        self.assertFalse(RouteDistance.objects.exists())
        self.assertIn("Route distances calculated: 3", out.getvalue())

    def write_stops(self, rows):
        with tempfile.NamedTemporaryFile("w", suffix=".csv", newline="", encoding="utf-8", delete=False) as f:
            writer = csv.writer(f)
            writer.writerow(["station_code", "stop_order", "distance_from_origin"])
            writer.writerows(rows)
        self.addCleanup(os.unlink, f.name)
        return f.name

    def test_import_train_stops(self):
        D = Station.objects.create(code="D", name_th="Nakhon Sawan")
        path = self.write_stops([["A", 1, "0"], ["D", 2, "246.0"]])

        call_command("import_train_stops", path, "--train", "T1", "--clear", stdout=StringIO(), stderr=StringIO())
        self.assertEqual(TrainStop.objects.filter(train=self.train).count(), 2)
        self.assertEqual(RouteDistance.objects.filter(train=self.train).count(), 1)
        d = RouteDistanceIndex().get(self.train.pk, D.pk, self.A.pk)
        self.assertEqual(d.distance_km, Decimal("246.00"))

    def test_import_replaces_stale_cached_distances(self):
        index = RouteDistanceIndex()
        index.rebuild(self.train.pk)
        path = self.write_stops([["A", 1, "0"], ["B", 2, "50"]])

        call_command("import_train_stops", path, "--train", "T1", "--clear", stdout=StringIO(), stderr=StringIO())
        self.assertEqual(index.get(self.train.pk, self.A.pk, self.B.pk).distance_km, Decimal("50.00"))
        with self.assertRaises(NotFound):
            index.get(self.train.pk, self.A.pk, self.C.pk)

    def test_import_without_rebuild_drops_the_cache(self):
        index = RouteDistanceIndex()
        index.rebuild(self.train.pk)
        path = self.write_stops([["A", 1, "0"], ["B", 2, "50"]])

        out = StringIO()
        call_command("import_train_stops", path, "--train", "T1", "--clear", "--no-rebuild",
                     stdout=out, stderr=StringIO())
        self.assertIn("Route distances invalidated: 3", out.getvalue())
        self.assertFalse(RouteDistance.objects.filter(train=self.train).exists())
        self.assertEqual(index.get(self.train.pk, self.B.pk, self.A.pk).distance_km, Decimal("50.00"))
        self.assertEqual(RouteDistance.objects.filter(train=self.train).count(), 1)

    def test_import_rejects_decreasing_distances(self):
        RouteDistanceIndex().rebuild(self.train.pk)
        path = self.write_stops([["A", 1, "0"], ["B", 2, "200"], ["C", 3, "100"]])

        with self.assertRaises(CommandError):
            call_command("import_train_stops", path, "--train", "T1", "--clear", stdout=StringIO(), stderr=StringIO())
        stops = list(TrainStop.objects.filter(train=self.train).order_by("stop_order")
                     .values_list("station__code", "distance_from_origin"))
        self.assertEqual(stops, [("A", Decimal("0.00")), ("B", Decimal("120.50")), ("C", Decimal("264.10"))])
        self.assertEqual(RouteDistance.objects.filter(train=self.train).count(), 3)


class FareRangeAdminFormTests(RailNetworkTestCase):
    def setUp(self):
        super().setUp()
        distance_fares.insert({"distance_fare": self.class2}, 0, 300, flat_rate=50)

    def form(self, **data):
        values = {"distance_fare": self.class2.pk, "max_km": "", "fare_per_km": "", "notes": ""}
        values.update(data)
        return DistanceFareRangeAdmin.form(data=values)

    def test_overlapping_range_is_rejected(self):
        form = self.form(min_km="250", flat_rate="10")
        self.assertFalse(form.is_valid())
        self.assertIn("overlaps", form.non_field_errors()[0])

    def test_check_runs_under_the_scope_lock(self):
        with mock.patch.object(distance_fares, "lock_scope") as lock_scope:
            form = self.form(min_km="300", max_km="600", flat_rate="90")
            self.assertTrue(form.is_valid(), form.errors)
        lock_scope.assert_called_once_with({"distance_fare": self.class2.pk})

    def test_editing_a_range_excludes_itself(self):
        existing = DistanceFareRange.objects.get()
        form = DistanceFareRangeAdmin.form(
            data={"distance_fare": self.class2.pk, "min_km": "0", "max_km": "250", "fare_per_km": "",
                  "flat_rate": "45", "notes": ""},
            instance=existing,
        )
        self.assertTrue(form.is_valid(), form.errors)


class SettingsHelperTests(SimpleTestCase):
    def test_to_int(self):
        self.assertEqual(_to_int("60", 0), 60)
        self.assertEqual(_to_int(None, 5), 5)
        self.assertEqual(_to_int("", 5), 5)
        self.assertEqual(_to_int("sixty", 5), 5)
