# Route distance index: derives the distance between any two stops of a train
# from its ordered stop list and caches the pairwise table in RouteDistance.
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Tuple

from django.db import IntegrityError, transaction

from .exceptions import NotFound
from .models import RouteDistance, Train, TrainStop
from .numbers import ZERO, round2, to_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteDistanceResult:
    from_station_id: int
    to_station_id: int
    distance_km: Decimal
    distance_for_pricing: Decimal

    def connects(self, a: int, b: int) -> bool:
        return (self.from_station_id, self.to_station_id) in ((a, b), (b, a))


@dataclass
class BatchResult:
    processed: int = 0
    total_distances: int = 0
    errors: List[str] = field(default_factory=list)


def _pair_distance(from_stop: TrainStop, to_stop: TrainStop) -> Tuple[Decimal, Decimal]:
    """Return (distance_km, distance_for_pricing) between two stops of the same train."""
    if from_stop.distance_from_origin is not None and to_stop.distance_from_origin is not None:
        km = to_decimal(to_stop.distance_from_origin) - to_decimal(from_stop.distance_from_origin)
        return round2(km), round2(km)

    # No per-stop figures: fall back to the stations' fixed line distances
    from_actual = to_decimal(from_stop.station.distance_actual) or ZERO
    to_actual = to_decimal(to_stop.station.distance_actual) or ZERO
    from_pricing = to_decimal(from_stop.station.distance_for_pricing) or from_actual
    to_pricing = to_decimal(to_stop.station.distance_for_pricing) or to_actual
    return round2(abs(to_actual - from_actual)), round2(abs(to_pricing - from_pricing))


class RouteDistanceIndex:
    """Pairwise stop distances per train, cached in the RouteDistance table."""

    def build(self, train_id: int) -> List[RouteDistanceResult]:
        """
        Compute the distance for every pair of active stops (i < j in stop order).
        Returns an empty list when the train has fewer than two active stops.
        """
        if not Train.objects.filter(pk=train_id).exists():
            raise NotFound(f"Train {train_id} not found")

        stops = list(
            TrainStop.objects.filter(train_id=train_id, is_active=True)
            .select_related("station")
            .order_by("stop_order")
        )
        if len(stops) < 2:
            logger.warning("Train %s has less than 2 stops, cannot calculate distances", train_id)
            return []

        results: List[RouteDistanceResult] = []
        seen: set[Tuple[int, int]] = set()
        for i, from_stop in enumerate(stops):
            for to_stop in stops[i + 1:]:
                key = (from_stop.station_id, to_stop.station_id)
                # a station served twice keeps its first pairing
                if key[0] == key[1] or key in seen or key[::-1] in seen:
                    continue
                seen.add(key)
                km, pricing_km = _pair_distance(from_stop, to_stop)
                results.append(RouteDistanceResult(
                    from_station_id=from_stop.station_id,
                    to_station_id=to_stop.station_id,
                    distance_km=km,
                    distance_for_pricing=pricing_km,
                ))
                logger.debug(
                    "Distance %s -> %s on train %s: %s km",
                    from_stop.station.code, to_stop.station.code, train_id, km,
                )

        logger.info("Calculated %d route distances for train %s", len(results), train_id)
        return results

    @transaction.atomic
    def save(self, train_id: int, distances: List[RouteDistanceResult]) -> int:
        """Replace the cached distances of a train."""
        RouteDistance.objects.filter(train_id=train_id).delete()
        created = RouteDistance.objects.bulk_create([
            RouteDistance(
                train_id=train_id,
                from_station_id=d.from_station_id,
                to_station_id=d.to_station_id,
                distance_km=d.distance_km,
                distance_for_pricing=d.distance_for_pricing,
            )
            for d in distances
        ])
        logger.info("Saved %d route distances for train %s", len(created), train_id)
        return len(created)

    def rebuild(self, train_id: int) -> Tuple[int, int]:
        distances = self.build(train_id)
        saved = self.save(train_id, distances)
        return len(distances), saved

    def rebuild_all(self) -> BatchResult:
        """Rebuild every active train; one failing train does not stop the batch."""
        result = BatchResult()
        trains = list(Train.objects.filter(is_active=True).values_list("id", "train_number"))
        logger.info("Starting batch route distance calculation for %d trains", len(trains))

        for train_id, train_number in trains:
            try:
                _, saved = self.rebuild(train_id)
            except Exception as exc:
                msg = f"Failed to process train {train_number}: {exc}"
                logger.exception(msg)
                result.errors.append(msg)
                continue
            result.processed += 1
            result.total_distances += saved

        logger.info(
            "Batch calculation complete: %d/%d trains, %d distances",
            result.processed, len(trains), result.total_distances,
        )
        return result

    def cached(self, train_id: int):
        return (
            RouteDistance.objects.filter(train_id=train_id)
            .select_related("from_station", "to_station")
            .order_by("from_station__code", "to_station__code")
        )

    def _cached_pair(self, train_id: int, a: int, b: int) -> Optional[RouteDistanceResult]:
        row = (
            RouteDistance.objects.filter(train_id=train_id, from_station_id=a, to_station_id=b).first()
            or RouteDistance.objects.filter(train_id=train_id, from_station_id=b, to_station_id=a).first()
        )
        if row is None:
            return None
        return RouteDistanceResult(
            from_station_id=row.from_station_id,
            to_station_id=row.to_station_id,
            distance_km=round2(row.distance_km),
            distance_for_pricing=round2(row.distance_for_pricing),
        )

    def invalidate(self, train_id: int) -> int:
        """Drop the cached distances of a train; the next lookup rebuilds them."""
        deleted, _ = RouteDistance.objects.filter(train_id=train_id).delete()
        logger.info("Invalidated %d cached route distances for train %s", deleted, train_id)
        return deleted

    def _store(self, train_id: int, distances: List[RouteDistanceResult]) -> None:
        try:
            self.save(train_id, distances)
        except IntegrityError:
            # a concurrent rebuild of the same train got there first
            logger.warning("Route distances for train %s were saved concurrently; using computed values", train_id)

    def get(self, train_id: int, from_station_id: int, to_station_id: int) -> RouteDistanceResult:
        """
        Distance between two stations on a train, in either direction.

        A cache miss rebuilds the train's table and queries it. The rebuilt
        table is stored when the train had no cached rows or when it resolves
        the requested pair. Raises NotFound when the pair is still unknown.
        """
        found = self._cached_pair(train_id, from_station_id, to_station_id)
        if found is not None:
            return found

        logger.warning(
            "Distance not cached for train %s (%s -> %s), calculating on-the-fly",
            train_id, from_station_id, to_station_id,
        )
        distances = self.build(train_id)
        match = next((d for d in distances if d.connects(from_station_id, to_station_id)), None)
        if distances and (match is not None or not RouteDistance.objects.filter(train_id=train_id).exists()):
            self._store(train_id, distances)
        if match is None:
            raise NotFound(
                f"Distance not found for stations {from_station_id} → {to_station_id} on train {train_id}"
            )
        return match
