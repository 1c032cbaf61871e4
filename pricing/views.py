from django.core.exceptions import ValidationError
from rest_framework import status
from rest_framework.decorators import api_view
from rest_framework.response import Response

from .distances import RouteDistanceIndex
from .engine import calculate_price
from .exceptions import MissingConfiguration, NotFound, RangeConflict
from .ranges import FARE_TABLES
from .serializers import (
    RANGE_SERIALIZERS,
    PriceCalculationSerializer,
    PriceRequestSerializer,
    RouteDistanceSerializer,
)


def _validation_detail(exc: ValidationError):
    return exc.message_dict if hasattr(exc, "error_dict") else exc.messages


@api_view(["POST"])
def calculate(request):
    """Calculate the fare of one journey segment with an itemized breakdown.

    Body: train_id, from_station_id, to_station_id, bogie_id, berth_type (optional)
    """
    req = PriceRequestSerializer(data=request.data)
    if not req.is_valid():
        return Response(req.errors, status=status.HTTP_400_BAD_REQUEST)

    try:
        result = calculate_price(**req.validated_data)
    except NotFound as exc:
        return Response({"detail": str(exc)}, status=status.HTTP_404_NOT_FOUND)
    except MissingConfiguration as exc:
        return Response({"detail": str(exc), "component": exc.component}, status=status.HTTP_400_BAD_REQUEST)
    except ValidationError as exc:
        return Response({"detail": _validation_detail(exc)}, status=status.HTTP_400_BAD_REQUEST)

    return Response(PriceCalculationSerializer(result).data)


@api_view(["GET", "POST"])
def route_distances(request, train_id: int):
    """GET: cached stop-pair distances of a train. POST: recalculate and store them."""
    index = RouteDistanceIndex()
    if request.method == "POST":
        try:
            calculated, saved = index.rebuild(train_id)
        except NotFound as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_404_NOT_FOUND)
        return Response({"calculated": calculated, "saved": saved})

    data = RouteDistanceSerializer(index.cached(train_id), many=True).data
    return Response(data)


@api_view(["POST"])
def batch_route_distances(request):
    """Recalculate route distances for every active train."""
    result = RouteDistanceIndex().rebuild_all()
    return Response({
        "processed": result.processed,
        "total_distances": result.total_distances,
        "errors": result.errors,
    })


@api_view(["GET", "POST"])
def fare_ranges(request, category: str):
    """List (filtered by scope query params) or create fare ranges of one category."""
    table = FARE_TABLES.get(category)
    if table is None:
        return Response({"detail": f"Unknown fare category: {category}"}, status=status.HTTP_404_NOT_FOUND)
    serializer_class = RANGE_SERIALIZERS[category]

    if request.method == "GET":
        scope = {f: request.query_params[f] for f in table.scope_fields if f in request.query_params}
        try:
            ranges = list(table.matching(**scope))
        except (ValueError, ValidationError):
            return Response({"detail": "Invalid scope filter"}, status=status.HTTP_400_BAD_REQUEST)
        return Response(serializer_class(ranges, many=True).data)

    ser = serializer_class(data=request.data)
    if not ser.is_valid():
        return Response(ser.errors, status=status.HTTP_400_BAD_REQUEST)
    fields = dict(ser.validated_data)
    scope = {f: fields.pop(f, None) for f in table.scope_fields}
    try:
        fare_range = table.insert(scope, **fields)
    except ValidationError as exc:
        return Response({"detail": _validation_detail(exc)}, status=status.HTTP_400_BAD_REQUEST)
    except RangeConflict as exc:
        return Response(
            {"detail": str(exc), "conflicting_id": exc.conflicting.pk if exc.conflicting else None},
            status=status.HTTP_409_CONFLICT,
        )
    return Response(serializer_class(fare_range).data, status=status.HTTP_201_CREATED)


@api_view(["PATCH", "DELETE"])
def fare_range_detail(request, category: str, range_id: int):
    table = FARE_TABLES.get(category)
    if table is None:
        return Response({"detail": f"Unknown fare category: {category}"}, status=status.HTTP_404_NOT_FOUND)

    if request.method == "DELETE":
        try:
            table.delete(range_id)
        except NotFound as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_404_NOT_FOUND)
        return Response(status=status.HTTP_204_NO_CONTENT)

    serializer_class = RANGE_SERIALIZERS[category]
    ser = serializer_class(data=request.data, partial=True)
    if not ser.is_valid():
        return Response(ser.errors, status=status.HTTP_400_BAD_REQUEST)
    try:
        fare_range = table.update(range_id, **ser.validated_data)
    except NotFound as exc:
        return Response({"detail": str(exc)}, status=status.HTTP_404_NOT_FOUND)
    except ValidationError as exc:
        return Response({"detail": _validation_detail(exc)}, status=status.HTTP_400_BAD_REQUEST)
    except RangeConflict as exc:
        return Response(
            {"detail": str(exc), "conflicting_id": exc.conflicting.pk if exc.conflicting else None},
            status=status.HTTP_409_CONFLICT,
        )
    return Response(serializer_class(fare_range).data)
