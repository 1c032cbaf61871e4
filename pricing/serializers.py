from rest_framework import serializers

from .models import ACFare, BerthFare, BogieACFare, DistanceFareRange, RouteDistance, Station, TrainFare

RANGE_FIELDS = ["id", "min_km", "max_km", "fare_per_km", "flat_rate", "notes"]


class StationSerializer(serializers.ModelSerializer):
    class Meta:
        model = Station
        fields = ["id", "code", "name_th", "name_en"]


class RouteDistanceSerializer(serializers.ModelSerializer):
    from_station = StationSerializer(read_only=True)
    to_station = StationSerializer(read_only=True)

    class Meta:
        model = RouteDistance
        fields = ["id", "from_station", "to_station", "distance_km", "distance_for_pricing", "calculated_at"]


class DistanceFareRangeSerializer(serializers.ModelSerializer):
    class Meta:
        model = DistanceFareRange
        fields = RANGE_FIELDS + ["distance_fare"]


class TrainFareSerializer(serializers.ModelSerializer):
    class Meta:
        model = TrainFare
        fields = RANGE_FIELDS + ["train_type", "class_number", "fare_th", "is_active"]
        extra_kwargs = {"min_km": {"default": 0}}


class ACFareSerializer(serializers.ModelSerializer):
    class Meta:
        model = ACFare
        fields = RANGE_FIELDS + ["category"]


class BogieACFareSerializer(serializers.ModelSerializer):
    class Meta:
        model = BogieACFare
        fields = RANGE_FIELDS + ["bogie"]


class BerthFareSerializer(serializers.ModelSerializer):
    class Meta:
        model = BerthFare
        fields = RANGE_FIELDS + ["bogie", "berth_type"]


RANGE_SERIALIZERS = {
    "distance": DistanceFareRangeSerializer,
    "train": TrainFareSerializer,
    "ac": ACFareSerializer,
    "bogie-ac": BogieACFareSerializer,
    "berth": BerthFareSerializer,
}


class PriceRequestSerializer(serializers.Serializer):
    train_id = serializers.IntegerField(min_value=1)
    from_station_id = serializers.IntegerField(min_value=1)
    to_station_id = serializers.IntegerField(min_value=1)
    bogie_id = serializers.IntegerField(min_value=1)
    berth_type = serializers.ChoiceField(choices=BerthFare.BERTH_TYPES, required=False, allow_null=True)

    def validate(self, attrs):
        if attrs["from_station_id"] == attrs["to_station_id"]:
            raise serializers.ValidationError("From and to stations must be different")
        return attrs


class PriceBreakdownSerializer(serializers.Serializer):
    distance_fare = serializers.DecimalField(max_digits=12, decimal_places=2)
    train_fare = serializers.DecimalField(max_digits=12, decimal_places=2)
    ac_fare = serializers.DecimalField(max_digits=12, decimal_places=2)
    berth_fare = serializers.DecimalField(max_digits=12, decimal_places=2)
    subtotal = serializers.DecimalField(max_digits=12, decimal_places=2)
    adjustments = serializers.DecimalField(max_digits=12, decimal_places=2)
    total = serializers.DecimalField(max_digits=12, decimal_places=2)


class JourneyDetailsSerializer(serializers.Serializer):
    train_id = serializers.IntegerField()
    train_number = serializers.CharField()
    train_name = serializers.CharField()
    from_station = serializers.CharField()
    to_station = serializers.CharField()
    distance = serializers.DecimalField(max_digits=10, decimal_places=2)
    distance_for_pricing = serializers.DecimalField(max_digits=10, decimal_places=2)
    bogie = serializers.CharField()
    class_number = serializers.IntegerField()
    has_ac = serializers.BooleanField()
    is_sleeper = serializers.BooleanField()
    berth_type = serializers.CharField(allow_null=True)


class PriceCalculationSerializer(serializers.Serializer):
    total_fare = serializers.DecimalField(max_digits=12, decimal_places=2)
    breakdown = PriceBreakdownSerializer()
    details = JourneyDetailsSerializer()
    calculations = serializers.DictField(child=serializers.CharField())
    warnings = serializers.ListField(child=serializers.CharField())
