from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models

from .numbers import to_decimal


class Station(models.Model):
    code = models.CharField(max_length=20, unique=True)
    name_th = models.CharField(max_length=200)
    name_en = models.CharField(max_length=200, blank=True, default="")
    distance_actual = models.DecimalField(
        max_digits=8, decimal_places=2, null=True, blank=True,
        help_text="Measured distance in kilometers from the line origin",
    )
    distance_for_pricing = models.DecimalField(
        max_digits=8, decimal_places=2, null=True, blank=True,
        help_text="Distance in kilometers used for fares (defaults to the measured distance)",
    )

    class Meta:
        ordering = ["code"]

    def __str__(self) -> str:
        return f"{self.code} {self.name_th}"


class TrainType(models.Model):
    code = models.CharField(max_length=20, unique=True)
    name_th = models.CharField(max_length=100)
    name_en = models.CharField(max_length=100, blank=True, default="")
    base_fare = models.DecimalField(
        max_digits=10, decimal_places=2, null=True, blank=True,
        validators=[MinValueValidator(0)],
        help_text="Flat surcharge used when no class-specific train fare exists",
    )

    def __str__(self) -> str:
        return self.name_th


class Train(models.Model):
    train_number = models.CharField(max_length=20, unique=True)
    train_name_th = models.CharField(max_length=200, blank=True, default="")
    train_type = models.ForeignKey(
        TrainType, on_delete=models.SET_NULL, null=True, blank=True, related_name="trains",
    )
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["train_number"]

    def __str__(self) -> str:
        return f"{self.train_number} {self.train_name_th}".strip()


class TrainStop(models.Model):
    train = models.ForeignKey(Train, on_delete=models.CASCADE, related_name="stops")
    station = models.ForeignKey(Station, on_delete=models.CASCADE, related_name="train_stops")
    stop_order = models.PositiveIntegerField()
    distance_from_origin = models.DecimalField(
        max_digits=8, decimal_places=2, null=True, blank=True,
        help_text="Kilometers from the train's first stop",
    )
    is_active = models.BooleanField(default=True)

    class Meta:
        unique_together = ("train", "stop_order")
        ordering = ["train", "stop_order"]

    def __str__(self) -> str:
        return f"{self.train.train_number} #{self.stop_order}: {self.station.name_th}"

    def clean(self):
        """distance_from_origin never decreases along the stop order."""
        km = to_decimal(self.distance_from_origin)
        if km is None or self.train_id is None or self.stop_order is None:
            return
        neighbours = (
            TrainStop.objects.filter(train_id=self.train_id, distance_from_origin__isnull=False)
            .exclude(pk=self.pk)
        )
        before = neighbours.filter(stop_order__lt=self.stop_order).order_by("-stop_order").first()
        after = neighbours.filter(stop_order__gt=self.stop_order).order_by("stop_order").first()
        if before is not None and km < before.distance_from_origin:
            raise ValidationError({"distance_from_origin": (
                f"{km} km is less than stop #{before.stop_order} ({before.distance_from_origin} km)."
            )})
        if after is not None and km > after.distance_from_origin:
            raise ValidationError({"distance_from_origin": (
                f"{km} km is more than stop #{after.stop_order} ({after.distance_from_origin} km)."
            )})


class ACFareCategory(models.Model):
    code = models.CharField(max_length=20, unique=True)
    name_th = models.CharField(max_length=100)

    def __str__(self) -> str:
        return self.name_th


class Bogie(models.Model):
    code = models.CharField(max_length=20, unique=True)
    name_th = models.CharField(max_length=100)
    class_number = models.PositiveSmallIntegerField(
        validators=[MinValueValidator(1), MaxValueValidator(3)],
    )
    has_ac = models.BooleanField(default=False)
    is_sleeper = models.BooleanField(default=False)
    upper_berths = models.PositiveSmallIntegerField(default=0)
    lower_berths = models.PositiveSmallIntegerField(default=0)
    single_berths = models.PositiveSmallIntegerField(default=0)
    ac_fare_category = models.ForeignKey(
        ACFareCategory, on_delete=models.SET_NULL, null=True, blank=True, related_name="bogies",
        help_text="AC fare table used when the bogie has no AC ranges of its own",
    )

    def __str__(self) -> str:
        return f"{self.code} ({self.name_th})"

    def berth_count(self, berth_type: str) -> int:
        return {
            "upper": self.upper_berths,
            "lower": self.lower_berths,
            "single": self.single_berths,
        }.get(berth_type, 0)


class TrainComposition(models.Model):
    train = models.ForeignKey(Train, on_delete=models.CASCADE, related_name="compositions")
    bogie = models.ForeignKey(Bogie, on_delete=models.CASCADE, related_name="compositions")
    position = models.PositiveSmallIntegerField(default=1)
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ["train", "position"]

    def __str__(self) -> str:
        return f"{self.train.train_number} car {self.position}: {self.bogie.code}"


class RouteDistance(models.Model):
    train = models.ForeignKey(Train, on_delete=models.CASCADE, related_name="route_distances")
    from_station = models.ForeignKey(Station, on_delete=models.CASCADE, related_name="route_distances_from")
    to_station = models.ForeignKey(Station, on_delete=models.CASCADE, related_name="route_distances_to")
    distance_km = models.DecimalField(max_digits=8, decimal_places=2)
    distance_for_pricing = models.DecimalField(max_digits=8, decimal_places=2)
    calculated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = ("train", "from_station", "to_station")
        indexes = [models.Index(fields=["train", "from_station", "to_station"])]

    def __str__(self) -> str:
        return f"{self.train_id}: {self.from_station_id} -> {self.to_station_id} ({self.distance_km} km)"


class FareRange(models.Model):
    """A priced kilometer band ``[min_km, max_km)``; no ``max_km`` means open-ended."""

    min_km = models.DecimalField(max_digits=8, decimal_places=2, validators=[MinValueValidator(0)])
    max_km = models.DecimalField(max_digits=8, decimal_places=2, null=True, blank=True)
    fare_per_km = models.DecimalField(
        max_digits=10, decimal_places=4, null=True, blank=True, validators=[MinValueValidator(0)],
    )
    flat_rate = models.DecimalField(
        max_digits=10, decimal_places=2, null=True, blank=True, validators=[MinValueValidator(0)],
    )
    notes = models.TextField(blank=True, default="")

    class Meta:
        abstract = True
        ordering = ["min_km"]

    def clean(self):
        errors = {}
        min_km = to_decimal(self.min_km)
        max_km = to_decimal(self.max_km)
        if max_km is not None and min_km is not None and max_km <= min_km:
            errors["max_km"] = "max_km must be greater than min_km."
        if self.fare_per_km is None and self.flat_rate is None:
            errors["flat_rate"] = "Either fare_per_km or flat_rate must be provided."
        if errors:
            raise ValidationError(errors)


class DistanceFare(models.Model):
    class_number = models.PositiveSmallIntegerField(
        validators=[MinValueValidator(1), MaxValueValidator(3)],
    )
    name_th = models.CharField(max_length=100, blank=True, default="")
    is_active = models.BooleanField(default=True)

    def __str__(self) -> str:
        return f"Distance fare class {self.class_number}"


class DistanceFareRange(FareRange):
    distance_fare = models.ForeignKey(DistanceFare, on_delete=models.CASCADE, related_name="ranges")

    class Meta(FareRange.Meta):
        indexes = [models.Index(fields=["distance_fare", "min_km"])]


class TrainFare(FareRange):
    train_type = models.ForeignKey(TrainType, on_delete=models.CASCADE, related_name="train_fares")
    class_number = models.PositiveSmallIntegerField(
        validators=[MinValueValidator(1), MaxValueValidator(3)],
    )
    fare_th = models.CharField(max_length=100, blank=True, default="")
    is_active = models.BooleanField(default=True)

    class Meta(FareRange.Meta):
        indexes = [models.Index(fields=["train_type", "class_number"])]


class ACFare(FareRange):
    category = models.ForeignKey(ACFareCategory, on_delete=models.CASCADE, related_name="fares")


class BogieACFare(FareRange):
    bogie = models.ForeignKey(Bogie, on_delete=models.CASCADE, related_name="ac_fares")


class BerthFare(FareRange):
    BERTH_TYPES = [
        ("upper", "Upper"),
        ("lower", "Lower"),
        ("single", "Single"),
    ]

    bogie = models.ForeignKey(Bogie, on_delete=models.CASCADE, related_name="berth_fares")
    berth_type = models.CharField(max_length=10, choices=BERTH_TYPES)

    class Meta(FareRange.Meta):
        indexes = [models.Index(fields=["bogie", "berth_type", "min_km"])]

    def clean(self):
        super().clean()
        bogie = Bogie.objects.filter(pk=self.bogie_id).first() if self.bogie_id else None
        if bogie is None:
            return
        if not bogie.is_sleeper:
            raise ValidationError({"bogie": "Cannot add berth fares to a non-sleeper bogie."})
        if self.berth_type and not bogie.berth_count(self.berth_type):
            raise ValidationError({"berth_type": f"This bogie does not have {self.berth_type} berths."})
