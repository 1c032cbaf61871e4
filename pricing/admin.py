from django import forms
from django.contrib import admin

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
    TrainFare,
)
from .numbers import fmt_km
from .ranges import FARE_TABLES


class FareRangeAdminForm(forms.ModelForm):
    """
    Runs the same locked overlap scan as the fare range tables. The admin
    validates and saves a change form inside one transaction, so the scope
    lock taken here is held until the range is written.
    """

    table = None

    def clean(self):
        cleaned = super().clean()
        if self.table is None or self.errors:
            return cleaned
        scope = {f: cleaned.get(f) for f in self.table.scope_fields}
        if any(value is None for value in scope.values()):
            return cleaned
        scope = self.table.scope(**scope)
        self.table.lock_scope(scope)
        conflict = self.table.find_conflict(
            scope, cleaned.get("min_km"), cleaned.get("max_km"), exclude_id=self.instance.pk,
        )
        if conflict is not None:
            raise forms.ValidationError(
                f"Range overlaps with existing range {fmt_km(conflict.min_km)}-{fmt_km(conflict.max_km)} km."
            )
        return cleaned


def _range_form(category: str):
    return type(f"{category.replace('-', '_').title()}RangeForm", (FareRangeAdminForm,), {
        "table": FARE_TABLES[category],
        "Meta": type("Meta", (), {"model": FARE_TABLES[category].model, "fields": "__all__"}),
    })


class FareRangeAdmin(admin.ModelAdmin):
    list_display = ("id", "min_km", "max_km", "fare_per_km", "flat_rate")
    ordering = ("min_km",)


@admin.register(Station)
class StationAdmin(admin.ModelAdmin):
    list_display = ("id", "code", "name_th", "distance_actual", "distance_for_pricing")
    search_fields = ("code", "name_th", "name_en")


@admin.register(Bogie)
class BogieAdmin(admin.ModelAdmin):
    list_display = ("id", "code", "name_th", "class_number", "has_ac", "is_sleeper")
    list_filter = ("class_number", "has_ac", "is_sleeper")


@admin.register(RouteDistance)
class RouteDistanceAdmin(admin.ModelAdmin):
    list_display = ("id", "train", "from_station", "to_station", "distance_km", "distance_for_pricing")
    list_filter = ("train",)


admin.site.register(DistanceFare)
admin.site.register(ACFareCategory)


@admin.register(DistanceFareRange)
class DistanceFareRangeAdmin(FareRangeAdmin):
    form = _range_form("distance")
    list_display = FareRangeAdmin.list_display + ("distance_fare",)
    list_filter = ("distance_fare",)


@admin.register(TrainFare)
class TrainFareAdmin(FareRangeAdmin):
    form = _range_form("train")
    list_display = FareRangeAdmin.list_display + ("train_type", "class_number", "is_active")
    list_filter = ("train_type", "class_number")


@admin.register(ACFare)
class ACFareAdmin(FareRangeAdmin):
    form = _range_form("ac")
    list_display = FareRangeAdmin.list_display + ("category",)


@admin.register(BogieACFare)
class BogieACFareAdmin(FareRangeAdmin):
    form = _range_form("bogie-ac")
    list_display = FareRangeAdmin.list_display + ("bogie",)


@admin.register(BerthFare)
class BerthFareAdmin(FareRangeAdmin):
    form = _range_form("berth")
    list_display = FareRangeAdmin.list_display + ("bogie", "berth_type")
    list_filter = ("berth_type",)
