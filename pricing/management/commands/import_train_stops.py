import csv
from pathlib import Path

from django.core.exceptions import ValidationError
from django.core.management.base import BaseCommand, CommandError, CommandParser
from django.db import transaction

from pricing.distances import RouteDistanceIndex
from pricing.models import Station, Train, TrainStop
from pricing.numbers import to_decimal


class Command(BaseCommand):
    help = (
        "Import a train's ordered stop list from CSV (station_code, stop_order, distance_from_origin) "
        "and refresh its route distance cache"
    )

    def add_arguments(self, parser: CommandParser) -> None:
        parser.add_argument("csv_path", help="Path to the CSV file")
        parser.add_argument("--train", required=True, help="Train number the stops belong to")
        parser.add_argument(
            "--clear",
            action="store_true",
            help="Delete the train's existing stops before importing",
        )
        parser.add_argument(
            "--no-rebuild",
            action="store_true",
            help="Only drop the cached route distances; they are rebuilt on the next lookup",
        )

    @transaction.atomic
    def handle(self, *args, **options):
        csv_path = Path(options["csv_path"]).resolve()
        if not csv_path.exists():
            self.stderr.write(self.style.ERROR(f"CSV not found: {csv_path}"))
            return

        train = Train.objects.filter(train_number=options["train"]).first()
        if train is None:
            self.stderr.write(self.style.ERROR(f"Train {options['train']} not found"))
            return

        if options["clear"]:
            deleted, _ = TrainStop.objects.filter(train=train).delete()
            self.stdout.write(self.style.NOTICE(f"Cleared existing stops: {deleted}"))

        self.stdout.write(self.style.NOTICE(f"Reading: {csv_path}"))
        created = 0
        updated = 0
        with open(csv_path, newline="", encoding="utf-8") as f:
            reader = csv.DictReader(f)
            for row in reader:
                station = Station.objects.filter(code=(row.get("station_code") or "").strip()).first()
                try:
                    stop_order = int(row["stop_order"])
                except (KeyError, TypeError, ValueError) as exc:
                    self.stderr.write(self.style.WARNING(f"Skipping row due to parse error: {row} ({exc})"))
                    continue
                if station is None:
                    self.stderr.write(self.style.WARNING(f"Skipping row with unknown station: {row}"))
                    continue

                _, is_created = TrainStop.objects.update_or_create(
                    train=train,
                    stop_order=stop_order,
                    defaults={
                        "station": station,
                        "distance_from_origin": to_decimal(row.get("distance_from_origin")),
                        "is_active": True,
                    },
                )
                if is_created:
                    created += 1
                else:
                    updated += 1

        # raising here rolls the whole import back
        for stop in TrainStop.objects.filter(train=train).select_related("station").order_by("stop_order"):
            try:
                stop.clean()
            except ValidationError as exc:
                raise CommandError(f"Stop #{stop.stop_order} ({stop.station.code}): {'; '.join(exc.messages)}") from exc

        self.stdout.write(self.style.SUCCESS(f"Stops imported. Created: {created}, Updated: {updated}"))

        index = RouteDistanceIndex()
        if options["no_rebuild"]:
            dropped = index.invalidate(train.pk)
            self.stdout.write(self.style.SUCCESS(f"Route distances invalidated: {dropped}"))
        else:
            _, saved = index.rebuild(train.pk)
            self.stdout.write(self.style.SUCCESS(f"Route distances saved: {saved}"))
