from typing import List

from django.core.management.base import BaseCommand, CommandParser

from pricing.distances import RouteDistanceIndex
from pricing.exceptions import NotFound
from pricing.models import Train


class Command(BaseCommand):
    help = "Recompute and store the stop-pair distance table for one, several or all active trains."

    def add_arguments(self, parser: CommandParser) -> None:
        parser.add_argument(
            "--train",
            dest="trains",
            action="append",
            default=[],
            help="Train number to rebuild (repeatable; default: all active trains)",
        )
        parser.add_argument("--dry", action="store_true", help="Dry run: calculate only, do not write to DB")

    def handle(self, *args, **options):
        index = RouteDistanceIndex()
        numbers: List[str] = options["trains"]
        dry: bool = options["dry"]

        if not numbers and not dry:
            result = index.rebuild_all()
            for msg in result.errors:
                self.stderr.write(self.style.ERROR(msg))
            self.stdout.write(self.style.SUCCESS(
                f"Trains processed: {result.processed}, distances saved: {result.total_distances}"
            ))
            return

        trains = Train.objects.filter(is_active=True)
        if numbers:
            trains = Train.objects.filter(train_number__in=numbers)
            missing = set(numbers) - set(trains.values_list("train_number", flat=True))
            for number in sorted(missing):
                self.stderr.write(self.style.WARNING(f"Unknown train number {number}; skipping"))

        total = 0
        for train in trains.order_by("train_number"):
            try:
                distances = index.build(train.pk)
            except NotFound as exc:
                self.stderr.write(self.style.ERROR(str(exc)))
                continue
            if not distances:
                self.stderr.write(self.style.WARNING(f"Train {train.train_number} has fewer than 2 active stops"))
            if dry:
                self.stdout.write(f"Train {train.train_number}: {len(distances)} distances (dry run)")
                total += len(distances)
                continue
            saved = index.save(train.pk, distances)
            total += saved
            self.stdout.write(f"Train {train.train_number}: {saved} distances saved")

        verb = "calculated" if dry else "saved"
        self.stdout.write(self.style.SUCCESS(f"Route distances {verb}: {total}"))
