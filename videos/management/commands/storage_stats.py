import json

from django.core.management.base import BaseCommand

from videos.s3 import storage_stats


class Command(BaseCommand):
    help = "Report how many videos are published and how much space they use."

    def add_arguments(self, parser):
        parser.add_argument("--prefix", default="videos/", help="Key prefix to scan")
        parser.add_argument("--json", action="store_true", help="Machine-readable output")

    def handle(self, *args, **options):
        stats = storage_stats(prefix=options["prefix"])
        if options["json"]:
            self.stdout.write(json.dumps(stats))
            return
        self.stdout.write(f"Videos: {stats['videos']}")
        self.stdout.write(f"Total size: {stats['bytes'] / (1024 ** 3):.2f} GB")
