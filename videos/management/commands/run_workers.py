from django.conf import settings
from django.core.management.base import BaseCommand

from videos.worker import start_workers


class Command(BaseCommand):
    help = "Start a pool of polling workers that claim PENDING jobs and publish them."

    def add_arguments(self, parser):
        parser.add_argument("--count", type=int, default=settings.WORKER_COUNT, help="Number of worker threads")

    def handle(self, *args, **options):
        count = options["count"]
        if count < 1:
            self.stderr.write(self.style.ERROR("--count must be at least 1"))
            return
        self.stdout.write(self.style.SUCCESS(f"Starting {count} worker(s). Press Ctrl+C to stop..."))
        start_workers(count)
        self.stdout.write(self.style.WARNING("Workers stopped."))
