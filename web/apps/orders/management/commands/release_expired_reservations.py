"""Release stock held by abandoned checkouts.

Cancels unpaid orders older than ``RESERVATION_TTL_MINUTES`` and releases
their reservations, then compensates checkouts that stopped before the
payment intent was created. Meant to run from cron every few minutes::

    python manage.py release_expired_reservations
"""

from datetime import timedelta

from django.core.management.base import BaseCommand

from apps.orders import providers


class Command(BaseCommand):
    help = "Release reservations of unpaid orders older than the reservation TTL."

    def add_arguments(self, parser):
        parser.add_argument(
            "--ttl-minutes",
            type=int,
            default=None,
            help="Override RESERVATION_TTL_MINUTES for this run.",
        )

    def handle(self, *args, **options):
        service = providers.get_order_service()
        if options["ttl_minutes"] is not None:
            service.reservation_ttl = timedelta(minutes=options["ttl_minutes"])
        report = service.sweep()
        self.stdout.write(
            f"released {len(report.expired)} expired reservations, "
            f"compensated {len(report.compensated)} stalled checkouts"
        )
