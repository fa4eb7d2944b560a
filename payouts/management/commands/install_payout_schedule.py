# payouts/management/commands/install_payout_schedule.py


from django.core.management.base import BaseCommand

from payouts.runtime import close_services, get_services
from payouts.scheduler import install_weekly_scheduler


class Command(BaseCommand):
    help = "Install (or update) the repeating weekly payout trigger."

    def add_arguments(self, parser):
        parser.add_argument("--cron", default=None, help="Cron expression (defaults to PAYOUT_SCHEDULER_CRON).")
        parser.add_argument("--tz", default=None, help="Timezone name (defaults to PAYOUT_SCHEDULER_TZ).")

    def handle(self, *args, **options):
        services = get_services()
        try:
            installed = install_weekly_scheduler(
                services.broker,
                services.locks,
                cron=options["cron"],
                tz=options["tz"],
            )
        finally:
            close_services()

        if installed:
            self.stdout.write(self.style.SUCCESS("Weekly payout schedule installed."))
        else:
            self.stdout.write(self.style.WARNING("Weekly payout schedule not installed by this process (see logs)."))
