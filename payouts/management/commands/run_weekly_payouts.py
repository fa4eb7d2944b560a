# payouts/management/commands/run_weekly_payouts.py


from datetime import timedelta

from django.conf import settings
from django.core.management.base import BaseCommand
from django.utils import timezone

from payouts.queues import TRIGGER_JOB, TRIGGER_QUEUE
from payouts.runtime import build_transfer_processor, close_services, get_services
from payouts.services.fanout import BatchFanOut
from payouts.services.transfers import FAILED, SETTLED, SKIPPED


class _InlineBatchBroker:
    """Runs each emitted batch immediately instead of publishing it."""

    def __init__(self, processor):
        self.processor = processor
        self.results = []

    def add(self, queue, job_name, payload, **options):
        self.results.append(self.processor.process_batch(payload))
        return payload["batchId"]


class Command(BaseCommand):
    help = "Trigger the weekly driver payout now (enqueue the trigger job, or run everything inline with --sync)."

    def add_arguments(self, parser):
        parser.add_argument(
            "--sync",
            action="store_true",
            help="Fan out and transfer in this process instead of going through the queues.",
        )

    def handle(self, *args, **options):
        payload = {"triggeredAt": timezone.now().isoformat()}
        services = get_services()
        try:
            if not options["sync"]:
                job_id = services.broker.add(TRIGGER_QUEUE, TRIGGER_JOB, payload, remove_on_complete=True)
                self.stdout.write(self.style.SUCCESS(f"Weekly payout trigger enqueued. jobId={job_id}"))
                return

            inline = _InlineBatchBroker(build_transfer_processor(services.gateway))
            fanout = BatchFanOut(
                inline,
                min_amount=settings.PAYOUT_MIN_TRANSFER_AMOUNT,
                batch_size=settings.PAYOUT_BATCH_SIZE,
                week_grace=timedelta(minutes=settings.PAYOUT_WEEK_GRACE_MINUTES),
            ).run(payload)

            settled = sum(r.count(SETTLED) for r in inline.results)
            skipped = sum(r.count(SKIPPED) for r in inline.results)
            failed = sum(r.count(FAILED) for r in inline.results)
            self.stdout.write(self.style.SUCCESS(
                f"Weekly payouts completed. "
                f"batches={fanout.batches} "
                f"drivers={fanout.drivers} "
                f"settled={settled} "
                f"skipped={skipped} "
                f"failed={failed}"
            ))
        finally:
            close_services()
