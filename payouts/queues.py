# payouts/queues.py

"""Queue and job names shared by the scheduler, the fan-out and the workers."""

TRIGGER_QUEUE = "weekly-payout-queue"
TRANSFER_QUEUE = "driver-transfer-queue"

TRIGGER_JOB = "trigger-weekly-payout"
BATCH_JOB = "driver-batch"

# job name -> Celery task name
JOB_TASKS = {
    TRIGGER_JOB: "payouts.tasks.trigger_weekly_payout",
    BATCH_JOB: "payouts.tasks.process_driver_batch",
}

INSTALL_LOCK_KEY = "locks:install-weekly-scheduler"
FANOUT_LOCK_KEY = "locks:weekly-payout-fanout"


def prefixed(prefix: str, queue: str) -> str:
    return f"{prefix}.{queue}" if prefix else queue
