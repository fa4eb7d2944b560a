# payouts/services/drivers.py

from decimal import Decimal
from typing import Iterator, Optional

from payouts.models import Driver, DriverWallet


def iter_eligible_driver_ids(min_pending: Decimal, page_size: int = 200) -> Iterator[int]:
    """
    Lazily yield ids of active drivers whose pending_balance >= min_pending.

    Keyset-paginated on wallet pk: one page of ids in memory at a time,
    forward-only. Each call opens a fresh sequence.
    """
    if page_size <= 0:
        raise ValueError("page_size must be > 0")

    last_pk = 0
    while True:
        page = list(
            DriverWallet.objects.filter(
                pending_balance__gte=min_pending,
                driver__is_active=True,
                pk__gt=last_pk,
            )
            .order_by("pk")
            .values_list("pk", "driver_id")[:page_size]
        )
        if not page:
            return
        for pk, driver_id in page:
            yield driver_id
        last_pk = page[-1][0]
        if len(page) < page_size:
            return


def get_driver(driver_id) -> Optional[Driver]:
    return Driver.objects.filter(pk=driver_id).first()
