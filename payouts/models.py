# payouts/models.py

from decimal import Decimal

from django.db import models


# Driver directory (only the fields the payout pipeline reads)
class Driver(models.Model):
    full_name = models.CharField(max_length=150)
    email = models.EmailField(blank=True, default="")

    # Stripe Connect account that receives weekly transfers
    stripe_account_id = models.CharField(max_length=100, blank=True, null=True)

    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.full_name} (Driver #{self.id})"

    @property
    def has_payout_destination(self) -> bool:
        return bool((self.stripe_account_id or "").strip())


# One wallet per driver. pending_balance accrues from rides and is swept weekly.
class DriverWallet(models.Model):
    driver = models.OneToOneField(
        Driver,
        on_delete=models.CASCADE,
        related_name='wallet',
    )
    available_balance = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    pending_balance = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))

    # Not enforced by the ledger, carried for other systems
    negative_balance = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))

    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["pending_balance"], name="payouts_wallet_pending_idx"),
        ]

    def __str__(self):
        return f"Wallet for driver #{self.driver_id} (pending={self.pending_balance}, available={self.available_balance})"


# Settlement record, written only when a weekly transfer settles
class DriverPayout(models.Model):
    STATUS_CHOICES = (
        ('pending', 'Pending'),
        ('paid', 'Paid'),
        ('partial', 'Partial'),
    )

    METHOD_CHOICES = (
        ('automatic', 'Automatic'),
        ('instant', 'Instant'),
    )

    driver = models.ForeignKey(
        Driver,
        on_delete=models.CASCADE,
        related_name='payouts',
    )

    # Monday..Sunday of the settled week
    week_start = models.DateField()
    week_end = models.DateField()

    total_earnings = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    total_paid = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))

    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default='pending')
    payout_method = models.CharField(max_length=10, choices=METHOD_CHOICES)
    payout_date = models.DateTimeField(null=True, blank=True)

    external_transfer_id = models.CharField(max_length=100, blank=True, default="")
    batch_id = models.CharField(max_length=64, blank=True, default="")

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["driver", "week_start", "payout_method"],
                name="payouts_unique_driver_week_method",
            ),
        ]

    def __str__(self):
        return f"Payout #{self.id} {self.total_paid} to driver #{self.driver_id} ({self.week_start} - {self.week_end}, {self.status})"


# Write-ahead record of a pending_balance reservation whose transfer has not
# settled yet. Deleted on settlement or release; one that survives means a
# transfer is in flight or needs reconciliation.
class PayoutReservation(models.Model):
    driver = models.ForeignKey(
        Driver,
        on_delete=models.CASCADE,
        related_name='payout_reservations',
    )
    week_start = models.DateField()
    week_end = models.DateField()
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    batch_id = models.CharField(max_length=64, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["driver", "week_start"],
                name="payouts_unique_reservation_driver_week",
            ),
        ]

    def __str__(self):
        return f"Reservation #{self.id} {self.amount} for driver #{self.driver_id} (week {self.week_start})"


# Operator-facing escalation for transfers that need manual attention
class PayoutAlert(models.Model):
    driver = models.ForeignKey(
        Driver,
        on_delete=models.SET_NULL,
        related_name='payout_alerts',
        null=True,
        blank=True,
    )
    title = models.CharField(max_length=200)
    message = models.TextField()
    metadata = models.JSONField(default=dict, blank=True)
    resolved = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"PayoutAlert #{self.id}: {self.title}"
