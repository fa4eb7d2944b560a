# payouts/migrations/0001_initial.py

from decimal import Decimal

from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Driver",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("full_name", models.CharField(max_length=150)),
                ("email", models.EmailField(blank=True, default="", max_length=254)),
                ("stripe_account_id", models.CharField(blank=True, max_length=100, null=True)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
        ),
        migrations.CreateModel(
            name="DriverWallet",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("available_balance", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("pending_balance", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("negative_balance", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("driver", models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name="wallet", to="payouts.driver")),
            ],
            options={
                "indexes": [models.Index(fields=["pending_balance"], name="payouts_wallet_pending_idx")],
            },
        ),
        migrations.CreateModel(
            name="DriverPayout",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("week_start", models.DateField()),
                ("week_end", models.DateField()),
                ("total_earnings", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("total_paid", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=12)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("paid", "Paid"), ("partial", "Partial")], default="pending", max_length=10)),
                ("payout_method", models.CharField(choices=[("automatic", "Automatic"), ("instant", "Instant")], max_length=10)),
                ("payout_date", models.DateTimeField(blank=True, null=True)),
                ("external_transfer_id", models.CharField(blank=True, default="", max_length=100)),
                ("batch_id", models.CharField(blank=True, default="", max_length=64)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("driver", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="payouts", to="payouts.driver")),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(fields=("driver", "week_start", "payout_method"), name="payouts_unique_driver_week_method"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PayoutAlert",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("title", models.CharField(max_length=200)),
                ("message", models.TextField()),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("resolved", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("driver", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="payout_alerts", to="payouts.driver")),
            ],
        ),
    ]
