# payouts/migrations/0002_payoutreservation.py

from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    dependencies = [
        ("payouts", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="PayoutReservation",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("week_start", models.DateField()),
                ("week_end", models.DateField()),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("batch_id", models.CharField(blank=True, default="", max_length=64)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("driver", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="payout_reservations", to="payouts.driver")),
            ],
        ),
        migrations.AddConstraint(
            model_name="payoutreservation",
            constraint=models.UniqueConstraint(fields=("driver", "week_start"), name="payouts_unique_reservation_driver_week"),
        ),
    ]
